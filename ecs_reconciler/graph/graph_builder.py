# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Module to build the ResourceGraph out of the resources declarations.

The declarations follow the CloudFormation resources shape::

    ServiceTargetGroup:
      Type: AWS::ElasticLoadBalancingV2::TargetGroup
      Properties:
        Port: 80
        VpcId: vpc-abcd1234
    Service:
      Type: AWS::ECS::Service
      Properties:
        LoadBalancers:
          - TargetGroupArn: !Ref ServiceTargetGroup
      DependsOn:
        - ServiceTargetGroup

A troposphere Template, or a list of troposphere resources, can be used as well.
"""

from __future__ import annotations

from collections import OrderedDict
from copy import deepcopy
from typing import Iterator, List, Optional, Union

import networkx as nx
from troposphere import AWSObject, Template, encode_to_dict

from ecs_reconciler.common import LOG, NONALPHANUM, prune_none
from ecs_reconciler.exceptions import (
    CycleError,
    InvalidDeclarationError,
    UnresolvedReferenceError,
)
from ecs_reconciler.graph.references import find_references
from ecs_reconciler.resources import ResourceTypeRegistry, default_registry
from ecs_reconciler.resources.resource_types import ResourceTypeDescriptor

ADDRESS_SEPARATOR = "::"
DEPENDS_ON_PATH = "DependsOn"


class ResourceAddress:
    """
    Unique address of a resource: its type and its logical name.
    The string form is <Type>::<LogicalName>, i.e. AWS::ECS::Service::app
    """

    __slots__ = ("_resource_type", "_name")

    def __init__(self, resource_type: str, name: str):
        self._resource_type = resource_type
        self._name = name

    @classmethod
    def parse(cls, address: str) -> ResourceAddress:
        if not isinstance(address, str) or ADDRESS_SEPARATOR not in address:
            raise ValueError(
                f"{address} is not a valid address. Expected <Type>{ADDRESS_SEPARATOR}<LogicalName>"
            )
        resource_type, name = address.rsplit(ADDRESS_SEPARATOR, 1)
        return cls(resource_type, name)

    @property
    def resource_type(self) -> str:
        return self._resource_type

    @property
    def name(self) -> str:
        return self._name

    def __str__(self):
        return f"{self._resource_type}{ADDRESS_SEPARATOR}{self._name}"

    def __repr__(self):
        return f"ResourceAddress({str(self)})"

    def __eq__(self, other):
        if not isinstance(other, ResourceAddress):
            return NotImplemented
        return (self._resource_type, self._name) == (
            other._resource_type,
            other._name,
        )

    def __lt__(self, other):
        return str(self) < str(other)

    def __hash__(self):
        return hash((self._resource_type, self._name))


class DependencyEdge:
    """
    Directed relation from the dependent resource to its dependency.

    :ivar ResourceAddress dependent:
    :ivar ResourceAddress dependency:
    :ivar tuple paths: properties paths holding the reference, DependsOn for explicit dependencies.
    """

    __slots__ = ("dependent", "dependency", "paths")

    def __init__(self, dependent: ResourceAddress, dependency: ResourceAddress, paths):
        self.dependent = dependent
        self.dependency = dependency
        self.paths = tuple(sorted(set(paths)))

    def __repr__(self):
        return f"{self.dependent} -> {self.dependency} ({', '.join(self.paths)})"


class ResourceNode:
    """
    A declared resource. Immutable once the graph is built.

    :ivar ResourceAddress address:
    :ivar int index: position of the resource in the declarations
    :ivar ResourceTypeDescriptor descriptor:
    """

    def __init__(
        self,
        address: ResourceAddress,
        properties: dict,
        depends_on: frozenset,
        index: int,
        descriptor: ResourceTypeDescriptor,
    ):
        self._address = address
        self._properties = deepcopy(properties)
        self._depends_on = frozenset(depends_on)
        self._index = index
        self._descriptor = descriptor

    def __repr__(self):
        return f"ResourceNode({self._address})"

    @property
    def address(self) -> ResourceAddress:
        return self._address

    @property
    def name(self) -> str:
        return self._address.name

    @property
    def resource_type(self) -> str:
        return self._address.resource_type

    @property
    def properties(self) -> dict:
        return deepcopy(self._properties)

    @property
    def depends_on(self) -> frozenset:
        return self._depends_on

    @property
    def index(self) -> int:
        return self._index

    @property
    def descriptor(self) -> ResourceTypeDescriptor:
        return self._descriptor


class ResourceGraph:
    """
    Directed acyclic graph of the declared resources. Edges go from the dependent to the dependency.
    """

    def __init__(self, nodes: List[ResourceNode], edges: List[DependencyEdge]):
        self._nodes: OrderedDict = OrderedDict(
            (node.address, node) for node in sorted(nodes, key=lambda _n: _n.index)
        )
        self._names = {node.name: node for node in self._nodes.values()}
        self._edges = list(edges)
        self._dag = nx.DiGraph()
        self._dag.add_nodes_from(self._nodes.keys())
        for edge in self._edges:
            self._dag.add_edge(edge.dependent, edge.dependency, paths=edge.paths)

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self._nodes.values())

    def __len__(self):
        return len(self._nodes)

    def __contains__(self, address) -> bool:
        if isinstance(address, str):
            return address in self._names
        return address in self._nodes

    def __getitem__(self, address: ResourceAddress) -> ResourceNode:
        return self._nodes[address]

    @property
    def edges(self) -> List[DependencyEdge]:
        return list(self._edges)

    @property
    def addresses(self) -> List[ResourceAddress]:
        return list(self._nodes.keys())

    def get(self, address: ResourceAddress) -> Optional[ResourceNode]:
        return self._nodes.get(address)

    def by_name(self, name: str) -> Optional[ResourceNode]:
        return self._names.get(name)

    def dependencies(self, address: ResourceAddress) -> List[ResourceAddress]:
        """Resources the given resource depends on, in declaration order"""
        return sorted(
            self._dag.successors(address), key=lambda _addr: self._nodes[_addr].index
        )

    def dependents(self, address: ResourceAddress) -> List[ResourceAddress]:
        """Resources depending on the given resource, in declaration order"""
        return sorted(
            self._dag.predecessors(address), key=lambda _addr: self._nodes[_addr].index
        )

    def topological_order(self) -> List[ResourceNode]:
        """
        Dependencies first. Resources which could go in any order are kept in declaration order.
        """
        return [
            self._nodes[_address]
            for _address in nx.lexicographical_topological_sort(
                self._dag.reverse(copy=False), key=lambda _addr: self._nodes[_addr].index
            )
        ]


def _declaration_from_troposphere(resource) -> dict:
    if not isinstance(resource, AWSObject):
        raise TypeError("Expected a troposphere resource", AWSObject, "Got", type(resource))
    return encode_to_dict(resource)


def normalize_declarations(declarations) -> OrderedDict:
    """
    Turns the supported inputs into an ordered mapping logical name -> declaration

    :param declarations: dict of declarations, dict with Resources, troposphere Template, list of troposphere resources
    :rtype: OrderedDict
    """
    if isinstance(declarations, Template):
        return OrderedDict(
            (title, _declaration_from_troposphere(resource))
            for title, resource in declarations.resources.items()
        )
    elif isinstance(declarations, (list, tuple)):
        normalized = OrderedDict()
        for resource in declarations:
            if resource.title in normalized:
                raise InvalidDeclarationError(
                    f"Resource {resource.title} is declared more than once"
                )
            normalized[resource.title] = _declaration_from_troposphere(resource)
        return normalized
    elif isinstance(declarations, dict):
        if "Resources" in declarations and isinstance(declarations["Resources"], dict):
            declarations = declarations["Resources"]
        return OrderedDict(
            (
                name,
                _declaration_from_troposphere(definition)
                if isinstance(definition, AWSObject)
                else encode_to_dict(definition),
            )
            for name, definition in declarations.items()
        )
    raise TypeError(
        "declarations must be one of", [dict, Template, list], "Got", type(declarations)
    )


def _validate_declaration(name, definition) -> tuple:
    if not isinstance(name, str) or not name or NONALPHANUM.findall(name):
        raise InvalidDeclarationError(
            f"Logical name {name} is invalid. Must be ^[a-zA-Z0-9]+$ | alphanumerical"
        )
    if not isinstance(definition, dict):
        raise InvalidDeclarationError(f"{name} - declaration must be a mapping")
    resource_type = definition.get("Type")
    if not isinstance(resource_type, str) or not resource_type:
        raise InvalidDeclarationError(f"{name} - Type must be set and be a string")
    properties = definition.get("Properties") or {}
    if not isinstance(properties, dict):
        raise InvalidDeclarationError(f"{name} - Properties must be a mapping")
    depends_on = definition.get(DEPENDS_ON_PATH) or []
    if isinstance(depends_on, str):
        depends_on = [depends_on]
    if not isinstance(depends_on, list) or not all(
        isinstance(_dep, str) for _dep in depends_on
    ):
        raise InvalidDeclarationError(
            f"{name} - DependsOn must be a string or a list of strings"
        )
    return resource_type, prune_none(properties), depends_on


def _find_cycle(dag: nx.DiGraph) -> Optional[list]:
    try:
        cycle = nx.find_cycle(dag)
    except nx.NetworkXNoCycle:
        return None
    return [_edge[0] for _edge in cycle] + [cycle[-1][1]]


def build(
    declarations: Union[dict, Template, list], registry: ResourceTypeRegistry = None
) -> ResourceGraph:
    """
    Builds the ResourceGraph from the declarations. Does not change the declarations.

    :param declarations: the resources declarations
    :param ResourceTypeRegistry registry: the resource types. Defaults to the ECS Fargate types.
    :raises InvalidDeclarationError: malformed declaration
    :raises UnresolvedReferenceError: a reference to a resource which is not declared
    :raises CycleError: the dependencies between resources are circular
    :rtype: ResourceGraph
    """
    if registry is None:
        registry = default_registry()
    normalized = normalize_declarations(declarations)
    parsed = OrderedDict()
    for name, definition in normalized.items():
        parsed[name] = _validate_declaration(name, definition)

    addresses = {
        name: ResourceAddress(resource_type, name)
        for name, (resource_type, _props, _deps) in parsed.items()
    }
    nodes = []
    edges = []
    for index, (name, (resource_type, properties, depends_on)) in enumerate(
        parsed.items()
    ):
        descriptor = registry.get(resource_type)
        descriptor.validate_properties(name, properties)
        edge_paths: dict = {}
        for reference in find_references(properties):
            edge_paths.setdefault(reference.target, []).append(reference.path)
        for dependency in depends_on:
            edge_paths.setdefault(dependency, []).append(DEPENDS_ON_PATH)
        for target, paths in edge_paths.items():
            if target not in addresses:
                raise UnresolvedReferenceError(
                    f"{name} - {', '.join(paths)} references {target} which is not declared",
                    addresses[name],
                    target,
                )
            if target == name:
                raise CycleError(
                    f"{name} - {', '.join(paths)} references itself",
                    [addresses[name], addresses[name]],
                )
            edges.append(DependencyEdge(addresses[name], addresses[target], paths))
        nodes.append(
            ResourceNode(
                addresses[name],
                properties,
                frozenset(addresses[_target] for _target in edge_paths),
                index,
                descriptor,
            )
        )
    graph = ResourceGraph(nodes, edges)
    cycle = _find_cycle(graph._dag)
    if cycle:
        raise CycleError(
            f"Circular dependency between resources: {' -> '.join(str(_a) for _a in cycle)}",
            cycle,
        )
    LOG.debug(f"Built graph with {len(graph)} resources and {len(edges)} dependencies")
    return graph
