# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Diff Engine: compares the declared graph with the state and classifies every resource.

* No record in the state -> create
* Same resolved attributes -> noop
* Only properties which can be updated in place changed -> update
* At least one immutable property changed -> replace, with the resource type replacement policy
* Record in the state without declaration -> destroy

References to resources which get created or replaced are only known after apply, and count as a change.
"""

from __future__ import annotations

from ecs_reconciler.common import LOG, UNKNOWN
from ecs_reconciler.exceptions import ImmutableAttributeConflict, UnresolvedReferenceError
from ecs_reconciler.graph import ResourceAddress, ResourceGraph
from ecs_reconciler.graph.references import resolve
from ecs_reconciler.plan.plan_operations import OperationKind, Plan, PlanOperation
from ecs_reconciler.state import StateStore


def changed_properties(before: dict, after: dict) -> list:
    """
    Top level properties which differ between the two sets of attributes, sorted.
    """
    return sorted(
        key
        for key in set(before) | set(after)
        if key not in before or key not in after or before[key] != after[key]
    )


class PlanLookup:
    """
    Resolves references while planning.
    Values of resources created or replaced in the plan are unknown, as are the attributes of updated ones
    their type does not list as stable.
    """

    def __init__(self, graph: ResourceGraph, store: StateStore):
        self.graph = graph
        self.store = store
        self.new_identifiers = set()
        self.new_outputs = set()

    def __call__(self, name: str, attribute: str = None):
        node = self.graph.by_name(name)
        if node is None:
            raise UnresolvedReferenceError(f"{name} is not declared", None, name)
        if node.address in self.new_identifiers:
            return UNKNOWN
        if (
            attribute is not None
            and node.address in self.new_outputs
            and attribute not in node.descriptor.stable_attributes
        ):
            return UNKNOWN
        record = self.store.get(node.address)
        if record is None:
            return UNKNOWN
        try:
            return record.get_output(attribute)
        except KeyError as error:
            raise UnresolvedReferenceError(
                f"{node.address} has no attribute {attribute}", None, name
            ) from error


def _deposed_operations(address, record, index: int) -> list:
    return [
        PlanOperation(
            OperationKind.DESTROY,
            address,
            before=record.attributes,
            prior_identifier=deposed_id,
            deposed_id=deposed_id,
            prior_dependencies=record.dependencies,
            index=index,
        )
        for deposed_id in record.deposed
    ]


def diff_node(node, record, lookup: PlanLookup, pseudo_parameters: dict = None) -> PlanOperation:
    """
    Classifies a single declared resource against its record.

    :param ResourceNode node:
    :param StateRecord record: None when the resource does not exist yet
    :param PlanLookup lookup:
    :param dict pseudo_parameters:
    :rtype: PlanOperation
    """
    after = resolve(node.properties, lookup, pseudo_parameters)
    if record is None:
        lookup.new_identifiers.add(node.address)
        lookup.new_outputs.add(node.address)
        return PlanOperation(
            OperationKind.CREATE,
            node.address,
            after=after,
            dependencies=node.depends_on,
            index=node.index,
        )
    before = record.attributes
    changed = changed_properties(before, after)
    common = dict(
        before=before,
        after=after,
        changed=changed,
        prior_identifier=record.identifier,
        dependencies=node.depends_on,
        prior_dependencies=record.dependencies,
        index=node.index,
    )
    if not changed:
        return PlanOperation(OperationKind.NOOP, node.address, **common)
    try:
        node.descriptor.check_update(changed)
    except ImmutableAttributeConflict as error:
        LOG.debug(f"{node.address} - {error}. Replacing")
        lookup.new_identifiers.add(node.address)
        lookup.new_outputs.add(node.address)
        return PlanOperation(
            OperationKind.REPLACE,
            node.address,
            replacement_policy=node.descriptor.replacement_policy,
            replaced_by=error.properties,
            **common,
        )
    lookup.new_outputs.add(node.address)
    return PlanOperation(OperationKind.UPDATE, node.address, **common)


def diff(graph: ResourceGraph, store: StateStore, pseudo_parameters: dict = None) -> Plan:
    """
    Computes the Plan reconciling the store with the graph. The same graph and store always give the same plan.

    :param ResourceGraph graph: the declared resources
    :param StateStore store: the state
    :param dict pseudo_parameters: values for the AWS:: pseudo parameters
    :rtype: Plan
    """
    serial = store.serial
    lookup = PlanLookup(graph, store)
    per_node = {}
    for node in graph.topological_order():
        record = store.get(node.address)
        operations = [diff_node(node, record, lookup, pseudo_parameters)]
        if record is not None:
            operations += _deposed_operations(node.address, record, node.index)
        per_node[node.address] = operations

    operations = []
    for node in graph:
        operations += per_node[node.address]

    declared = {str(_address) for _address in graph.addresses}
    for offset, key in enumerate(store.addresses()):
        if key in declared:
            continue
        record = store.get(key)
        index = len(graph) + offset
        address = ResourceAddress.parse(key)
        operations.append(
            PlanOperation(
                OperationKind.DESTROY,
                address,
                before=record.attributes,
                prior_identifier=record.identifier,
                prior_dependencies=record.dependencies,
                index=index,
            )
        )
        operations += _deposed_operations(address, record, index)

    plan = Plan(operations, graph, serial, store.lineage)
    if plan.has_changes:
        LOG.info(
            "Plan: "
            + ", ".join(
                f"{count} to {kind}"
                for kind, count in plan.summary().items()
                if count and kind != OperationKind.NOOP
            )
        )
    else:
        LOG.info("Plan: no changes. Resources match their declarations.")
    return plan
