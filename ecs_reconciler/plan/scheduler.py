# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Plan Scheduler: orders the plan operations into batches.

Operations are first expanded into steps. A replace gives two steps, create-new and destroy-old, ordered by its
replacement policy. The steps are then ordered so that

* a resource is created/updated after the resources it depends on
* a resource is destroyed after the resources referencing it (now or when last applied) were repointed
  or destroyed
* for destroy before create replacements, the old object is destroyed before the new one is created, and only
  the destruction of its dependents must happen first.

Each batch holds the steps which only depend on steps of previous batches, so the steps of a batch can run
concurrently. Within a batch, steps are in declaration order.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import Iterator, List, Optional

import networkx as nx

from ecs_reconciler.common import LOG
from ecs_reconciler.exceptions import CycleError
from ecs_reconciler.plan.plan_operations import OperationKind, PlanOperation
from ecs_reconciler.resources import ReplacementPolicy


class StepKind:
    CREATE = "create"
    UPDATE = "update"
    CREATE_NEW = "create-new"
    DESTROY_OLD = "destroy-old"
    DESTROY = "destroy"

    APPLY_KINDS = (CREATE, UPDATE, CREATE_NEW)
    DESTROY_KINDS = (DESTROY_OLD, DESTROY)


class Step:
    """
    A unit of work for the executor.

    :ivar PlanOperation operation: the operation the step is part of
    :ivar str kind: one of StepKind
    :ivar int position: position of the step within its operation
    """

    __slots__ = ("operation", "kind", "position")

    def __init__(self, operation: PlanOperation, kind: str, position: int = 0):
        self.operation = operation
        self.kind = kind
        self.position = position

    def __repr__(self):
        if self.deposed_id:
            return f"{self.kind}({self.address} deposed {self.deposed_id})"
        return f"{self.kind}({self.address})"

    @property
    def address(self):
        return self.operation.address

    @property
    def deposed_id(self) -> Optional[str]:
        return self.operation.deposed_id

    @property
    def key(self) -> tuple:
        return str(self.address), self.kind, self.deposed_id or ""

    @property
    def order(self) -> tuple:
        return self.operation.index, self.position, self.key

    @property
    def is_apply(self) -> bool:
        return self.kind in StepKind.APPLY_KINDS

    @property
    def is_destroy(self) -> bool:
        return self.kind in StepKind.DESTROY_KINDS


def expand_operation(operation: PlanOperation) -> List[Step]:
    """
    Returns the steps of an operation, in the order they must run.
    """
    if operation.kind == OperationKind.CREATE:
        return [Step(operation, StepKind.CREATE)]
    elif operation.kind == OperationKind.UPDATE:
        return [Step(operation, StepKind.UPDATE)]
    elif operation.kind == OperationKind.DESTROY:
        return [Step(operation, StepKind.DESTROY)]
    elif operation.kind == OperationKind.REPLACE:
        if operation.replacement_policy == ReplacementPolicy.CREATE_BEFORE_DESTROY:
            return [
                Step(operation, StepKind.CREATE_NEW, 0),
                Step(operation, StepKind.DESTROY_OLD, 1),
            ]
        return [
            Step(operation, StepKind.DESTROY_OLD, 0),
            Step(operation, StepKind.CREATE_NEW, 1),
        ]
    return []


class ExecutionBatches:
    """
    The scheduled steps. Batches run one after the other, steps within a batch are independent.

    :ivar networkx.DiGraph dag: the ordering between steps, edges from a step to the ones which must wait for it.
    """

    def __init__(self, batches: List[List[Step]], dag: nx.DiGraph):
        self._batches = [tuple(_batch) for _batch in batches]
        self.dag = dag

    def __iter__(self) -> Iterator[tuple]:
        return iter(self._batches)

    def __len__(self):
        return len(self._batches)

    def __getitem__(self, index: int) -> tuple:
        return self._batches[index]

    def __repr__(self):
        return f"ExecutionBatches({self._batches})"

    @property
    def steps(self) -> List[Step]:
        return [_step for _batch in self._batches for _step in _batch]

    def batch_index(self, address, kind: str, deposed_id: str = None) -> int:
        """
        Index of the batch running the step.

        :raises KeyError: if no such step was scheduled
        """
        key = (str(address), kind, deposed_id or "")
        for index, batch in enumerate(self._batches):
            if any(_step.key == key for _step in batch):
                return index
        raise KeyError(f"No step {kind} scheduled for {address}")

    def dependent_steps(self, step: Step) -> set:
        """Keys of all the steps which, directly or not, wait for the given one"""
        return nx.descendants(self.dag, step.key)

    def to_list(self) -> list:
        return [[repr(_step) for _step in _batch] for _batch in self._batches]


def _add_ordering(dag: nx.DiGraph, before: Step, after: Step) -> None:
    if before.key != after.key:
        dag.add_edge(before.key, after.key)


def schedule(plan_ops, graph=None) -> ExecutionBatches:
    """
    Schedules the operations into batches.

    :param plan_ops: the plan operations (or the Plan)
    :param ResourceGraph graph: the graph the plan was computed from. Used for the current dependencies,
        which default to the ones recorded on the operations.
    :raises CycleError: if the steps cannot be ordered
    :rtype: ExecutionBatches
    """
    operations = list(plan_ops)
    steps: OrderedDict = OrderedDict()
    per_address: dict = {}
    for operation in operations:
        for step in expand_operation(operation):
            steps[step.key] = step
            per_address.setdefault(str(operation.address), []).append(step)

    dag = nx.DiGraph()
    dag.add_nodes_from(steps.keys())

    current_deps: dict = {}
    for operation in operations:
        if operation.deposed_id:
            continue
        address = str(operation.address)
        if graph is not None and operation.address in graph:
            current_deps[address] = {
                str(_dep) for _dep in graph.dependencies(operation.address)
            }
        else:
            current_deps.setdefault(address, set(operation.dependencies))
    referenced_by: dict = {}
    for operation in operations:
        address = str(operation.address)
        for dependency in current_deps.get(address, set()) | set(
            operation.prior_dependencies
        ):
            referenced_by.setdefault(dependency, set()).add(address)

    for address, address_steps in per_address.items():
        for step in address_steps:
            if step.is_apply:
                for dependency in current_deps.get(address, set()):
                    for dep_step in per_address.get(dependency, []):
                        if dep_step.is_apply:
                            _add_ordering(dag, dep_step, step)
            elif step.is_destroy:
                only_destroys = (
                    step.kind == StepKind.DESTROY_OLD
                    and step.operation.replacement_policy
                    == ReplacementPolicy.DESTROY_BEFORE_CREATE
                )
                for dependent in sorted(referenced_by.get(address, set())):
                    if dependent == address:
                        continue
                    for dependent_step in per_address.get(dependent, []):
                        if only_destroys and not _destroys_first(dependent_step):
                            continue
                        _add_ordering(dag, dependent_step, step)
        _order_own_steps(dag, address_steps)

    try:
        generations = list(nx.topological_generations(dag))
    except nx.NetworkXUnfeasible as error:
        cycle = [_edge[0] for _edge in nx.find_cycle(dag)]
        raise CycleError(
            f"Operations cannot be ordered: {' -> '.join(str(steps[_key]) for _key in cycle)}",
            cycle,
        ) from error
    batches = [
        sorted((steps[_key] for _key in generation), key=lambda _step: _step.order)
        for generation in generations
    ]
    LOG.debug(f"Scheduled {len(steps)} steps in {len(batches)} batches")
    return ExecutionBatches(batches, dag)


def _order_own_steps(dag: nx.DiGraph, address_steps: List[Step]) -> None:
    """
    Orders the steps of a single address: the replace steps in their policy order, and the older objects
    (deposed) destroyed before the current object is.
    """
    for step in address_steps:
        if step.operation.kind == OperationKind.REPLACE:
            siblings = [
                _step for _step in address_steps if _step.operation is step.operation
            ]
            first, second = sorted(siblings, key=lambda _step: _step.position)
            _add_ordering(dag, first, second)
            break
    plain_destroys = [
        _step
        for _step in address_steps
        if _step.kind == StepKind.DESTROY and not _step.deposed_id
    ]
    for destroy_step in plain_destroys:
        for step in address_steps:
            if step.kind == StepKind.DESTROY and step.deposed_id:
                _add_ordering(dag, step, destroy_step)


def _destroys_first(step: Step) -> bool:
    """
    Whether the step removes an object before anything new is created for the resource.
    A create before destroy replacement only removes its old object once the new one exists.
    """
    if step.kind == StepKind.DESTROY:
        return True
    return (
        step.kind == StepKind.DESTROY_OLD
        and step.operation.replacement_policy == ReplacementPolicy.DESTROY_BEFORE_CREATE
    )
