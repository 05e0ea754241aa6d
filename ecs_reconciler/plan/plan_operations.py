# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Module for the PlanOperation and Plan classes, which the diff engine produces and the executor consumes.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from copy import deepcopy
from typing import Iterator, List, Optional

from ecs_reconciler.common import canonical_json
from ecs_reconciler.exceptions import PlanConsumedError


class OperationKind:
    """
    The action to take on a resource to reconcile it with its declaration
    """

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DESTROY = "destroy"
    NOOP = "noop"
    ALL = (CREATE, UPDATE, REPLACE, DESTROY, NOOP)


class PlanOperation:
    """
    One operation of the plan.

    :ivar str kind: one of OperationKind
    :ivar ResourceAddress address: the resource address
    :ivar dict before: the attributes last applied. None for create
    :ivar dict after: the attributes to apply. None for destroy. May hold values only known after apply.
    :ivar tuple changed: names of the properties which differ
    :ivar str replacement_policy: for replace, one of ReplacementPolicy
    :ivar tuple replaced_by: for replace, the immutable properties forcing it
    :ivar str prior_identifier: provider id of the existing object, if any
    :ivar str deposed_id: for destroy of an older object left over by a create before destroy replace
    :ivar tuple dependencies: addresses (str) the resource depends on in the declarations
    :ivar tuple prior_dependencies: addresses (str) the resource depended on when last applied
    :ivar int index: ordering key, the declaration position for declared resources
    """

    def __init__(
        self,
        kind: str,
        address,
        before: Optional[dict] = None,
        after: Optional[dict] = None,
        changed=(),
        replacement_policy: Optional[str] = None,
        replaced_by=(),
        prior_identifier: Optional[str] = None,
        deposed_id: Optional[str] = None,
        dependencies=(),
        prior_dependencies=(),
        index: int = 0,
    ):
        if kind not in OperationKind.ALL:
            raise ValueError("kind must be one of", OperationKind.ALL, "Got", kind)
        self._kind = kind
        self._address = address
        self._before = deepcopy(before)
        self._after = deepcopy(after)
        self._changed = tuple(sorted(changed))
        self._replacement_policy = replacement_policy
        self._replaced_by = tuple(sorted(replaced_by))
        self._prior_identifier = prior_identifier
        self._deposed_id = deposed_id
        self._dependencies = tuple(sorted(str(_dep) for _dep in dependencies))
        self._prior_dependencies = tuple(
            sorted(str(_dep) for _dep in prior_dependencies)
        )
        self._index = index

    def __repr__(self):
        if self._deposed_id:
            return f"{self._kind}({self._address} deposed {self._deposed_id})"
        return f"{self._kind}({self._address})"

    @property
    def kind(self) -> str:
        return self._kind

    @property
    def address(self):
        return self._address

    @property
    def before(self) -> Optional[dict]:
        return deepcopy(self._before)

    @property
    def after(self) -> Optional[dict]:
        return deepcopy(self._after)

    @property
    def changed(self) -> tuple:
        return self._changed

    @property
    def replacement_policy(self) -> Optional[str]:
        return self._replacement_policy

    @property
    def replaced_by(self) -> tuple:
        return self._replaced_by

    @property
    def prior_identifier(self) -> Optional[str]:
        return self._prior_identifier

    @property
    def deposed_id(self) -> Optional[str]:
        return self._deposed_id

    @property
    def dependencies(self) -> tuple:
        return self._dependencies

    @property
    def prior_dependencies(self) -> tuple:
        return self._prior_dependencies

    @property
    def index(self) -> int:
        return self._index

    def changes(self) -> OrderedDict:
        """
        The before/after values of every changed property. For create and destroy, all the properties.
        """
        before = self._before or {}
        after = self._after or {}
        if self._kind in [OperationKind.CREATE, OperationKind.DESTROY]:
            keys = sorted(set(before) | set(after))
        else:
            keys = self._changed
        return OrderedDict(
            (key, {"Before": before.get(key), "After": after.get(key)}) for key in keys
        )

    def to_dict(self) -> dict:
        definition = {
            "Action": self._kind,
            "Address": str(self._address),
            "Changes": self.changes(),
        }
        if self._replacement_policy:
            definition["ReplacementPolicy"] = self._replacement_policy
            definition["ReplacedBy"] = list(self._replaced_by)
        if self._deposed_id:
            definition["DeposedId"] = self._deposed_id
        return definition


class Plan:
    """
    Ordered operations reconciling the state with the declarations, along with the graph they were computed from.
    Immutable. Can be applied only once.

    :ivar ResourceGraph graph:
    :ivar int serial: the store serial when the plan was computed
    :ivar str lineage: the store lineage when the plan was computed
    """

    def __init__(self, operations: List[PlanOperation], graph, serial: int, lineage: str = None):
        self._operations = tuple(operations)
        self.graph = graph
        self.serial = serial
        self.lineage = lineage
        self._consumed = False
        self._consume_lock = threading.Lock()

    def __iter__(self) -> Iterator[PlanOperation]:
        return iter(self._operations)

    def __len__(self):
        return len(self._operations)

    def __repr__(self):
        return f"Plan({self.summary()})"

    @property
    def operations(self) -> tuple:
        return self._operations

    @property
    def changes(self) -> List[PlanOperation]:
        return [_op for _op in self._operations if _op.kind != OperationKind.NOOP]

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    @property
    def consumed(self) -> bool:
        return self._consumed

    def consume(self) -> None:
        """
        Marks the plan as applied.

        :raises PlanConsumedError: if it already was
        """
        with self._consume_lock:
            if self._consumed:
                raise PlanConsumedError("This plan was already applied. Compute a new plan.")
            self._consumed = True

    def get(self, address) -> List[PlanOperation]:
        return [_op for _op in self._operations if str(_op.address) == str(address)]

    def summary(self) -> OrderedDict:
        counts = OrderedDict((kind, 0) for kind in OperationKind.ALL)
        for operation in self._operations:
            counts[operation.kind] += 1
        return counts

    def to_dict(self) -> dict:
        return {
            "Serial": self.serial,
            "Operations": [_op.to_dict() for _op in self._operations],
        }

    def to_json(self, indent: int = None) -> str:
        return canonical_json(self.to_dict(), indent=indent)
