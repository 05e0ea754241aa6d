# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Module for the StateRecord, the snapshot of a resource as it was last applied.
"""

from __future__ import annotations

from copy import deepcopy
from typing import List, Optional

from compose_x_common.compose_x_common import keyisset, set_else_none


class StateRecord:
    """
    Snapshot of a resource which exists in the provider.

    :ivar str identifier: the id assigned by the provider
    :ivar str resource_type: the resource type, i.e. AWS::ECS::Service
    :ivar dict attributes: the resolved properties last applied
    :ivar dict outputs: the attributes returned by the provider, used to resolve Fn::GetAtt
    :ivar list dependencies: addresses (str) of the resources this one depended on when applied
    :ivar int version: incremented by the store on every write
    :ivar list deposed: identifiers of older objects, replaced (create before destroy) but not yet deleted
    """

    def __init__(
        self,
        identifier: str,
        resource_type: str,
        attributes: dict = None,
        outputs: dict = None,
        dependencies: List[str] = None,
        version: int = 0,
        deposed: List[str] = None,
    ):
        self.identifier = identifier
        self.resource_type = resource_type
        self.attributes = deepcopy(attributes) if attributes else {}
        self.outputs = deepcopy(outputs) if outputs else {}
        self.dependencies = sorted(set(dependencies)) if dependencies else []
        self.version = version
        self.deposed = list(deposed) if deposed else []

    def __repr__(self):
        return f"StateRecord({self.resource_type}, {self.identifier}, v{self.version})"

    def __eq__(self, other):
        if not isinstance(other, StateRecord):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def copy(self) -> StateRecord:
        return StateRecord.from_dict(self.to_dict())

    def get_output(self, attribute: Optional[str]):
        """
        Returns the identifier when attribute is None (Ref), the output value otherwise.

        :raises KeyError: if the provider did not return such attribute
        """
        if attribute is None:
            return self.identifier
        if attribute not in self.outputs:
            raise KeyError(
                f"{self.resource_type} {self.identifier} has no attribute {attribute}",
                sorted(self.outputs.keys()),
            )
        return self.outputs[attribute]

    def to_dict(self) -> dict:
        return {
            "Identifier": self.identifier,
            "Type": self.resource_type,
            "Attributes": deepcopy(self.attributes),
            "Outputs": deepcopy(self.outputs),
            "Dependencies": list(self.dependencies),
            "Version": self.version,
            "Deposed": list(self.deposed),
        }

    @staticmethod
    def from_dict(definition: dict) -> StateRecord:
        if not keyisset("Identifier", definition) or not keyisset("Type", definition):
            raise KeyError(
                "A state record requires Identifier and Type. Got", list(definition)
            )
        return StateRecord(
            definition["Identifier"],
            definition["Type"],
            attributes=set_else_none("Attributes", definition, alt_value={}),
            outputs=set_else_none("Outputs", definition, alt_value={}),
            dependencies=set_else_none("Dependencies", definition, alt_value=[]),
            version=set_else_none("Version", definition, alt_value=0),
            deposed=set_else_none("Deposed", definition, alt_value=[]),
        )
