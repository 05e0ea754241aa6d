# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Module for the ResourceTypeDescriptor and its registry.
"""

from __future__ import annotations

from typing import Iterable, Optional

from ecs_reconciler.exceptions import ImmutableAttributeConflict, InvalidDeclarationError


class ReplacementPolicy:
    """
    Order in which the old and the new object of a replaced resource are handled.

    * create_before_destroy: the new object exists before the old one is deleted. Used for resources which are
      referenced by something else while they are active, i.e. a target group attached to a listener.
    * destroy_before_create: the old object is deleted first, which is required when names must be unique.
    """

    CREATE_BEFORE_DESTROY = "create_before_destroy"
    DESTROY_BEFORE_CREATE = "destroy_before_create"
    ALL = (CREATE_BEFORE_DESTROY, DESTROY_BEFORE_CREATE)

    @classmethod
    def validate(cls, policy: str) -> str:
        if policy not in cls.ALL:
            raise ValueError("Replacement policy must be one of", cls.ALL, "Got", policy)
        return policy


class ResourceTypeDescriptor:
    """
    Describes how a resource type behaves on change.

    :ivar str type_name: The resource type, i.e. AWS::ECS::Service
    :ivar frozenset immutable_properties: Properties which force a replacement when changed
    :ivar frozenset updatable_properties: When set, the only properties which can be updated in place.
    :ivar bool externally_referenced: Whether the resource is referenced by others while active
    :ivar str replacement_policy: One of ReplacementPolicy
    :ivar troposphere_class: The troposphere AWSObject class modelling the type, used to validate property names.
    :ivar frozenset stable_attributes: Output attributes an in-place update never changes, i.e. GroupId.
        Fn::GetAtt of the other attributes of an updated resource are only known after apply.
    """

    def __init__(
        self,
        type_name: str,
        immutable_properties: Iterable[str] = (),
        updatable_properties: Optional[Iterable[str]] = None,
        replacement_policy: Optional[str] = None,
        externally_referenced: bool = False,
        troposphere_class=None,
        stable_attributes: Iterable[str] = (),
    ):
        if not isinstance(type_name, str) or not type_name:
            raise TypeError("type_name must be a non empty string. Got", type_name)
        self.type_name = type_name
        self.immutable_properties = frozenset(immutable_properties)
        self.updatable_properties = (
            frozenset(updatable_properties)
            if updatable_properties is not None
            else None
        )
        self.externally_referenced = externally_referenced
        if replacement_policy is None:
            replacement_policy = (
                ReplacementPolicy.CREATE_BEFORE_DESTROY
                if externally_referenced
                else ReplacementPolicy.DESTROY_BEFORE_CREATE
            )
        self.replacement_policy = ReplacementPolicy.validate(replacement_policy)
        self.troposphere_class = troposphere_class
        self.stable_attributes = frozenset(stable_attributes)

    def __repr__(self):
        return f"{self.__class__.__name__}({self.type_name}, {self.replacement_policy})"

    def is_immutable(self, property_name: str) -> bool:
        if property_name in self.immutable_properties:
            return True
        if self.updatable_properties is not None:
            return property_name not in self.updatable_properties
        return False

    def check_update(self, changed_properties: Iterable[str]) -> None:
        """
        Checks that all the changed properties can be updated in place.

        :param changed_properties: names of the top level properties which changed
        :raises ImmutableAttributeConflict: if at least one of them can only be set on create
        """
        immutables = [_prop for _prop in changed_properties if self.is_immutable(_prop)]
        if immutables:
            raise ImmutableAttributeConflict(
                f"{self.type_name} cannot update {', '.join(sorted(immutables))} in place",
                immutables,
            )

    @property
    def known_properties(self) -> Optional[frozenset]:
        if self.troposphere_class is None:
            return None
        return frozenset(self.troposphere_class.props.keys())

    def validate_properties(self, logical_name: str, properties: dict) -> None:
        """
        Validates the property names against the troposphere definition of the type, when there is one.

        :raises InvalidDeclarationError: if a property is not known for that type
        """
        known = self.known_properties
        if known is None:
            return
        unknown = sorted(set(properties.keys()) - known)
        if unknown:
            raise InvalidDeclarationError(
                f"{logical_name} - {self.type_name} does not support properties {unknown}",
                sorted(known),
            )


class ResourceTypeRegistry:
    """
    Holds the ResourceTypeDescriptor per type name. Types not registered get a default descriptor,
    which allows all properties to be updated in place.
    """

    def __init__(self, descriptors: Iterable[ResourceTypeDescriptor] = None):
        self._descriptors: dict = {}
        if descriptors:
            for descriptor in descriptors:
                self.register(descriptor)

    def __contains__(self, type_name: str) -> bool:
        return type_name in self._descriptors

    def register(self, descriptor: ResourceTypeDescriptor) -> ResourceTypeDescriptor:
        if not isinstance(descriptor, ResourceTypeDescriptor):
            raise TypeError(
                "descriptor must be", ResourceTypeDescriptor, "Got", type(descriptor)
            )
        self._descriptors[descriptor.type_name] = descriptor
        return descriptor

    def get(self, type_name: str) -> ResourceTypeDescriptor:
        if type_name in self._descriptors:
            return self._descriptors[type_name]
        return ResourceTypeDescriptor(type_name)
