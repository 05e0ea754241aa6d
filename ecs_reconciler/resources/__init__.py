# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Resource types descriptors. Describe, per AWS resource type, which properties can be updated in place
and in which order a resource is replaced when they cannot.
"""

from ecs_reconciler.resources.ecs_fargate import ECS_FARGATE_TYPES
from ecs_reconciler.resources.resource_types import (
    ReplacementPolicy,
    ResourceTypeDescriptor,
    ResourceTypeRegistry,
)


def default_registry() -> ResourceTypeRegistry:
    """
    Returns a new registry with the ECS Fargate service module resource types registered.
    """
    return ResourceTypeRegistry(ECS_FARGATE_TYPES)


__all__ = [
    "ReplacementPolicy",
    "ResourceTypeDescriptor",
    "ResourceTypeRegistry",
    "default_registry",
]
