# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Resource Graph Builder: parses the resources declarations into a dependency graph.
"""

from ecs_reconciler.graph.graph_builder import (
    DependencyEdge,
    ResourceAddress,
    ResourceGraph,
    ResourceNode,
    build,
    normalize_declarations,
)

__all__ = [
    "DependencyEdge",
    "ResourceAddress",
    "ResourceGraph",
    "ResourceNode",
    "build",
    "normalize_declarations",
]
