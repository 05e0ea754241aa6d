# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Reconciler: builds the graph from the declarations, plans against the state and applies the plan.

.. code-block:: python

    settings = ReconcilerSettings(RegionName="eu-west-1", StateBackend="file")
    reconciler = Reconciler(settings)
    plan = reconciler.plan("service.yaml")
    print(render_plan(plan))
    result = reconciler.apply(plan)
"""

from __future__ import annotations

from typing import Union

from troposphere import Template

from ecs_reconciler.common import LOG
from ecs_reconciler.common.settings import ReconcilerSettings
from ecs_reconciler.declarations import load_declarations
from ecs_reconciler.executor import ApplyResult, Executor
from ecs_reconciler.graph import ResourceGraph, build
from ecs_reconciler.plan import Plan, diff
from ecs_reconciler.providers import CloudControlProvider, ResourceProvider
from ecs_reconciler.resources import ResourceTypeRegistry, default_registry
from ecs_reconciler.state import StateStore


class Reconciler:
    """
    Ties the settings, the state store and the provider together.

    :ivar ReconcilerSettings settings:
    :ivar ResourceTypeRegistry registry:
    :ivar StateStore store:
    :ivar ResourceProvider provider:
    :ivar Executor executor:
    """

    def __init__(
        self,
        settings: ReconcilerSettings,
        registry: ResourceTypeRegistry = None,
        provider: ResourceProvider = None,
        store: StateStore = None,
        **executor_kwargs,
    ):
        self.settings = settings
        self.registry = registry if registry else default_registry()
        self.store = store if store is not None else settings.state_store()
        self.provider = (
            provider
            if provider is not None
            else CloudControlProvider(settings.provider_config)
        )
        self.executor = Executor(
            self.store, self.provider, settings=settings, **executor_kwargs
        )

    def build(self, declarations: Union[str, dict, list, Template]) -> ResourceGraph:
        """
        :param declarations: path to or content of a declarations document, or the declarations
        :rtype: ResourceGraph
        """
        if isinstance(declarations, str):
            declarations = load_declarations(declarations)
        return build(declarations, self.registry)

    def plan(self, declarations) -> Plan:
        """
        Computes the plan to reconcile the state with the declarations.

        :param declarations: a ResourceGraph, or anything build() accepts
        :rtype: Plan
        """
        graph = (
            declarations
            if isinstance(declarations, ResourceGraph)
            else self.build(declarations)
        )
        return diff(graph, self.store, self.settings.pseudo_parameters)

    def apply(self, plan: Plan, owner: str = None) -> ApplyResult:
        if not plan.has_changes:
            LOG.info("Nothing to apply")
        return self.executor.apply(plan, owner)

    def cancel(self) -> None:
        self.executor.cancel()
