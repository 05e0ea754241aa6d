# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Diff engine and scheduler: from the declared graph and the state, to the batches of steps to apply.
"""

from ecs_reconciler.plan.diff_engine import diff
from ecs_reconciler.plan.plan_operations import OperationKind, Plan, PlanOperation
from ecs_reconciler.plan.render import render_plan, render_plan_yaml
from ecs_reconciler.plan.scheduler import ExecutionBatches, Step, StepKind, schedule

__all__ = [
    "ExecutionBatches",
    "OperationKind",
    "Plan",
    "PlanOperation",
    "Step",
    "StepKind",
    "diff",
    "render_plan",
    "render_plan_yaml",
    "schedule",
]
