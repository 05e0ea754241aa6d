# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Executor: applies the plans.
"""

from ecs_reconciler.executor.apply_result import (
    ApplyResult,
    BatchResult,
    StepResult,
    StepStatus,
)
from ecs_reconciler.executor.executor import Executor

__all__ = ["ApplyResult", "BatchResult", "Executor", "StepResult", "StepStatus"]
