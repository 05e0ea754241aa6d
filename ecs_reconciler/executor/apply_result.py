# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Results of an apply, per step, so a partial apply tells exactly what was done and what was not.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import List, Optional

from tabulate import tabulate


class StepStatus:
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    ALL = (SUCCEEDED, FAILED, SKIPPED, CANCELLED)


class StepResult:
    """
    :ivar Step step:
    :ivar str status: one of StepStatus
    :ivar int batch: index of the batch the step was scheduled in
    :ivar int attempts: number of attempts made
    :ivar str identifier: provider id of the resource after the step
    :ivar Exception error: the error which failed the step
    :ivar str reason: why the step was skipped or cancelled, or a note on success
    """

    def __init__(
        self,
        step,
        status: str,
        batch: int,
        attempts: int = 0,
        identifier: str = None,
        error: Exception = None,
        reason: str = None,
    ):
        self.step = step
        self.status = status
        self.batch = batch
        self.attempts = attempts
        self.identifier = identifier
        self.error = error
        self.reason = reason

    def __repr__(self):
        return f"StepResult({self.step!r}, {self.status})"

    @property
    def address(self):
        return self.step.address

    def to_dict(self) -> dict:
        definition = {
            "Address": str(self.step.address),
            "Step": self.step.kind,
            "Status": self.status,
            "Batch": self.batch,
            "Attempts": self.attempts,
        }
        if self.step.deposed_id:
            definition["DeposedId"] = self.step.deposed_id
        if self.identifier:
            definition["Identifier"] = self.identifier
        if self.error is not None:
            definition["Error"] = f"{type(self.error).__name__}: {self.error}"
        if self.reason:
            definition["Reason"] = self.reason
        return definition


class BatchResult:
    """
    Results of the steps of one batch
    """

    def __init__(self, index: int, results: List[StepResult] = None):
        self.index = index
        self.results = list(results) if results else []

    def __iter__(self):
        return iter(self.results)

    @property
    def failed(self) -> List[StepResult]:
        return [_res for _res in self.results if _res.status == StepStatus.FAILED]


class ApplyResult:
    """
    Results of all the steps of an apply, in the order they were scheduled.

    :ivar bool cancelled: whether the apply was cancelled before the end
    :ivar bool aborted: whether the apply stopped after a failure (fail fast)
    """

    def __init__(self, plan=None):
        self.plan = plan
        self.results: List[StepResult] = []
        self.cancelled = False
        self.aborted = False

    def __iter__(self):
        return iter(self.results)

    def __len__(self):
        return len(self.results)

    def add(self, result: StepResult) -> None:
        self.results.append(result)

    def extend(self, results) -> None:
        for result in results:
            self.add(result)

    def with_status(self, status: str) -> List[StepResult]:
        return [_res for _res in self.results if _res.status == status]

    @property
    def succeeded(self) -> List[StepResult]:
        return self.with_status(StepStatus.SUCCEEDED)

    @property
    def failed(self) -> List[StepResult]:
        return self.with_status(StepStatus.FAILED)

    @property
    def skipped(self) -> List[StepResult]:
        return self.with_status(StepStatus.SKIPPED)

    @property
    def success(self) -> bool:
        return all(_res.status == StepStatus.SUCCEEDED for _res in self.results)

    def get(self, address, kind: str = None) -> Optional[StepResult]:
        for result in self.results:
            if str(result.address) == str(address) and (
                kind is None or result.step.kind == kind
            ):
                return result
        return None

    def summary(self) -> OrderedDict:
        counts = OrderedDict((status, 0) for status in StepStatus.ALL)
        for result in self.results:
            counts[result.status] += 1
        return counts

    def to_dict(self) -> dict:
        return {
            "Success": self.success,
            "Cancelled": self.cancelled,
            "Aborted": self.aborted,
            "Steps": [_res.to_dict() for _res in self.results],
        }

    def render(self, tablefmt: str = "rst") -> str:
        return tabulate(
            [
                [
                    _res.batch,
                    str(_res.address),
                    _res.step.kind,
                    _res.status,
                    _res.attempts,
                    str(_res.error) if _res.error else (_res.reason or ""),
                ]
                for _res in self.results
            ],
            ["Batch", "Address", "Step", "Status", "Attempts", "Details"],
            tablefmt=tablefmt,
        )
