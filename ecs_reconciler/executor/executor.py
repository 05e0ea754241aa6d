# SPDX-License-Identifier: MPL-2.0
# Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Executor: applies a plan, batch after batch, against the provider.

Within a batch, steps run concurrently. A step resolves the references of its resource against the state
(so dependents use the ids of the resources just created), calls the provider, polls the request until the
resource is stable, and only then writes the state record.

A step failing skips all the steps which depend on it. Steps which do not depend on it still run, unless
FailFast is set. Nothing is rolled back.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional
from uuid import uuid4

from tenacity import Retrying
from tenacity.retry import retry_if_exception_type
from tenacity.stop import stop_after_attempt
from tenacity.wait import wait_exponential

from ecs_reconciler.common import LOG
from ecs_reconciler.common.settings import ReconcilerSettings
from ecs_reconciler.exceptions import (
    ImmutableAttributeConflict,
    OperationTimeout,
    PermanentFailure,
    ReconcilerBaseException,
    StalePlanError,
    TransientProviderError,
    UnresolvedReferenceError,
)
from ecs_reconciler.executor.apply_result import (
    ApplyResult,
    BatchResult,
    StepResult,
    StepStatus,
)
from ecs_reconciler.graph.references import resolve
from ecs_reconciler.plan.plan_operations import Plan
from ecs_reconciler.plan.scheduler import ExecutionBatches, Step, StepKind, schedule
from ecs_reconciler.providers.provider import ProgressEvent, ResourceProvider
from ecs_reconciler.resources import ReplacementPolicy
from ecs_reconciler.state import StateRecord, StateStore


class StateLookup:
    """
    Resolves references while applying, from the records in the store.
    """

    def __init__(self, graph, store: StateStore):
        self.graph = graph
        self.store = store

    def __call__(self, name: str, attribute: str = None):
        node = self.graph.by_name(name)
        if node is None:
            raise UnresolvedReferenceError(f"{name} is not declared", None, name)
        record = self.store.get(node.address)
        if record is None:
            raise UnresolvedReferenceError(
                f"{node.address} has not been applied yet", None, name
            )
        try:
            return record.get_output(attribute)
        except KeyError as error:
            raise UnresolvedReferenceError(
                f"{node.address} has no attribute {attribute}", None, name
            ) from error


class StepContext:
    """
    What an attempt of a step learned, for the next attempt to pick up from.

    :ivar str client_token: same token for all the attempts of the step
    :ivar str identifier: id of the resource the step works on, once known
    :ivar int attempts:
    """

    def __init__(self, identifier: str = None):
        self.client_token = str(uuid4())
        self.identifier = identifier
        self.attempts = 0
        self.reason = None


class Executor:
    """
    Applies plans to the provider and records the results in the state store.

    :ivar StateStore store:
    :ivar ResourceProvider provider:
    :ivar ReconcilerSettings settings:
    """

    def __init__(
        self,
        store: StateStore,
        provider: ResourceProvider,
        settings: ReconcilerSettings = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.provider = provider
        self.settings = settings if settings else ReconcilerSettings()
        self._sleep = sleep
        self._clock = clock
        self.pseudo_parameters = self.settings.pseudo_parameters
        self._cancel_event = threading.Event()
        self._graph = None

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """
        Requests the apply to stop. Steps already running complete, the next batches do not start.
        """
        LOG.warning("Cancellation requested. Stopping after the current batch.")
        self._cancel_event.set()

    def apply(self, plan: Plan, owner: str = None) -> ApplyResult:
        """
        Applies the plan while holding the state lock.

        :param Plan plan: a plan computed against the current state, never applied
        :param str owner: recorded in the lock, defaults to user@host
        :raises LockHeldError: if another apply holds the lock. Nothing is changed.
        :raises StalePlanError: if the state changed since the plan was computed
        :raises PlanConsumedError: if the plan was already applied
        :rtype: ApplyResult
        """
        with self.store.lock(owner):
            if self.store.serial != plan.serial or self.store.lineage != plan.lineage:
                raise StalePlanError(
                    f"The state changed since the plan was computed (serial {plan.serial}, "
                    f"now {self.store.serial}). Compute a new plan."
                )
            plan.consume()
            self._cancel_event.clear()
            batches = schedule(plan.changes, plan.graph)
            return self._apply_batches(plan, batches)

    def _apply_batches(self, plan: Plan, batches: ExecutionBatches) -> ApplyResult:
        result = ApplyResult(plan)
        blocked: dict = {}
        LOG.info(f"Applying {len(batches.steps)} steps in {len(batches)} batches")
        for index, batch in enumerate(batches):
            if self.cancelled or result.aborted:
                if self.cancelled:
                    result.cancelled = True
                self._stop_batch(result, batch, index)
                continue
            runnable = []
            for step in batch:
                if step.key in blocked:
                    result.add(
                        StepResult(
                            step, StepStatus.SKIPPED, index, reason=blocked[step.key]
                        )
                    )
                    LOG.warning(f"{step!r} - skipped: {blocked[step.key]}")
                else:
                    runnable.append(step)
            batch_result = self.apply_batch(runnable, plan.graph, index)
            result.extend(batch_result)
            for failed in batch_result.failed:
                for key in batches.dependent_steps(failed.step):
                    blocked.setdefault(key, f"{failed.step!r} failed")
            if batch_result.failed and self.settings.fail_fast:
                LOG.error("Stopping the apply after the first failure (FailFast)")
                result.aborted = True
        result.results.sort(key=lambda _res: (_res.batch, _res.step.order))
        summary = ", ".join(
            f"{count} {status}" for status, count in result.summary().items() if count
        )
        if result.success:
            LOG.info(f"Apply complete: {summary if summary else 'nothing to do'}")
        else:
            LOG.error(f"Apply incomplete: {summary}")
        return result

    def _stop_batch(self, result: ApplyResult, batch, index: int) -> None:
        status = StepStatus.CANCELLED if self.cancelled else StepStatus.SKIPPED
        reason = "apply cancelled" if self.cancelled else "apply stopped after a failure"
        for step in batch:
            result.add(StepResult(step, status, index, reason=reason))

    def apply_batch(self, batch, graph=None, index: int = 0) -> BatchResult:
        """
        Runs the steps of a batch concurrently, bounded by the Concurrency setting.

        :param batch: the steps, all independent of one another
        :param ResourceGraph graph: the declared resources the steps apply
        :param int index: the batch index, reported in the results
        :rtype: BatchResult
        """
        if graph is not None:
            self._graph = graph
        steps = list(batch)
        if not steps:
            return BatchResult(index)
        LOG.debug(f"Batch {index} - {', '.join(repr(_step) for _step in steps)}")
        with ThreadPoolExecutor(
            max_workers=min(self.settings.concurrency, len(steps)),
            thread_name_prefix=f"batch{index}",
        ) as executor:
            results = list(
                executor.map(lambda _step: self._run_step(_step, index), steps)
            )
        return BatchResult(index, results)

    def _run_step(self, step: Step, index: int) -> StepResult:
        context = StepContext(step.operation.prior_identifier)
        try:
            self._attempt(step, context)
        except ReconcilerBaseException as error:
            LOG.error(f"{step!r} - failed after {context.attempts} attempt(s): {error}")
            return self._failed(step, index, context, error)
        except Exception as error:
            LOG.exception(f"{step!r} - unexpected error on attempt {context.attempts}")
            return self._failed(step, index, context, error)
        LOG.info(f"{step!r} - complete ({context.identifier})")
        return StepResult(
            step,
            StepStatus.SUCCEEDED,
            index,
            attempts=context.attempts,
            identifier=context.identifier,
            reason=context.reason,
        )

    @staticmethod
    def _failed(step: Step, index: int, context: StepContext, error: Exception) -> StepResult:
        return StepResult(
            step,
            StepStatus.FAILED,
            index,
            attempts=context.attempts,
            identifier=context.identifier,
            error=error,
        )

    def _attempt(self, step: Step, context: StepContext) -> None:
        """
        Runs the step, retrying on transient errors with exponential backoff.

        :raises PermanentFailure: once all the attempts failed with transient errors
        """
        try:
            for attempt in Retrying(
                reraise=True,
                stop=stop_after_attempt(self.settings.max_attempts),
                wait=wait_exponential(
                    multiplier=self.settings.backoff_base,
                    max=self.settings.backoff_max,
                ),
                retry=retry_if_exception_type(TransientProviderError),
                sleep=self._sleep,
            ):
                with attempt:
                    context.attempts += 1
                    if context.attempts > 1:
                        LOG.warning(f"{step!r} - attempt {context.attempts}")
                        if not self.provider.idempotent and self._recover(step, context):
                            return
                    self._perform(step, context)
        except TransientProviderError as error:
            raise PermanentFailure(
                f"{step!r} - gave up after {context.attempts} attempts: {error}",
                error.error_code,
            ) from error

    def _recover(self, step: Step, context: StepContext) -> bool:
        """
        For providers without idempotency tokens, checks whether the previous attempt did go through.

        :return: True if the step is complete
        """
        resource_type = step.address.resource_type
        if step.kind in StepKind.APPLY_KINDS and step.kind != StepKind.UPDATE:
            if context.identifier and context.identifier != step.operation.prior_identifier:
                outputs = self.provider.read(resource_type, context.identifier)
                if outputs is not None:
                    LOG.info(f"{step!r} - {context.identifier} exists, adopting it")
                    properties = self._resolve(step)
                    self._commit_apply(step, context.identifier, properties, outputs)
                    return True
        elif step.is_destroy:
            identifier = self._destroyed_identifier(step)
            if self.provider.read(resource_type, identifier) is None:
                LOG.info(f"{step!r} - {identifier} no longer exists")
                self._commit_destroy(step, identifier)
                return True
        return False

    def _perform(self, step: Step, context: StepContext) -> None:
        if step.kind in [StepKind.CREATE, StepKind.CREATE_NEW]:
            self._create(step, context)
        elif step.kind == StepKind.UPDATE:
            self._update(step, context)
        elif step.is_destroy:
            self._destroy(step, context)
        else:
            raise ValueError("Unsupported step kind", step.kind)

    def _resolve(self, step: Step) -> dict:
        node = self._graph[step.address]
        return resolve(
            node.properties,
            StateLookup(self._graph, self.store),
            self.pseudo_parameters,
        )

    def _is_current(self, step: Step, identifier: str) -> bool:
        record = self.store.get(step.address)
        return record is not None and record.identifier == identifier

    def _keep_current(self, step: Step, properties: dict, context: StepContext) -> bool:
        """
        A create before destroy replacement planned only because of values unknown at plan time keeps the
        current object when, once resolved, its properties did not change.
        """
        if (
            step.kind != StepKind.CREATE_NEW
            or step.operation.replacement_policy != ReplacementPolicy.CREATE_BEFORE_DESTROY
        ):
            return False
        record = self.store.get(step.address)
        if (
            record is None
            or record.identifier != step.operation.prior_identifier
            or record.attributes != properties
        ):
            return False
        context.identifier = record.identifier
        context.reason = "resolved properties unchanged, object kept"
        LOG.info(f"{step!r} - properties unchanged once resolved, keeping {record.identifier}")
        dependencies = self._dependencies(step)
        if record.dependencies != dependencies:
            record.dependencies = dependencies
            self.store.put(step.address, record)
        return True

    def _create(self, step: Step, context: StepContext) -> None:
        resource_type = step.address.resource_type
        properties = self._resolve(step)
        if self._keep_current(step, properties, context):
            return
        event = self.provider.create(resource_type, properties, context.client_token)
        context.identifier = event.identifier
        event = self._wait(step, event, context)
        outputs = self.provider.read(resource_type, event.identifier)
        self._commit_apply(step, event.identifier, properties, outputs)

    def _update(self, step: Step, context: StepContext) -> None:
        resource_type = step.address.resource_type
        record = self.store.get(step.address)
        properties = self._resolve(step)
        dependencies = self._dependencies(step)
        if record is None:
            LOG.info(f"{step!r} - previous object already destroyed, creating the replacement")
            self._create(step, context)
            return
        if record.attributes == properties:
            context.reason = "resolved properties unchanged"
            LOG.info(f"{step!r} - properties unchanged once resolved, nothing to update")
            if record.dependencies != dependencies:
                record.dependencies = dependencies
                self.store.put(step.address, record)
            return
        try:
            event = self.provider.update(
                resource_type,
                record.identifier,
                record.attributes,
                properties,
                context.client_token,
            )
            self._wait(step, event, context)
        except ImmutableAttributeConflict as error:
            self._replace_on_conflict(step, context, record, properties, error)
            return
        outputs = self.provider.read(resource_type, record.identifier)
        self._commit_apply(step, record.identifier, properties, outputs)

    def _replace_on_conflict(
        self,
        step: Step,
        context: StepContext,
        record: StateRecord,
        properties: dict,
        error: ImmutableAttributeConflict,
    ) -> None:
        """
        The provider refused to update in place: replaces the object following the type replacement policy.
        With create before destroy, the previous object is kept as deposed, so resources still pointing at it
        are repointed and the next plan destroys it.
        """
        resource_type = step.address.resource_type
        policy = self._graph[step.address].descriptor.replacement_policy
        LOG.warning(f"{step!r} - {error}. Replacing {record.identifier} ({policy})")
        deposed = list(record.deposed)
        if policy == ReplacementPolicy.DESTROY_BEFORE_CREATE:
            event = self.provider.delete(resource_type, record.identifier, str(uuid4()))
            self._wait(step, event, context)
            self.store.delete(step.address)
            context.reason = f"{record.identifier} replaced, not updatable in place"
        else:
            deposed.append(record.identifier)
            context.reason = f"{record.identifier} deposed, not updatable in place"
        event = self.provider.create(resource_type, properties, str(uuid4()))
        context.identifier = event.identifier
        event = self._wait(step, event, context)
        outputs = self.provider.read(resource_type, event.identifier)
        self.store.put(
            step.address,
            StateRecord(
                event.identifier,
                resource_type,
                attributes=properties,
                outputs=outputs if outputs else {},
                dependencies=self._dependencies(step),
                deposed=deposed,
            ),
        )

    def _destroyed_identifier(self, step: Step) -> str:
        if step.deposed_id:
            return step.deposed_id
        return step.operation.prior_identifier

    def _destroy(self, step: Step, context: StepContext) -> None:
        identifier = self._destroyed_identifier(step)
        context.identifier = identifier
        if (
            step.kind == StepKind.DESTROY_OLD
            and step.operation.replacement_policy == ReplacementPolicy.CREATE_BEFORE_DESTROY
            and self._is_current(step, identifier)
        ):
            context.reason = "object kept, it was not replaced"
            LOG.info(f"{step!r} - {identifier} is still the current object, not deleting it")
            return
        event = self.provider.delete(
            step.address.resource_type, identifier, context.client_token
        )
        self._wait(step, event, context)
        self._commit_destroy(step, identifier)

    def _dependencies(self, step: Step) -> list:
        return sorted(str(_dep) for _dep in self._graph[step.address].depends_on)

    def _commit_apply(
        self, step: Step, identifier: str, properties: dict, outputs: Optional[dict]
    ) -> None:
        """
        Writes the record of a resource created or updated.
        A create before destroy replacement keeps the previous id as deposed, until destroy-old deletes it.
        """
        previous = self.store.get(step.address)
        deposed = list(previous.deposed) if previous else []
        if (
            step.kind == StepKind.CREATE_NEW
            and previous
            and previous.identifier != identifier
            and step.operation.replacement_policy == ReplacementPolicy.CREATE_BEFORE_DESTROY
        ):
            deposed.append(previous.identifier)
        self.store.put(
            step.address,
            StateRecord(
                identifier,
                step.address.resource_type,
                attributes=properties,
                outputs=outputs if outputs else {},
                dependencies=self._dependencies(step),
                deposed=deposed,
            ),
        )

    def _commit_destroy(self, step: Step, identifier: str) -> None:
        """
        Removes the object destroyed from the state: the whole record, or only the deposed id.
        """
        if step.kind == StepKind.DESTROY and not step.deposed_id:
            self.store.delete(step.address)
            return
        if (
            step.kind == StepKind.DESTROY_OLD
            and step.operation.replacement_policy == ReplacementPolicy.DESTROY_BEFORE_CREATE
        ):
            self.store.delete(step.address)
            return
        record = self.store.get(step.address)
        if record is None:
            return
        if identifier in record.deposed:
            record.deposed.remove(identifier)
            self.store.put(step.address, record)

    def _wait(self, step: Step, event: ProgressEvent, context: StepContext) -> ProgressEvent:
        """
        Polls the request until it is no longer in progress, with exponential backoff.

        :raises OperationTimeout: if still in progress after PollTimeout seconds
        :raises ProviderError: if the request failed
        """
        deadline = self._clock() + self.settings.poll_timeout
        interval = self.settings.poll_interval
        while event.in_flight:
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise OperationTimeout(
                    f"{step!r} - {event.resource_type} {event.identifier or ''} not stable after "
                    f"{self.settings.poll_timeout}s"
                )
            self._sleep(min(interval, remaining))
            interval = min(interval * 2, self.settings.poll_max_interval)
            event = self.provider.status(event)
            if event.identifier:
                context.identifier = event.identifier
        if event.failed:
            raise event.to_error()
        if event.identifier is None:
            event.identifier = context.identifier
        return event
