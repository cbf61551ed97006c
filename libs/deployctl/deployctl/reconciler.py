"""Reconciliation of a manifest set against a live cluster."""

import logging
import threading
from datetime import datetime
from typing import Callable, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
    wait_random,
)

from .applier import ResourceApplier
from .config import Settings
from .exceptions import ClusterError, FatalApplyError, TransientError
from .models import (
    Action,
    DestroyOutcome,
    DestroyResult,
    ManifestSet,
    ObservedState,
    PassStatus,
    PlanStep,
    ReadinessResult,
    ReconcileResult,
    ReconciliationPlan,
    Resource,
    ResourceOutcome,
    ResourcePhase,
    ResourceStatus,
)
from .readiness import ReadinessGate, cancellable_sleep
from .resolver import order, reverse_order
from .state import StateReader

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """Bounded exponential backoff with jitter for transient cluster errors."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=5, ge=1)
    initial_seconds: float = Field(default=1.0, ge=0)
    max_seconds: float = Field(default=30.0, ge=0)
    jitter_seconds: float = Field(default=1.0, ge=0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            initial_seconds=settings.backoff_initial_seconds,
            max_seconds=settings.backoff_max_seconds,
            jitter_seconds=settings.backoff_jitter_seconds,
        )


class _OperationFailed(Exception):
    """Internal: a cluster call failed for good after ``attempts`` tries."""

    def __init__(self, cause: ClusterError, attempts: int):
        self.cause = cause
        self.attempts = attempts
        super().__init__(str(cause))


def compute_action(resource: Resource, observed: ObservedState) -> tuple[Action, str]:
    """Compare desired and observed state. Returns the action and the reason."""
    if not observed.exists:
        return Action.CREATE, "not found in cluster"
    if observed.spec_hash is None:
        return Action.UPDATE, "exists but not managed by deployctl"
    if observed.spec_hash != resource.spec_hash:
        return Action.UPDATE, "desired spec changed"
    return Action.SKIP, "up to date"


class Reconciler:
    """
    Drives the cluster towards a manifest set.

    One pass walks the resources in dependency order:
    1. Observe the live state
    2. Create, update or skip
    3. Block on the readiness gate when the resource declares one

    Transient cluster errors are retried with backoff. A permanent error,
    an exhausted retry ceiling or a critical readiness timeout aborts the
    pass with FatalApplyError. Nothing is rolled back: resources applied
    before the failure stay in place and later ones are never attempted.
    """

    def __init__(
        self,
        reader: StateReader,
        applier: ResourceApplier,
        gate: Optional[ReadinessGate] = None,
        retry_policy: Optional[RetryPolicy] = None,
        readiness_timeout: float = 300.0,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """
        Initialize reconciler.

        Args:
            reader: Cluster state reader
            applier: Cluster resource applier
            gate: Readiness gate (defaults to one polling ``reader``)
            retry_policy: Backoff policy for transient errors
            readiness_timeout: Timeout for resources that declare none
            sleep: Sleep function used between retries (defaults to one the
                cancellation signal interrupts)
        """
        self.reader = reader
        self.applier = applier
        self.gate = gate or ReadinessGate(reader, sleep=sleep)
        self.retry_policy = retry_policy or RetryPolicy()
        self.readiness_timeout = readiness_timeout
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        reader: StateReader,
        applier: ResourceApplier,
        settings: Settings,
    ) -> "Reconciler":
        gate = ReadinessGate(reader, poll_interval=settings.readiness_poll_interval_seconds)
        return cls(
            reader,
            applier,
            gate=gate,
            retry_policy=RetryPolicy.from_settings(settings),
            readiness_timeout=settings.readiness_timeout_seconds,
        )

    def reconcile(
        self,
        manifest_set: ManifestSet,
        cancel: Optional[threading.Event] = None,
    ) -> ReconcileResult:
        """
        Run one reconciliation pass.

        Args:
            manifest_set: Desired state
            cancel: Checked before each resource; when set the pass stops at
                the next resource boundary. Readiness waits and retry
                backoff are interrupted, an apply call in flight is not

        Returns:
            ReconcileResult with status SUCCEEDED or CANCELLED

        Raises:
            FatalApplyError: If the pass had to be aborted
        """
        ordered = order(manifest_set)
        plan = ReconciliationPlan(manifest=manifest_set.name)
        result = ReconcileResult(
            manifest=manifest_set.name,
            plan=plan,
            outcomes=[ResourceOutcome(resource_id=r.id) for r in ordered],
        )

        logger.info(
            f"Starting reconciliation of {manifest_set.name} ({len(ordered)} resources)"
        )

        for i, (resource, outcome) in enumerate(zip(ordered, result.outcomes)):
            if cancel is not None and cancel.is_set():
                logger.warning(
                    f"Reconciliation of {manifest_set.name} cancelled before "
                    f"{resource.id} ({i}/{len(ordered)} done)"
                )
                result.status = PassStatus.CANCELLED
                result.finished_at = datetime.utcnow()
                return result

            logger.info(f"[{i + 1}/{len(ordered)}] Reconciling {resource.id}")
            if not self._reconcile_resource(resource, outcome, result, cancel):
                logger.warning(
                    f"Reconciliation of {manifest_set.name} cancelled while "
                    f"reconciling {resource.id}"
                )
                result.status = PassStatus.CANCELLED
                result.finished_at = datetime.utcnow()
                return result

        result.status = PassStatus.SUCCEEDED
        result.finished_at = datetime.utcnow()
        logger.info(
            f"Reconciled {manifest_set.name}: {result.created} created, "
            f"{result.updated} updated, {result.skipped} unchanged"
        )
        return result

    def plan(self, manifest_set: ManifestSet) -> ReconciliationPlan:
        """
        Compute the actions a pass would take without applying anything.

        Raises:
            FatalApplyError: If a resource cannot be observed
        """
        plan = ReconciliationPlan(manifest=manifest_set.name)
        for resource in order(manifest_set):
            try:
                observed, _ = self._with_retries(lambda: self.reader.observe(resource))
            except _OperationFailed as e:
                raise FatalApplyError(
                    resource.id, None, e.attempts - 1, str(e.cause)
                ) from e.cause
            action, reason = compute_action(resource, observed)
            plan.steps.append(PlanStep(resource=resource, action=action, reason=reason))
        return plan

    def status(self, manifest_set: ManifestSet) -> list[ResourceStatus]:
        """Report the live state of every resource, in apply order."""
        statuses = []
        for resource in order(manifest_set):
            try:
                observed, _ = self._with_retries(lambda: self.reader.observe(resource))
            except _OperationFailed as e:
                logger.error(f"Cannot observe {resource.id}: {e.cause}")
                statuses.append(
                    ResourceStatus(
                        resource_id=resource.id,
                        exists=False,
                        in_sync=False,
                        ready=False,
                        message=f"error: {e.cause}",
                    )
                )
                continue

            statuses.append(
                ResourceStatus(
                    resource_id=resource.id,
                    exists=observed.exists,
                    in_sync=observed.exists and observed.spec_hash == resource.spec_hash,
                    ready=observed.exists and observed.ready,
                    generation=observed.generation,
                    last_transition=observed.last_transition,
                    message=observed.message,
                )
            )
        return statuses

    def destroy(
        self,
        manifest_set: ManifestSet,
        cancel: Optional[threading.Event] = None,
    ) -> DestroyResult:
        """
        Delete every resource in reverse dependency order.

        Best-effort: a failed deletion is recorded and the teardown moves on.
        Never waits for readiness.
        """
        result = DestroyResult(manifest=manifest_set.name)
        logger.info(f"Destroying {manifest_set.name}")

        for resource in reverse_order(manifest_set):
            if cancel is not None and cancel.is_set():
                logger.warning(f"Teardown of {manifest_set.name} cancelled")
                break
            try:
                deleted, _ = self._with_retries(
                    lambda: self.applier.delete(resource), cancel=cancel
                )
            except _OperationFailed as e:
                logger.error(f"Failed to delete {resource.id}: {e.cause}")
                result.outcomes.append((resource.id, DestroyOutcome.ERROR, str(e.cause)))
                continue

            outcome = DestroyOutcome.DELETED if deleted else DestroyOutcome.ABSENT
            result.outcomes.append((resource.id, outcome, None))

        return result

    def _reconcile_resource(
        self,
        resource: Resource,
        outcome: ResourceOutcome,
        result: ReconcileResult,
        cancel: Optional[threading.Event] = None,
    ) -> bool:
        """
        Observe, apply and gate one resource.

        Returns:
            False if the pass was cancelled while waiting on this resource.
            The outcome then stays APPLYING: the resource may be applied but
            has not been confirmed ready.
        """
        rid = resource.id
        outcome.transition(ResourcePhase.APPLYING)

        try:
            observed, _ = self._with_retries(
                lambda: self.reader.observe(resource), cancel=cancel
            )
        except _OperationFailed as e:
            if _cancelled(cancel, e):
                return False
            raise self._fail(result, outcome, None, e.attempts - 1, str(e.cause)) from e.cause

        action, reason = compute_action(resource, observed)
        outcome.action = action
        result.plan.steps.append(PlanStep(resource=resource, action=action, reason=reason))
        logger.info(f"{rid}: {action.value} ({reason})")

        if action != Action.SKIP:
            try:
                _, attempts = self._with_retries(
                    lambda: self.applier.apply(resource, action),
                    on_retry=lambda _: outcome.transition(ResourcePhase.APPLYING),
                    cancel=cancel,
                )
            except _OperationFailed as e:
                outcome.attempts = e.attempts
                if _cancelled(cancel, e):
                    return False
                raise self._fail(
                    result, outcome, action, e.attempts - 1, str(e.cause)
                ) from e.cause
            outcome.attempts = attempts

        if resource.readiness is not None:
            retries = max(outcome.attempts - 1, 0)
            timeout = resource.readiness.timeout_seconds or self.readiness_timeout
            try:
                readiness = self.gate.await_ready(resource, timeout, cancel)
            except ClusterError as e:
                raise self._fail(
                    result, outcome, action, retries, f"readiness check failed: {e}"
                ) from e
            outcome.readiness = readiness

            if readiness == ReadinessResult.CANCELLED:
                return False
            if readiness == ReadinessResult.TIMED_OUT:
                if resource.readiness.critical:
                    raise self._fail(
                        result, outcome, action, retries, f"not ready after {timeout:.0f}s"
                    )
                logger.warning(f"{rid} not ready after {timeout:.0f}s, continuing")

        outcome.transition(ResourcePhase.READY)
        return True

    def _fail(
        self,
        result: ReconcileResult,
        outcome: ResourceOutcome,
        action: Optional[Action],
        retries: int,
        reason: str,
    ) -> FatalApplyError:
        """Mark the resource and the pass as failed and build the error to raise."""
        outcome.error = reason
        outcome.transition(ResourcePhase.FAILED)
        result.status = PassStatus.FAILED
        result.finished_at = datetime.utcnow()

        error = FatalApplyError(outcome.resource_id, action, retries, reason, result)
        logger.error(f"Aborting reconciliation of {result.manifest}: {error}")
        return error

    def _with_retries(
        self,
        operation: Callable[[], T],
        on_retry: Optional[Callable[[int], None]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> tuple[T, int]:
        """
        Run a cluster call, retrying transient failures.

        Backoff doubles from ``initial_seconds`` up to ``max_seconds`` and adds
        up to ``jitter_seconds`` of random delay. Setting ``cancel`` stops
        further attempts and cuts the current backoff short.

        Returns:
            (value, number of attempts made)

        Raises:
            _OperationFailed: On a permanent error, when the ceiling is hit or
                when retrying was cancelled
        """
        policy = self.retry_policy
        stop = stop_after_attempt(policy.max_attempts)
        if cancel is not None:
            stop = stop | stop_when_event_set(cancel)

        retrying = Retrying(
            stop=stop,
            wait=wait_exponential(multiplier=policy.initial_seconds, max=policy.max_seconds)
            + wait_random(0, policy.jitter_seconds),
            retry=retry_if_exception_type(TransientError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep or cancellable_sleep(cancel),
            reraise=True,
        )

        attempts = 0
        try:
            for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if attempts > 1 and on_retry is not None:
                        on_retry(attempts)
                    value = operation()
        except ClusterError as e:
            raise _OperationFailed(e, attempts) from e
        return value, attempts


def _cancelled(cancel: Optional[threading.Event], failure: _OperationFailed) -> bool:
    """True when retrying a transient failure was cut short by cancellation."""
    return (
        cancel is not None
        and cancel.is_set()
        and isinstance(failure.cause, TransientError)
    )
