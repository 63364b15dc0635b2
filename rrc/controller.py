"""Rollout state machine.

Pending -> InProgress -> (Paused <-> InProgress)* -> Succeeded | Failed | RolledBack

A controller owns its RolloutStatus exclusively. Commands (pause, resume,
cancel) only set flags; the worker observes them at step boundaries, health
ticks and retry waits.
"""
from __future__ import annotations

import dataclasses
import logging
import secrets
from dataclasses import dataclass, field
from threading import Event, Lock, Thread
from typing import Any, Callable

from . import db
from .artifacts import Artifact, ArtifactResolver
from .db import utc_now
from .errors import (
    Cancelled,
    HealthTimeout,
    InvalidTransition,
    RegistryUnavailable,
    RolloutError,
    WorkloadError,
)
from .events import EventBus, RolloutEvent
from .health import HealthGate, HealthSample, HealthStatus
from .planner import RolloutPlan, RolloutPlanner, Step
from .runtime import TRANSITIONS, RolloutState, RolloutStatus
from .workload import Replica, ReplicaHealthTarget, WorkloadHandle, pick_for_removal

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 5
    base_s: float = 2.0
    cap_s: float = 60.0

    def delay(self, attempt: int) -> float:
        """Backoff after the given (1-based) failed attempt."""
        return min(self.cap_s, self.base_s * (2 ** max(0, attempt - 1)))


@dataclass(frozen=True)
class RolloutOptions:
    desired_replicas: int
    max_unavailable: int = 0
    max_surge: int = 1
    auto_rollback: bool = True
    health_timeout_s: float = 120.0


@dataclass
class AppliedStep:
    index: int
    step: Step
    created: list[Replica] = field(default_factory=list)
    removed: list[Replica] = field(default_factory=list)


class RolloutController:
    def __init__(
        self,
        target: str,
        source_revision: str,
        options: RolloutOptions,
        workload: WorkloadHandle,
        resolver: ArtifactResolver,
        planner: RolloutPlanner | None = None,
        gate: HealthGate | None = None,
        events: EventBus | None = None,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], None] | None = None,
        on_terminal: Callable[["RolloutController"], None] | None = None,
        rollout_id: str | None = None,
    ) -> None:
        self.target = target
        self.source_revision = source_revision
        self.options = options
        self.workload = workload
        self.resolver = resolver
        self.planner = planner or RolloutPlanner()
        self.gate = gate or HealthGate()
        self.events = events or EventBus()
        self.retry = retry or RetryPolicy()
        self.rollout_id = rollout_id or secrets.token_hex(6)
        self._sleep = sleep
        self._on_terminal = on_terminal

        self._lock = Lock()
        self._cancel = Event()
        self._pause_requested = Event()
        self._resume = Event()
        self._done = Event()
        self._started = False
        self._thread: Thread | None = None
        self._applied: list[AppliedStep] = []
        self._status = RolloutStatus(
            id=self.rollout_id,
            target=target,
            source_revision=source_revision,
            desired_replicas=options.desired_replicas,
        )

    # -- observation -------------------------------------------------------

    @property
    def status(self) -> RolloutStatus:
        with self._lock:
            return dataclasses.replace(self._status)

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> RolloutStatus:
        """Block until the rollout is terminal (or timeout); returns the status."""
        self._done.wait(timeout)
        return self.status

    def result(self, timeout: float | None = None) -> RolloutStatus:
        """Like wait(), but re-raises the recorded error of a Failed rollout."""
        if not self._done.wait(timeout):
            raise TimeoutError(f"Rollout {self.rollout_id} still {self.status.state.value}")
        st = self.status
        if st.state is RolloutState.FAILED and st.error is not None:
            raise st.error
        return st

    # -- commands ----------------------------------------------------------

    def start(self) -> None:
        """Run the rollout on a background thread."""
        self._claim_worker()
        self._thread = Thread(
            target=self._run, kwargs={"reraise": False}, name=f"rollout-{self.rollout_id}", daemon=True
        )
        self._thread.start()

    def pause(self) -> None:
        with self._lock:
            if self._status.state is not RolloutState.IN_PROGRESS:
                raise InvalidTransition(f"Cannot pause a rollout in state {self._status.state.value}")
            self._pause_requested.set()
        self._emit("state", "Pause requested")

    def resume(self) -> None:
        with self._lock:
            state = self._status.state
            pending_pause = state is RolloutState.IN_PROGRESS and self._pause_requested.is_set()
            if state is not RolloutState.PAUSED and not pending_pause:
                raise InvalidTransition(f"Cannot resume a rollout in state {state.value}")
            self._pause_requested.clear()
            self._resume.set()
        self._emit("state", "Resume requested")

    def cancel(self) -> None:
        with self._lock:
            state = self._status.state
            if state.terminal:
                raise InvalidTransition(f"Cannot cancel a rollout in state {state.value}")
            self._cancel.set()
            self._resume.set()
            never_started = not self._started
            if never_started:
                # Nothing will observe the flag; settle it here.
                self._started = True
        self._emit("state", "Cancel requested", level="WARN")
        if never_started:
            self._finish(RolloutState.FAILED, "Cancelled before start", Cancelled("Rollout cancelled"))

    # -- worker ------------------------------------------------------------

    def run(self) -> RolloutStatus:
        """Execute the rollout synchronously; returns the terminal status."""
        self._claim_worker()
        return self._run()

    def _claim_worker(self) -> None:
        with self._lock:
            if self._started or self._status.state is not RolloutState.PENDING:
                raise InvalidTransition(f"Rollout {self.rollout_id} already started")
            self._started = True
            snapshot = dataclasses.replace(self._status)
        self._persist(snapshot)
        self._emit("state", f"Rollout of {self.source_revision} requested for {self.target}", state=snapshot.state.value)

    def _run(self, reraise: bool = True) -> RolloutStatus:
        try:
            self._execute()
        except Exception as e:
            if not self._done.is_set():
                err = RolloutError(f"Unexpected error: {type(e).__name__}: {e}")
                if self.options.auto_rollback:
                    self._rollback("unexpected error")
                self._finish(RolloutState.FAILED, err.message, err)
            if reraise:
                raise
            _LOGGER.exception("Rollout %s crashed", self.rollout_id)
        return self.status

    def _execute(self) -> None:
        try:
            artifact = self._resolve_with_retry()
            initial = self.workload.replica_count()
            plan = self.planner.plan(
                initial,
                self.options.desired_replicas,
                self.options.max_unavailable,
                self.options.max_surge,
            )
        except RolloutError as e:
            self._finish(RolloutState.FAILED, e.message, e)
            return

        self._transition(
            RolloutState.IN_PROGRESS,
            f"Rolling out {artifact.pinned_reference}: {initial} -> {plan.desired_replicas} replicas in {len(plan)} steps",
            artifact=artifact,
            plan=plan,
            initial_replicas=initial,
            replicas=initial,
        )

        try:
            self._run_steps(artifact, plan)
        except Cancelled as e:
            self._rollback("cancelled")
            self._finish(RolloutState.FAILED, e.message, e)
        except (HealthTimeout, WorkloadError) as e:
            if self.options.auto_rollback:
                restored = self._rollback(type(e).__name__)
                state = RolloutState.ROLLED_BACK if restored else RolloutState.FAILED
                self._finish(state, e.message, e)
            else:
                self._finish(RolloutState.FAILED, e.message, e)
        else:
            self._finish(RolloutState.SUCCEEDED, "Rollout completed")

    def _resolve_with_retry(self) -> Artifact:
        last: RegistryUnavailable | None = None
        attempts = max(1, self.retry.attempts)
        for attempt in range(1, attempts + 1):
            if self._cancel.is_set():
                raise Cancelled("Rollout cancelled while resolving artifact")
            try:
                artifact = self.resolver.resolve(self.source_revision)
            except RegistryUnavailable as e:
                last = e
                if attempt == attempts:
                    break
                delay = self.retry.delay(attempt)
                self._emit(
                    "retry",
                    f"Registry unavailable (attempt {attempt}/{attempts}), retrying in {delay:g}s",
                    level="WARN",
                    attempt=attempt,
                    delay_s=delay,
                    error=e.message,
                )
                self._wait(delay)
                continue
            self._emit(
                "artifact",
                f"Resolved {self.source_revision} to {artifact.digest}",
                image_reference=artifact.image_reference,
                digest=artifact.digest,
            )
            return artifact
        raise RegistryUnavailable(
            f"Registry unavailable after {attempts} attempts: {last.message if last else 'unknown error'}"
        )

    def _run_steps(self, artifact: Artifact, plan: RolloutPlan) -> None:
        for index, step in enumerate(plan.steps):
            resumed = self._checkpoint()
            previous = self._applied[-1] if self._applied else None
            if resumed:
                ids = [r.id for r in previous.created] if previous and previous.created else None
                self._gate(ids, "re-validating after resume")
            elif previous is not None and previous.created:
                self._gate([r.id for r in previous.created], f"before step {index + 1}/{len(plan)}")
            self._apply(index, step, artifact, len(plan))

        self._checkpoint()
        self._gate(None, "final confirmation")

    def _checkpoint(self) -> bool:
        """Step boundary: honour cancel and pause. Returns True if the rollout was paused."""
        if self._cancel.is_set():
            raise Cancelled("Rollout cancelled")
        if not self._pause_requested.is_set():
            return False

        self._transition(RolloutState.PAUSED, "Paused at step boundary")
        while True:
            self._resume.wait()
            self._resume.clear()
            if self._cancel.is_set():
                raise Cancelled("Rollout cancelled while paused")
            if not self._pause_requested.is_set():
                break
        self._transition(RolloutState.IN_PROGRESS, "Resumed")
        return True

    def _gate(self, replica_ids: list[str] | None, reason: str) -> HealthSample:
        target = ReplicaHealthTarget(self.workload, replica_ids)
        self._emit("health", f"Health gate {reason} on {target.describe()}")

        def on_sample(sample: HealthSample, streak: int) -> None:
            self._emit(
                "health",
                f"{sample.status.value} ({streak}/{self.gate.required_streak})",
                level="WARN" if sample.status is HealthStatus.UNHEALTHY else "INFO",
                status=sample.status.value,
                streak=streak,
                sample_ts=sample.timestamp,
                detail=sample.detail,
            )

        sample = self.gate.await_healthy(target, self.options.health_timeout_s, cancel=self._cancel, on_sample=on_sample)
        # A cancel accepted during the last tick still wins over the confirmation.
        if self._cancel.is_set():
            raise Cancelled(f"Rollout cancelled during health gate {reason}")
        return sample

    def _apply(self, index: int, step: Step, artifact: Artifact, total: int) -> None:
        applied = AppliedStep(index=index, step=step)
        if step.delta > 0:
            applied.created = self.workload.create_replicas(artifact.pinned_reference, step.batch_size)
        else:
            victims = pick_for_removal(self.workload.list_replicas(), artifact, step.batch_size)
            self.workload.delete_replicas([r.id for r in victims])
            applied.removed = victims
        self._applied.append(applied)

        replicas = self._replica_count()
        with self._lock:
            self._status.last_completed_step = index
            self._status.replicas = replicas
            self._status.message = f"Step {index + 1}/{total}: {step.old_replica_count} -> {step.target_replica_count}"
            self._status.updated_at = utc_now()
            snapshot = dataclasses.replace(self._status)
        self._persist(snapshot)
        self._emit(
            "step",
            snapshot.message,
            step=index,
            batch_size=step.batch_size,
            old_replica_count=step.old_replica_count,
            target_replica_count=step.target_replica_count,
            created=[r.id for r in applied.created],
            removed=[r.id for r in applied.removed],
        )

    def _rollback(self, reason: str) -> bool:
        """Replay applied steps in reverse. Best effort: returns False if anything failed."""
        if not self._applied:
            return True
        self._emit("rollback", f"Rolling back {len(self._applied)} steps ({reason})", level="WARN")
        ok = True
        while self._applied:
            applied = self._applied.pop()
            try:
                if applied.created:
                    self.workload.delete_replicas([r.id for r in applied.created])
                by_image: dict[str, int] = {}
                for r in applied.removed:
                    by_image[r.image_reference] = by_image.get(r.image_reference, 0) + 1
                for image, count in by_image.items():
                    self.workload.create_replicas(image, count)
            except Exception as e:
                ok = False
                self._emit("rollback", f"Rollback of step {applied.index + 1} failed: {e}", level="ERROR")
                continue
            undo = applied.step.reversed()
            self._emit(
                "rollback",
                f"Reverted step {applied.index + 1}: {undo.old_replica_count} -> {undo.target_replica_count}",
                step=applied.index,
            )
        return ok

    # -- bookkeeping -------------------------------------------------------

    def _replica_count(self) -> int | None:
        try:
            return self.workload.replica_count()
        except WorkloadError:
            with self._lock:
                return self._status.replicas

    def _wait(self, delay: float) -> None:
        if self._sleep is not None:
            self._sleep(delay)
        else:
            self._cancel.wait(delay)

    def _transition(self, state: RolloutState, message: str, **fields: Any) -> None:
        with self._lock:
            current = self._status.state
            if state not in TRANSITIONS[current]:
                raise InvalidTransition(f"Illegal transition {current.value} -> {state.value}")
            self._status.state = state
            self._status.message = message
            for k, v in fields.items():
                setattr(self._status, k, v)
            self._status.updated_at = utc_now()
            snapshot = dataclasses.replace(self._status)
        self._persist(snapshot)
        level = "ERROR" if state is RolloutState.FAILED else "WARN" if state is RolloutState.ROLLED_BACK else "INFO"
        self._emit("state", f"{current.value} -> {state.value}: {message}", level=level, state=state.value)

    def _finish(self, state: RolloutState, message: str, error: RolloutError | None = None) -> None:
        replicas = self._replica_count()
        with self._lock:
            last_step = self._status.last_completed_step
        if error is not None:
            error.with_context(last_step, replicas)
        self._transition(state, message, replicas=replicas, error=error)
        self._done.set()
        if self._on_terminal is not None:
            self._on_terminal(self)

    def _persist(self, st: RolloutStatus) -> None:
        db.upsert_rollout(
            rollout_id=st.id,
            target=st.target,
            source_revision=st.source_revision,
            state=st.state.value,
            desired_replicas=st.desired_replicas,
            image_reference=st.artifact.image_reference if st.artifact else None,
            digest=st.artifact.digest if st.artifact else None,
            initial_replicas=st.initial_replicas,
            final_replicas=st.replicas if st.state.terminal else None,
            last_completed_step=st.last_completed_step,
            error=f"{type(st.error).__name__}: {st.error.message}" if st.error else None,
            started_at=st.started_at,
        )

    def _emit(self, kind: str, message: str, level: str = "INFO", **data: Any) -> None:
        self.events.publish(
            RolloutEvent(
                kind=kind,
                message=message,
                level=level,
                target=self.target,
                rollout_id=self.rollout_id,
                data=data,
            )
        )
