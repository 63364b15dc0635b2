from __future__ import annotations

from threading import Lock
from typing import Callable

from .artifacts import ArtifactResolver
from .controller import RetryPolicy, RolloutController, RolloutOptions
from .events import EventBus
from .health import HealthGate
from .planner import RolloutPlanner
from .runtime import RolloutRegistry, RolloutStatus
from .settings import settings
from .workload import WorkloadHandle


class RolloutManager:
    """Starts controllers and enforces one active rollout per target."""

    def __init__(
        self,
        resolver: ArtifactResolver,
        workload_factory: Callable[[str], WorkloadHandle],
        events: EventBus | None = None,
        planner: RolloutPlanner | None = None,
        gate: HealthGate | None = None,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], None] | None = None,
        registry: RolloutRegistry | None = None,
    ):
        self.resolver = resolver
        self.workload_factory = workload_factory
        self.events = events or EventBus()
        self.planner = planner or RolloutPlanner()
        self.gate = gate or HealthGate(
            interval_s=settings.health_interval_s, required_streak=settings.health_streak
        )
        self.retry = retry or RetryPolicy(
            attempts=settings.retry_attempts, base_s=settings.retry_base_s, cap_s=settings.retry_cap_s
        )
        self.registry = registry or RolloutRegistry(max_finished=settings.retain_finished)
        self._sleep = sleep
        self._lock = Lock()
        self._workloads: dict[str, WorkloadHandle] = {}

    def start_rollout(
        self,
        target: str,
        source_revision: str,
        desired_replicas: int,
        max_unavailable: int = 0,
        max_surge: int = 1,
        auto_rollback: bool | None = None,
        health_timeout_s: float | None = None,
        background: bool = True,
    ) -> RolloutController:
        options = RolloutOptions(
            desired_replicas=int(desired_replicas),
            max_unavailable=int(max_unavailable),
            max_surge=int(max_surge),
            auto_rollback=settings.auto_rollback if auto_rollback is None else bool(auto_rollback),
            health_timeout_s=settings.health_timeout_s if health_timeout_s is None else float(health_timeout_s),
        )
        controller = RolloutController(
            target=target,
            source_revision=source_revision,
            options=options,
            workload=self._workload(target),
            resolver=self.resolver,
            planner=self.planner,
            gate=self.gate,
            events=self.events,
            retry=self.retry,
            sleep=self._sleep,
            on_terminal=lambda c: self.registry.release(c.target, c),
        )
        self.registry.claim(target, controller)
        if background:
            controller.start()
        else:
            controller.run()
        return controller

    def _workload(self, target: str) -> WorkloadHandle:
        with self._lock:
            handle = self._workloads.get(target)
            if handle is None:
                handle = self.workload_factory(target)
                self._workloads[target] = handle
            return handle

    def get(self, rollout_id: str) -> RolloutController:
        controller = self.registry.get(rollout_id)
        if controller is None:
            raise KeyError("unknown rollout")
        return controller

    def status(self, rollout_id: str) -> RolloutStatus:
        return self.get(rollout_id).status

    def list(self) -> list[RolloutStatus]:
        return sorted((c.status for c in self.registry.list()), key=lambda s: (s.started_at, s.id))

    def pause(self, rollout_id: str) -> RolloutStatus:
        c = self.get(rollout_id)
        c.pause()
        return c.status

    def resume(self, rollout_id: str) -> RolloutStatus:
        c = self.get(rollout_id)
        c.resume()
        return c.status

    def cancel(self, rollout_id: str) -> RolloutStatus:
        c = self.get(rollout_id)
        c.cancel()
        return c.status
