from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import TYPE_CHECKING, Any

from .artifacts import Artifact
from .db import utc_now
from .errors import RolloutError, RolloutInProgress
from .planner import RolloutPlan

if TYPE_CHECKING:
    from .controller import RolloutController


class RolloutState(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    PAUSED = "Paused"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({RolloutState.SUCCEEDED, RolloutState.FAILED, RolloutState.ROLLED_BACK})

TRANSITIONS: dict[RolloutState, frozenset[RolloutState]] = {
    RolloutState.PENDING: frozenset({RolloutState.IN_PROGRESS, RolloutState.FAILED}),
    RolloutState.IN_PROGRESS: frozenset(
        {RolloutState.PAUSED, RolloutState.SUCCEEDED, RolloutState.FAILED, RolloutState.ROLLED_BACK}
    ),
    RolloutState.PAUSED: frozenset({RolloutState.IN_PROGRESS, RolloutState.FAILED}),
    RolloutState.SUCCEEDED: frozenset(),
    RolloutState.FAILED: frozenset(),
    RolloutState.ROLLED_BACK: frozenset(),
}


@dataclass
class RolloutStatus:
    id: str
    target: str
    source_revision: str
    desired_replicas: int
    state: RolloutState = RolloutState.PENDING
    message: str = "Rollout requested"
    artifact: Artifact | None = None
    plan: RolloutPlan | None = None
    initial_replicas: int | None = None
    replicas: int | None = None
    last_completed_step: int | None = None
    error: RolloutError | None = None
    started_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "target": self.target,
            "source_revision": self.source_revision,
            "desired_replicas": self.desired_replicas,
            "state": self.state.value,
            "message": self.message,
            "artifact": (
                {
                    "source_revision": self.artifact.source_revision,
                    "image_reference": self.artifact.image_reference,
                    "digest": self.artifact.digest,
                }
                if self.artifact
                else None
            ),
            "plan": self.plan.to_dict() if self.plan else None,
            "initial_replicas": self.initial_replicas,
            "replicas": self.replicas,
            "last_completed_step": self.last_completed_step,
            "error": self.error.to_dict() if self.error else None,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
        }


class RolloutRegistry:
    """Keyed table of controllers: at most one active controller per target.

    Only the most recent ``max_finished`` terminal controllers are kept;
    older ones have already been persisted to the ``rollouts`` table.
    """

    def __init__(self, max_finished: int = 100) -> None:
        self.lock = Lock()
        self.max_finished = max(0, max_finished)
        self.active: dict[str, RolloutController] = {}  # target -> controller
        self.controllers: dict[str, RolloutController] = {}  # rollout id -> controller
        self.finished: deque[str] = deque()

    def claim(self, target: str, controller: RolloutController) -> None:
        with self.lock:
            current = self.active.get(target)
            if current is not None and not current.status.state.terminal:
                raise RolloutInProgress(f"Rollout {current.rollout_id} is already active for '{target}'")
            self.active[target] = controller
            self.controllers[controller.rollout_id] = controller

    def release(self, target: str, controller: RolloutController) -> None:
        with self.lock:
            if self.active.get(target) is controller:
                del self.active[target]
            if controller.rollout_id in self.controllers and controller.rollout_id not in self.finished:
                self.finished.append(controller.rollout_id)
            while len(self.finished) > self.max_finished:
                self.controllers.pop(self.finished.popleft(), None)

    def get(self, rollout_id: str) -> RolloutController | None:
        with self.lock:
            return self.controllers.get(rollout_id)

    def active_for(self, target: str) -> RolloutController | None:
        with self.lock:
            return self.active.get(target)

    def list(self) -> list[RolloutController]:
        with self.lock:
            return list(self.controllers.values())
