"""Errors raised by the rollout controller and its collaborators."""
from __future__ import annotations


class RolloutError(Exception):
    """Base error. Carries enough context to support manual recovery."""

    def __init__(
        self,
        message: str,
        *,
        last_completed_step: int | None = None,
        replicas: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.last_completed_step = last_completed_step
        self.replicas = replicas

    def with_context(self, last_completed_step: int | None, replicas: int | None) -> "RolloutError":
        self.last_completed_step = last_completed_step
        self.replicas = replicas
        return self

    def to_dict(self) -> dict[str, object]:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "last_completed_step": self.last_completed_step,
            "replicas": self.replicas,
        }


class NotFound(RolloutError):
    """No build exists for the requested source revision."""


class RegistryUnavailable(RolloutError):
    """Transient registry lookup failure; safe to retry."""


class InfeasiblePlan(RolloutError):
    """The requested transition cannot be made within the availability budget."""


class HealthTimeout(RolloutError):
    """A health gate did not confirm within its timeout."""


class Cancelled(RolloutError):
    """The caller cancelled the operation."""


class RolloutInProgress(RolloutError):
    """Another rollout is already active for the same target."""


class InvalidTransition(RolloutError):
    """A command was issued in a state that does not accept it."""


class WorkloadError(RolloutError):
    """The workload handle failed to apply a replica mutation."""
