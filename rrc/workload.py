"""Narrow view of the cluster control plane used by the controller."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from .artifacts import Artifact
from .health import HealthStatus, HealthTarget


@dataclass(frozen=True)
class Replica:
    id: str
    image_reference: str


class WorkloadHandle(ABC):
    """Replica mutations and probe reads for one deployable target.

    Implementations raise :class:`rrc.errors.WorkloadError` when a mutation
    cannot be applied.
    """

    @abstractmethod
    def list_replicas(self) -> list[Replica]:
        """Replicas currently belonging to the target, oldest first."""

    @abstractmethod
    def create_replicas(self, image_reference: str, count: int) -> list[Replica]:
        """Start ``count`` replicas of the image; returns the new replicas."""

    @abstractmethod
    def delete_replicas(self, replica_ids: list[str]) -> None:
        """Stop and remove the given replicas."""

    @abstractmethod
    def probe(self, replica_ids: list[str]) -> HealthStatus:
        """Aggregate readiness of the given replicas."""

    def replica_count(self) -> int:
        return len(self.list_replicas())


def pick_for_removal(replicas: list[Replica], artifact: Artifact, count: int) -> list[Replica]:
    """Choose replicas to remove, retiring other images before the new one, newest first."""
    others = [r for r in replicas if r.image_reference != artifact.pinned_reference]
    current = [r for r in replicas if r.image_reference == artifact.pinned_reference]
    ordered = list(reversed(others)) + list(reversed(current))
    return ordered[: max(0, count)]


def aggregate(statuses: list[HealthStatus]) -> HealthStatus:
    """All healthy -> Healthy; any unhealthy -> Unhealthy; otherwise Unknown."""
    if not statuses:
        return HealthStatus.UNKNOWN
    if any(s is HealthStatus.UNHEALTHY for s in statuses):
        return HealthStatus.UNHEALTHY
    if all(s is HealthStatus.HEALTHY for s in statuses):
        return HealthStatus.HEALTHY
    return HealthStatus.UNKNOWN


class ReplicaHealthTarget(HealthTarget):
    """Health target over a fixed set of replicas (or all of them)."""

    def __init__(self, workload: WorkloadHandle, replica_ids: list[str] | None = None) -> None:
        self.workload = workload
        self.replica_ids = list(replica_ids) if replica_ids is not None else None

    def probe(self) -> HealthStatus:
        ids = self.replica_ids
        if ids is None:
            ids = [r.id for r in self.workload.list_replicas()]
        if not ids:
            # Nothing to trust or distrust: an empty set is vacuously ready.
            return HealthStatus.HEALTHY
        return self.workload.probe(ids)

    def describe(self) -> str:
        if self.replica_ids is None:
            return "all replicas"
        return f"replicas {', '.join(self.replica_ids)}"
