from __future__ import annotations

from dataclasses import dataclass, field

from .errors import InfeasiblePlan


@dataclass(frozen=True)
class Step:
    target_replica_count: int
    old_replica_count: int
    batch_size: int

    @property
    def delta(self) -> int:
        return self.target_replica_count - self.old_replica_count

    @property
    def available_during(self) -> int:
        """Replicas serving while the step is applied (new ones are not trusted yet)."""
        return min(self.old_replica_count, self.target_replica_count)

    def reversed(self) -> "Step":
        return Step(
            target_replica_count=self.old_replica_count,
            old_replica_count=self.target_replica_count,
            batch_size=self.batch_size,
        )


@dataclass(frozen=True)
class RolloutPlan:
    current_replicas: int
    desired_replicas: int
    max_unavailable: int
    max_surge: int
    steps: tuple[Step, ...] = field(default_factory=tuple)

    @property
    def availability_floor(self) -> int:
        return max(0, min(self.current_replicas, self.desired_replicas - self.max_unavailable))

    @property
    def total_delta(self) -> int:
        return sum(s.delta for s in self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def to_dict(self) -> dict[str, object]:
        return {
            "current_replicas": self.current_replicas,
            "desired_replicas": self.desired_replicas,
            "max_unavailable": self.max_unavailable,
            "max_surge": self.max_surge,
            "availability_floor": self.availability_floor,
            "steps": [
                {
                    "target_replica_count": s.target_replica_count,
                    "old_replica_count": s.old_replica_count,
                    "batch_size": s.batch_size,
                }
                for s in self.steps
            ],
        }


class RolloutPlanner:
    """Splits a replica transition into batches that respect the budgets.

    Growing steps spend the surge budget (falling back to the unavailability
    budget when surge is zero: a new replica is untrusted until gated).
    Shrinking steps spend the unavailability budget, falling back to surge.
    Neither direction may take the workload below the availability floor.
    """

    def plan(self, current_replicas: int, desired_replicas: int, max_unavailable: int, max_surge: int) -> RolloutPlan:
        for name, value in (
            ("current_replicas", current_replicas),
            ("desired_replicas", desired_replicas),
            ("max_unavailable", max_unavailable),
            ("max_surge", max_surge),
        ):
            if int(value) < 0:
                raise InfeasiblePlan(f"{name} must be >= 0 (got {value})")

        current = int(current_replicas)
        desired = int(desired_replicas)
        max_unavailable = int(max_unavailable)
        max_surge = int(max_surge)

        if desired == current:
            return RolloutPlan(current, desired, max_unavailable, max_surge)
        if max_unavailable == 0 and max_surge == 0:
            raise InfeasiblePlan(
                f"Cannot move from {current} to {desired} replicas with maxUnavailable=0 and maxSurge=0"
            )

        floor = max(0, min(current, desired - max_unavailable))
        growing = desired > current
        if growing:
            budget = max_surge or max_unavailable
        else:
            budget = max_unavailable or max_surge

        steps: list[Step] = []
        count = current
        while count != desired:
            remaining = abs(desired - count)
            batch = self._batch_size(count, remaining, budget, floor, growing)
            nxt = count + batch if growing else count - batch
            steps.append(Step(target_replica_count=nxt, old_replica_count=count, batch_size=batch))
            count = nxt

        return RolloutPlan(current, desired, max_unavailable, max_surge, tuple(steps))

    @staticmethod
    def _batch_size(count: int, remaining: int, budget: int, floor: int, growing: bool) -> int:
        batch = min(budget, remaining)
        if not growing:
            # Largest removal that keeps the step at or above the floor.
            batch = min(batch, count - floor)
        if batch <= 0:
            raise InfeasiblePlan(f"No batch fits the budget at {count} replicas (floor {floor})")
        return batch
