from threading import Event

import pytest

from rrc import db
from rrc.controller import RetryPolicy
from rrc.errors import RolloutInProgress
from rrc.rollouts import RolloutManager
from rrc.runtime import RolloutRegistry, RolloutState

from fakes import FakeWorkload


@pytest.fixture
def workloads():
    return {}


@pytest.fixture
def manager(resolver, gate, clock, workloads, recorded):
    def factory(target):
        workloads[target] = FakeWorkload(replicas=2)
        return workloads[target]

    return RolloutManager(
        resolver=resolver,
        workload_factory=factory,
        events=recorded[0],
        gate=gate,
        retry=RetryPolicy(),
        sleep=clock.sleep,
    )


def test_concurrent_rollout_on_same_target_is_rejected(manager, registry):
    registry.block = Event()
    first = manager.start_rollout("web", "abc123", desired_replicas=3)
    assert registry.entered.wait(5)

    with pytest.raises(RolloutInProgress):
        manager.start_rollout("web", "abc123", desired_replicas=4)

    registry.block.set()
    assert first.wait(5).state is RolloutState.SUCCEEDED

    # The target is free again once the first rollout is terminal.
    second = manager.start_rollout("web", "abc123", desired_replicas=2, background=False)
    assert second.status.state is RolloutState.SUCCEEDED


def test_other_targets_are_independent(manager, registry, workloads):
    registry.block = Event()
    a = manager.start_rollout("web", "abc123", desired_replicas=3)
    assert registry.entered.wait(5)
    b = manager.start_rollout("api", "abc123", desired_replicas=1)
    registry.block.set()

    assert a.wait(5).state is RolloutState.SUCCEEDED
    assert b.wait(5).state is RolloutState.SUCCEEDED
    assert workloads["web"].replica_count() == 3
    assert workloads["api"].replica_count() == 1


def test_rejected_request_leaves_no_record(manager, registry):
    registry.block = Event()
    first = manager.start_rollout("web", "abc123", desired_replicas=3)
    assert registry.entered.wait(5)
    with pytest.raises(RolloutInProgress):
        manager.start_rollout("web", "abc123", desired_replicas=4)
    registry.block.set()
    first.wait(5)

    assert len(manager.list()) == 1
    assert len(db.list_rollouts(target="web")) == 1


def test_commands_by_id(manager):
    c = manager.start_rollout("web", "abc123", desired_replicas=3, background=False)

    assert manager.status(c.rollout_id).state is RolloutState.SUCCEEDED
    assert [st.id for st in manager.list()] == [c.rollout_id]
    with pytest.raises(KeyError):
        manager.pause("missing")


def test_workload_handle_is_reused_per_target(manager, workloads):
    manager.start_rollout("web", "abc123", desired_replicas=3, background=False)
    first = workloads["web"]
    manager.start_rollout("web", "abc123", desired_replicas=4, background=False)

    assert workloads["web"] is first
    assert first.replica_count() == 4


def test_old_finished_rollouts_are_evicted_from_memory(resolver, gate, clock):
    manager = RolloutManager(
        resolver=resolver,
        workload_factory=lambda target: FakeWorkload(replicas=1),
        gate=gate,
        sleep=clock.sleep,
        registry=RolloutRegistry(max_finished=1),
    )
    first = manager.start_rollout("web", "abc123", desired_replicas=2, background=False)
    second = manager.start_rollout("api", "abc123", desired_replicas=2, background=False)

    assert [st.id for st in manager.list()] == [second.rollout_id]
    with pytest.raises(KeyError):
        manager.get(first.rollout_id)
    assert db.get_rollout(first.rollout_id).state == "Succeeded"
