from threading import Event

import pytest

from rrc import db
from rrc.artifacts import ArtifactResolver, BuildCatalog
from rrc.controller import RetryPolicy, RolloutController, RolloutOptions
from rrc.errors import (
    Cancelled,
    HealthTimeout,
    InfeasiblePlan,
    InvalidTransition,
    NotFound,
    RegistryUnavailable,
    WorkloadError,
)
from rrc.health import HealthStatus
from rrc.runtime import RolloutState

from fakes import DIGEST, REPOSITORY, FakeRegistry, FakeWorkload


def make_controller(workload, resolver, gate, clock, events=None, revision="abc123", **opts):
    options = RolloutOptions(
        desired_replicas=opts.pop("desired", 6),
        max_unavailable=opts.pop("max_unavailable", 0),
        max_surge=opts.pop("max_surge", 2),
        auto_rollback=opts.pop("auto_rollback", True),
        health_timeout_s=opts.pop("health_timeout_s", 5),
    )
    return RolloutController(
        target="web",
        source_revision=revision,
        options=options,
        workload=workload,
        resolver=resolver,
        gate=gate,
        events=events,
        retry=RetryPolicy(),
        sleep=clock.sleep,
        **opts,
    )


def test_successful_rollout(resolver, gate, clock, recorded):
    bus, seen = recorded
    workload = FakeWorkload(replicas=3)
    c = make_controller(workload, resolver, gate, clock, events=bus)

    st = c.run()

    assert st.state is RolloutState.SUCCEEDED
    assert st.replicas == 6
    assert st.initial_replicas == 3
    assert st.last_completed_step == 1
    assert st.artifact.digest == DIGEST
    assert [s.delta for s in st.plan.steps] == [2, 1]
    assert workload.replica_count() == 6
    new = [r for r in workload.list_replicas() if r.image_reference == f"{REPOSITORY}@{DIGEST}"]
    assert len(new) == 3

    states = [e.data["state"] for e in seen if e.kind == "state" and "state" in e.data]
    assert states == ["Pending", "InProgress", "Succeeded"]
    assert [e.data["step"] for e in seen if e.kind == "step"] == [0, 1]
    assert any(e.kind == "health" and e.data.get("streak") == 3 for e in seen)

    row = db.get_rollout(c.rollout_id)
    assert row.state == "Succeeded"
    assert row.final_replicas == 6
    assert row.digest == DIGEST
    assert c.done


def test_empty_plan_still_confirms_health(resolver, gate, clock):
    workload = FakeWorkload(replicas=3)
    st = make_controller(workload, resolver, gate, clock, desired=3).run()

    assert st.state is RolloutState.SUCCEEDED
    assert st.plan.steps == ()
    assert st.last_completed_step is None
    assert workload.probes == 3


def test_health_failure_on_step_two_rolls_back(resolver, gate, clock):
    workload = FakeWorkload(replicas=3)
    workload.batch_status = {2: HealthStatus.UNHEALTHY}
    c = make_controller(workload, resolver, gate, clock, max_surge=1)

    st = c.run()

    assert len(st.plan) == 3
    assert st.state is RolloutState.ROLLED_BACK
    assert st.replicas == 3
    assert workload.replica_count() == 3
    assert {r.image_reference for r in workload.list_replicas()} == {"ghcr.io/example/web@sha256:old"}
    assert isinstance(st.error, HealthTimeout)
    assert st.error.last_completed_step == 1
    assert st.error.replicas == 3
    assert db.get_rollout(c.rollout_id).final_replicas == 3
    # RolledBack is a handled outcome, not an exception.
    assert c.result().state is RolloutState.ROLLED_BACK


def test_health_failure_without_auto_rollback_fails_in_place(resolver, gate, clock):
    workload = FakeWorkload(replicas=3)
    workload.batch_status = {2: HealthStatus.UNHEALTHY}
    c = make_controller(workload, resolver, gate, clock, max_surge=1, auto_rollback=False)

    st = c.run()

    assert st.state is RolloutState.FAILED
    assert st.replicas == 5
    assert st.error.last_completed_step == 1
    with pytest.raises(HealthTimeout) as exc:
        c.result()
    assert exc.value.replicas == 5


def test_final_confirmation_failure_rolls_back(resolver, gate, clock):
    workload = FakeWorkload(replicas=3)
    workload.batch_status = {2: HealthStatus.UNHEALTHY}
    st = make_controller(workload, resolver, gate, clock, max_surge=2).run()

    assert st.state is RolloutState.ROLLED_BACK
    assert workload.replica_count() == 3


def test_scale_down_rollback_restores_removed_replicas(resolver, gate, clock):
    workload = FakeWorkload(replicas=4)
    workload.status["r1"] = HealthStatus.UNHEALTHY
    st = make_controller(workload, resolver, gate, clock, desired=2, max_unavailable=1).run()

    # r1 is the oldest and survives the scale-down, so final confirmation fails.
    assert st.state is RolloutState.ROLLED_BACK
    assert workload.replica_count() == 4


def test_workload_error_follows_rollback_policy(resolver, gate, clock):
    workload = FakeWorkload(replicas=3)
    workload.fail_on_create = 2
    st = make_controller(workload, resolver, gate, clock, max_surge=1).run()

    assert st.state is RolloutState.ROLLED_BACK
    assert isinstance(st.error, WorkloadError)
    assert workload.replica_count() == 3


def test_registry_unavailable_is_retried_with_backoff(gate, clock):
    registry = FakeRegistry({f"{REPOSITORY}:abc123": DIGEST}, unavailable_times=4)
    resolver = ArtifactResolver(BuildCatalog(REPOSITORY), registry)
    st = make_controller(FakeWorkload(replicas=3), resolver, gate, clock).run()

    assert st.state is RolloutState.SUCCEEDED
    assert len(registry.calls) == 5
    assert clock.sleeps[:4] == [2.0, 4.0, 8.0, 16.0]


def test_registry_retries_exhausted(gate, clock, recorded):
    bus, seen = recorded
    registry = FakeRegistry({}, unavailable_times=10)
    resolver = ArtifactResolver(BuildCatalog(REPOSITORY), registry)
    workload = FakeWorkload(replicas=3)
    c = make_controller(workload, resolver, gate, clock, events=bus)

    st = c.run()

    assert st.state is RolloutState.FAILED
    assert isinstance(st.error, RegistryUnavailable)
    assert st.replicas == 3
    assert len(registry.calls) == 5
    assert clock.sleeps == [2.0, 4.0, 8.0, 16.0]
    assert [e.data["attempt"] for e in seen if e.kind == "retry"] == [1, 2, 3, 4]
    with pytest.raises(RegistryUnavailable):
        c.result()


def test_backoff_is_capped():
    policy = RetryPolicy(attempts=10, base_s=2.0, cap_s=60.0)
    assert [policy.delay(n) for n in range(1, 8)] == [2, 4, 8, 16, 32, 60, 60]


def test_missing_build_fails_without_retry(resolver, registry, gate, clock):
    st = make_controller(FakeWorkload(replicas=1), resolver, gate, clock, revision="nope").run()

    assert st.state is RolloutState.FAILED
    assert isinstance(st.error, NotFound)
    assert len(registry.calls) == 1
    assert clock.sleeps == []


def test_infeasible_plan_fails(resolver, gate, clock):
    workload = FakeWorkload(replicas=3)
    st = make_controller(workload, resolver, gate, clock, max_surge=0, max_unavailable=0).run()

    assert st.state is RolloutState.FAILED
    assert isinstance(st.error, InfeasiblePlan)
    assert workload.create_calls == 0


def test_cancel_mid_poll_waits_for_tick_then_rolls_back(resolver, gate, clock):
    workload = FakeWorkload(replicas=3)
    c = make_controller(workload, resolver, gate, clock, max_surge=1)
    finished_probes = []

    def on_probe(ids):
        if workload.create_calls == 1 and not finished_probes:
            c.cancel()
        finished_probes.append(list(ids))

    workload.on_probe = on_probe
    st = c.run()

    assert st.state is RolloutState.FAILED
    assert isinstance(st.error, Cancelled)
    assert len(finished_probes) == 1
    assert workload.create_calls == 1
    assert workload.replica_count() == 3


def test_cancel_before_start(resolver, gate, clock):
    c = make_controller(FakeWorkload(replicas=3), resolver, gate, clock)
    c.cancel()

    st = c.wait(1)
    assert st.state is RolloutState.FAILED
    assert isinstance(st.error, Cancelled)
    with pytest.raises(InvalidTransition):
        c.run()
    with pytest.raises(InvalidTransition):
        c.cancel()


def test_pause_only_from_in_progress(resolver, gate, clock):
    c = make_controller(FakeWorkload(replicas=3), resolver, gate, clock)
    with pytest.raises(InvalidTransition):
        c.pause()
    with pytest.raises(InvalidTransition):
        c.resume()


def _wait_for_state(recorded, state):
    bus, _seen = recorded
    reached = Event()
    bus.subscribe(lambda e: reached.set() if e.kind == "state" and e.data.get("state") == state else None)
    return reached


def test_pause_and_resume(resolver, gate, clock, recorded):
    bus, seen = recorded
    workload = FakeWorkload(replicas=3)
    c = make_controller(workload, resolver, gate, clock, events=bus, max_surge=1)
    paused = _wait_for_state(recorded, "Paused")
    workload.on_create = lambda created: c.pause() if workload.create_calls == 1 else None

    c.start()
    assert paused.wait(5)
    assert c.status.state is RolloutState.PAUSED
    assert workload.create_calls == 1

    c.resume()
    st = c.wait(5)

    assert st.state is RolloutState.SUCCEEDED
    assert workload.replica_count() == 6
    states = [e.data["state"] for e in seen if e.kind == "state" and "state" in e.data]
    assert states == ["Pending", "InProgress", "Paused", "InProgress", "Succeeded"]
    assert any("re-validating after resume" in e.message for e in seen)


def test_cancel_while_paused(resolver, gate, clock, recorded):
    workload = FakeWorkload(replicas=3)
    c = make_controller(workload, resolver, gate, clock, events=recorded[0], max_surge=1)
    paused = _wait_for_state(recorded, "Paused")
    workload.on_create = lambda created: c.pause() if workload.create_calls == 1 else None

    c.start()
    assert paused.wait(5)
    c.cancel()
    st = c.wait(5)

    assert st.state is RolloutState.FAILED
    assert isinstance(st.error, Cancelled)
    assert workload.replica_count() == 3


def test_start_twice_is_rejected(resolver, gate, clock):
    c = make_controller(FakeWorkload(replicas=3), resolver, gate, clock)
    c.run()
    with pytest.raises(InvalidTransition):
        c.start()


def test_cancel_during_final_confirmation_fails(resolver, gate, clock):
    workload = FakeWorkload(replicas=3)
    c = make_controller(workload, resolver, gate, clock, desired=3)
    workload.on_probe = lambda ids: c.cancel() if workload.probes == 3 else None

    st = c.run()

    assert workload.probes == 3
    assert st.state is RolloutState.FAILED
    assert isinstance(st.error, Cancelled)


def test_cancel_during_pre_step_gate_applies_no_further_step(resolver, gate, clock):
    workload = FakeWorkload(replicas=3)
    c = make_controller(workload, resolver, gate, clock, max_surge=1)
    # Probes 1-3 belong to the gate that runs before step 2.
    workload.on_probe = lambda ids: c.cancel() if workload.probes == 3 else None

    st = c.run()

    assert st.state is RolloutState.FAILED
    assert isinstance(st.error, Cancelled)
    assert workload.create_calls == 1
    assert workload.replica_count() == 3


class CrashingWorkload(FakeWorkload):
    """Raises a non-workload error on the second create call."""

    def create_replicas(self, image_reference, count):
        if self.create_calls == 1:
            self.create_calls += 1
            raise RuntimeError("connection reset by daemon")
        return super().create_replicas(image_reference, count)


def test_unexpected_error_rolls_back_applied_steps(resolver, gate, clock):
    workload = CrashingWorkload(replicas=3)
    c = make_controller(workload, resolver, gate, clock, max_surge=1)

    with pytest.raises(RuntimeError):
        c.run()

    st = c.status
    assert st.state is RolloutState.FAILED
    assert "Unexpected error" in st.error.message
    assert workload.replica_count() == 3
    assert db.get_rollout(c.rollout_id).final_replicas == 3


def test_unexpected_error_on_worker_thread_is_not_raised(resolver, gate, clock):
    workload = CrashingWorkload(replicas=3)
    c = make_controller(workload, resolver, gate, clock, max_surge=1)

    c.start()
    st = c.wait(5)

    assert st.state is RolloutState.FAILED
    assert workload.replica_count() == 3


def test_unexpected_error_without_auto_rollback_leaves_replicas(resolver, gate, clock):
    workload = CrashingWorkload(replicas=3)
    c = make_controller(workload, resolver, gate, clock, max_surge=1, auto_rollback=False)

    with pytest.raises(RuntimeError):
        c.run()
    assert c.status.state is RolloutState.FAILED
    assert workload.replica_count() == 4
