import json
import threading

import paho.mqtt.client as mqtt
import pytest

from conftest import CONNECTION_LOST
from telemetry_publisher.credentials import Credential, SigningError
from telemetry_publisher.mqtt_client import (
    BrokerConnectionError,
    ConnectionManager,
    RotationError,
)
from telemetry_publisher.scheduler import (
    PublishJob,
    PublishScheduler,
    SchedulerState,
)

TOPIC = "/devices/my-device/events"


class FakeClock:
    """Epoch clock advanced only by the scheduler's inter-tick wait."""

    def __init__(self, start=1_000_000.0, steps=None):
        self.now = start
        self.steps = list(steps) if steps is not None else None
        self.waits = []

    def __call__(self):
        return self.now

    def wait(self, interval):
        self.waits.append(interval)
        self.now += self.steps.pop(0) if self.steps else interval


class FakeIssuer:
    def __init__(self, clock, fail=False):
        self.clock = clock
        self.fail = fail
        self.issued = []

    def issue(self, identity, validity_s):
        if self.fail:
            raise SigningError("Cannot read private key file rsa_private.pem")
        issued_at = int(self.clock())
        cred = Credential(
            subject=identity,
            issued_at=issued_at,
            expires_at=issued_at + validity_s,
            token=f"jwt-{len(self.issued) + 1}",
        )
        self.issued.append(cred)
        return cred


def _compose(index):
    return json.dumps({"MESSAGE_ID": str(index)})


def _scheduler(fake_broker, clock, *, n, interval, threshold, issuer=None, cancel=None, wait=None):
    manager = ConnectionManager(
        "mqtt.example.com",
        8883,
        "projects/p/locations/r/registries/my-registry/devices/my-device",
        connect_timeout_s=0.05,
        drain_timeout_s=0.0,
    )
    issuer = issuer or FakeIssuer(clock)
    sched = PublishScheduler(
        issuer,
        manager,
        _compose,
        identity="p",
        topic=TOPIC,
        job=PublishJob(target_count=n, interval_s=interval, rotation_threshold_s=threshold),
        validity_s=int(threshold),
        clock=clock,
        cancel=cancel,
        wait=wait or clock.wait,
    )
    return sched, manager, issuer


def _indices(fake_broker):
    return [int(json.loads(entry[3])["MESSAGE_ID"]) for entry in fake_broker.published()]


def test_short_run_without_rotation(fake_broker):
    clock = FakeClock()
    sched, manager, issuer = _scheduler(fake_broker, clock, n=3, interval=1, threshold=100)

    summary = sched.run()

    assert summary.state is SchedulerState.TERMINATED
    assert summary.published == 3
    assert summary.rotations == 0
    assert summary.credentials_issued == 1
    assert len(fake_broker.clients) == 1
    assert _indices(fake_broker) == [1, 2, 3]
    assert all(entry[2] == TOPIC and entry[4] == 1 for entry in fake_broker.published())
    # no wait after the last message
    assert clock.waits == [1, 1]
    assert fake_broker.log[-1] == ("disconnect", 1)
    assert manager.active_handle is None


@pytest.mark.parametrize("n", [1, 2, 7])
def test_publishes_exactly_n_in_order(fake_broker, n):
    clock = FakeClock()
    sched, _, _ = _scheduler(fake_broker, clock, n=n, interval=5, threshold=10_000)

    sched.run()

    assert _indices(fake_broker) == list(range(1, n + 1))
    assert sched.job.sequence_index == n + 1


def test_rotation_between_second_and_third_tick(fake_broker):
    # second wait jumps past the threshold
    clock = FakeClock(steps=[1, 200, 1, 1])
    sched, manager, issuer = _scheduler(fake_broker, clock, n=5, interval=1, threshold=100)

    summary = sched.run()

    assert summary.state is SchedulerState.TERMINATED
    assert summary.rotations == 1
    assert len(issuer.issued) == 2
    assert _indices(fake_broker) == [1, 2, 3, 4, 5]

    by_connection = [(entry[1], int(json.loads(entry[3])["MESSAGE_ID"])) for entry in fake_broker.published()]
    assert by_connection == [(1, 1), (1, 2), (2, 3), (2, 4), (2, 5)]

    # old session closed before the first publish on the new one
    log = fake_broker.log
    assert log.index(("disconnect", 1)) < log.index(("connect", 2))
    first_new_publish = next(i for i, e in enumerate(log) if e[0] == "publish" and e[1] == 2)
    assert log.index(("connect", 2)) < first_new_publish

    assert fake_broker.clients[1].username_pw_set.call_args[0][1] == "jwt-2"
    assert sched.credential is issuer.issued[1]


def test_k_threshold_crossings_issue_k_plus_one_credentials(fake_broker):
    clock = FakeClock()
    # every second wait pushes the credential past the threshold
    sched, _, issuer = _scheduler(fake_broker, clock, n=5, interval=10, threshold=15)

    summary = sched.run()

    assert summary.rotations == 2
    assert len(issuer.issued) == 3
    assert len({c.token for c in issuer.issued}) == 3
    assert _indices(fake_broker) == [1, 2, 3, 4, 5]


def test_no_rotation_when_elapsed_equals_threshold(fake_broker):
    clock = FakeClock()
    sched, _, issuer = _scheduler(fake_broker, clock, n=2, interval=15, threshold=15)

    summary = sched.run()

    assert summary.rotations == 0
    assert len(issuer.issued) == 1


def test_first_tick_never_rotates(fake_broker):
    clock = FakeClock()
    seen = []

    def wait(interval):
        seen.append(len(fake_broker.published()))
        clock.wait(interval)

    sched, _, issuer = _scheduler(fake_broker, clock, n=2, interval=50, threshold=10, wait=wait)

    sched.run()

    # first publish happened on the initial credential; rotation only after the wait
    assert seen == [1]
    assert [e[1] for e in fake_broker.published()] == [1, 2]
    assert len(issuer.issued) == 2


def test_signing_failure_before_connect(fake_broker):
    clock = FakeClock()
    issuer = FakeIssuer(clock, fail=True)
    sched, _, _ = _scheduler(fake_broker, clock, n=3, interval=1, threshold=100, issuer=issuer)

    with pytest.raises(SigningError):
        sched.run()

    assert sched.state is SchedulerState.FAILED
    assert isinstance(sched.error, SigningError)
    assert fake_broker.clients == []
    assert fake_broker.published() == []


def test_initial_connect_failure_is_fatal(fake_broker):
    fake_broker.refused.add(1)
    clock = FakeClock()
    sched, manager, _ = _scheduler(fake_broker, clock, n=3, interval=1, threshold=100)

    with pytest.raises(BrokerConnectionError):
        sched.run()

    assert sched.state is SchedulerState.FAILED
    assert fake_broker.published() == []
    assert manager.active_handle is None


def test_failed_rotation_halts_run(fake_broker):
    fake_broker.refused.add(2)
    clock = FakeClock(steps=[1, 200, 1, 1])
    sched, manager, issuer = _scheduler(fake_broker, clock, n=5, interval=1, threshold=100)

    with pytest.raises(RotationError):
        sched.run()

    assert sched.state is SchedulerState.FAILED
    assert _indices(fake_broker) == [1, 2]
    assert len(clock.waits) == 2
    assert manager.active_handle is None
    assert all(not h.active for h in [sched.handle] if h is not None)


def test_unexpected_drop_halts_at_next_tick(fake_broker):
    clock = FakeClock()

    def wait(interval):
        fake = fake_broker.clients[0]
        fake.on_disconnect(fake, None, None, CONNECTION_LOST, None)
        clock.wait(interval)

    sched, manager, _ = _scheduler(fake_broker, clock, n=5, interval=1, threshold=100, wait=wait)

    with pytest.raises(BrokerConnectionError, match="connection lost"):
        sched.run()

    assert sched.state is SchedulerState.FAILED
    assert _indices(fake_broker) == [1]
    assert manager.active_handle is None
    fake_broker.clients[0].loop_stop.assert_called_once()


def test_failed_final_publish_halts_run(fake_broker):
    clock = FakeClock()
    fake_broker.publish_rc = mqtt.MQTT_ERR_NO_CONN
    sched, manager, _ = _scheduler(fake_broker, clock, n=1, interval=1, threshold=100)

    with pytest.raises(BrokerConnectionError, match="publish failed"):
        sched.run()

    assert sched.state is SchedulerState.FAILED
    assert sched.summary().published == 0
    assert manager.active_handle is None
    fake_broker.clients[0].loop_stop.assert_called_once()


def test_drop_after_final_publish_halts_run(fake_broker):
    clock = FakeClock()

    def drop(fake, mid):
        if mid == 2:
            fake.on_disconnect(fake, None, None, CONNECTION_LOST, None)

    fake_broker.after_publish = drop
    sched, manager, _ = _scheduler(fake_broker, clock, n=2, interval=1, threshold=100)

    with pytest.raises(BrokerConnectionError, match="connection lost"):
        sched.run()

    assert sched.state is SchedulerState.FAILED
    assert sched.summary().published == 1
    assert manager.active_handle is None


def test_cancel_drains_gracefully(fake_broker):
    clock = FakeClock()
    cancel = threading.Event()

    def wait(interval):
        cancel.set()
        clock.wait(interval)

    sched, manager, _ = _scheduler(
        fake_broker, clock, n=5, interval=1, threshold=100, cancel=cancel, wait=wait
    )

    summary = sched.run()

    assert summary.state is SchedulerState.TERMINATED
    assert summary.published == 1
    assert fake_broker.log[-1] == ("disconnect", 1)
    assert manager.active_handle is None


def test_scheduler_runs_once(fake_broker):
    clock = FakeClock()
    sched, _, _ = _scheduler(fake_broker, clock, n=1, interval=1, threshold=100)
    sched.run()

    with pytest.raises(RuntimeError, match="already ran"):
        sched.run()


def test_publish_job_validation():
    with pytest.raises(ValueError):
        PublishJob(target_count=0, interval_s=1, rotation_threshold_s=10)
    with pytest.raises(ValueError):
        PublishJob(target_count=1, interval_s=-1, rotation_threshold_s=10)
