"""Monitoring loop scheduling, heartbeats and fault propagation."""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import ScriptedBackend, fault, make_supervisor
from libra.config.settings import ScaleSettings, Settings
from libra.domain.models import EventKind
from libra.errors import SensorFault, StorageFault, TimingFault
from libra.runtime.liveness import LivenessFile
from libra.services import monitor
from libra.services.monitor import MonitoringLoop, connect_scales
from libra.services.supervisor import ScaleSupervisor


class RecordingStore:
    def __init__(self) -> None:
        self.batches: list[list] = []

    def append_batch(self, events) -> None:
        self.batches.append(list(events))

    @property
    def events(self):
        return [e for batch in self.batches for e in batch]


class FailingStore:
    def append_batch(self, events) -> None:
        raise StorageFault("disk full")


class RecordingPublisher:
    def __init__(self) -> None:
        self.published: list = []
        self.started = False
        self.stopped = False

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def publish(self, events) -> None:
        self.published.extend(events)


class SlowBackend(ScriptedBackend):
    def __init__(self, clock, cost: float) -> None:
        super().__init__()
        self.clock = clock
        self.cost = cost

    def read_raw(self):
        self.clock.advance(self.cost)
        return super().read_raw()


def _connected(*supervisors):
    for supervisor in supervisors:
        supervisor.connect()
    return {s.device: s for s in supervisors}


def _loop(supervisors, store, clock, **kwargs):
    kwargs.setdefault("tick_period", 0.25)
    kwargs.setdefault("heartbeat_period", 0.5)
    return MonitoringLoop(
        supervisors,
        store,
        wall_clock=clock.wall,
        monotonic=clock.monotonic,
        sleep=clock.sleep,
        **kwargs,
    )


def test_heartbeats_are_gated_by_elapsed_time(fake_clock):
    store = RecordingStore()
    loop = _loop(_connected(make_supervisor(ScriptedBackend(default=80.0))), store, fake_clock)
    loop.run(max_ticks=5)
    heartbeats = [e for e in store.events if e.kind is EventKind.HEARTBEAT]
    assert len(heartbeats) == 2
    assert all(e.amount == pytest.approx(80.0) for e in heartbeats)
    assert len(store.batches) == 5
    assert [e.kind for e in store.batches[0]] == [EventKind.STARTING]


def test_heartbeat_is_added_for_every_scale(fake_clock):
    store = RecordingStore()
    supervisors = _connected(
        make_supervisor(ScriptedBackend(default=10.0), serial="1"),
        make_supervisor(ScriptedBackend(default=20.0), serial="2"),
    )
    loop = _loop(supervisors, store, fake_clock, heartbeat_period=0.25)
    loop.tick()
    fake_clock.advance(0.25)
    batch = loop.tick()
    assert [(e.kind, e.amount) for e in batch] == [(EventKind.HEARTBEAT, 10.0), (EventKind.HEARTBEAT, 20.0)]


def test_each_tick_is_one_batched_write_in_poll_order(fake_clock):
    store = RecordingStore()
    supervisors = _connected(
        make_supervisor(ScriptedBackend(), serial="a"),
        make_supervisor(ScriptedBackend(), serial="b"),
    )
    loop = _loop(supervisors, store, fake_clock, heartbeat_period=100.0)
    loop.tick()
    assert len(store.batches) == 1
    assert [str(e.device) for e in store.batches[0]] == ["Counter-a", "Counter-b"]
    loop.tick()
    assert store.batches[1] == []


def test_schedule_does_not_drift_with_tick_cost(fake_clock):
    supervisors = _connected(make_supervisor(SlowBackend(fake_clock, cost=0.1)))
    loop = _loop(supervisors, RecordingStore(), fake_clock)
    loop.run(max_ticks=4)
    assert fake_clock.sleeps == pytest.approx([0.15, 0.15, 0.15])


def test_missed_boundaries_are_skipped(fake_clock):
    supervisors = _connected(make_supervisor(SlowBackend(fake_clock, cost=0.6)))
    loop = _loop(supervisors, RecordingStore(), fake_clock)
    start = fake_clock.now
    loop.run(max_ticks=2)
    assert fake_clock.sleeps == pytest.approx([0.15])
    assert fake_clock.now - start == pytest.approx(0.6 + 0.15 + 0.6)


def test_storage_fault_propagates_out_of_tick(fake_clock):
    loop = _loop(_connected(make_supervisor(ScriptedBackend())), FailingStore(), fake_clock)
    with pytest.raises(StorageFault):
        loop.tick()
    with pytest.raises(StorageFault):
        loop.run()


def test_clock_failure_is_a_timing_fault(fake_clock):
    def broken_clock():
        raise OverflowError("timestamp out of range")

    loop = MonitoringLoop(
        _connected(make_supervisor(ScriptedBackend())),
        RecordingStore(),
        wall_clock=broken_clock,
        monotonic=fake_clock.monotonic,
        sleep=fake_clock.sleep,
    )
    with pytest.raises(TimingFault):
        loop.tick()


def test_faulted_scale_stays_in_the_active_set(fake_clock):
    store = RecordingStore()
    broken = make_supervisor(ScriptedBackend([fault()], opens=[None] + [fault()] * 10), serial="broken")
    healthy = make_supervisor(ScriptedBackend(default=5.0), serial="ok")
    loop = _loop(_connected(broken, healthy), store, fake_clock, heartbeat_period=100.0)
    for _ in range(10):
        loop.tick()
    assert len(loop.supervisors) == 2
    broken_events = [e.kind for e in store.events if str(e.device) == "Counter-broken"]
    assert broken_events == [EventKind.OFFLINE] * 10
    healthy_events = [e.kind for e in store.events if str(e.device) == "Counter-ok"]
    assert healthy_events == [EventKind.STARTING]


def test_publisher_and_liveness_follow_persistence(fake_clock, tmp_path: Path):
    store = RecordingStore()
    publisher = RecordingPublisher()
    liveness = LivenessFile(tmp_path / "alive", clock=lambda: 123.5)
    loop = _loop(
        _connected(make_supervisor(ScriptedBackend())),
        store,
        fake_clock,
        publisher=publisher,
        liveness=liveness,
    )
    loop.run(max_ticks=1)
    assert publisher.started
    assert publisher.published == store.events
    assert (tmp_path / "alive").read_text(encoding="utf-8") == "123.500000\n"
    loop.close()
    assert publisher.stopped


def test_stop_ends_run(fake_clock):
    store = RecordingStore()
    loop = _loop(_connected(make_supervisor(ScriptedBackend())), store, fake_clock)

    def sleep_then_stop(seconds):
        fake_clock.sleep(seconds)
        if len(store.batches) == 3:
            loop.stop()

    loop._sleep = sleep_then_stop
    loop.run()
    assert len(store.batches) == 3
    assert not loop.running


def test_connect_scales_excludes_scales_that_fail_to_open():
    backends = {"good": ScriptedBackend(), "bad": ScriptedBackend(opens=[SensorFault("timeout")])}

    def factory(scale, **kwargs):
        return make_supervisor(backends[scale.serial], serial=scale.serial)

    settings = Settings(
        scales=[
            ScaleSettings(model="Counter", serial="bad"),
            ScaleSettings(model="Counter", serial="good"),
            ScaleSettings(model="Counter", serial="good"),
        ]
    )
    supervisors = connect_scales(settings, factory=factory)
    assert [str(device) for device in supervisors] == ["Counter-good"]
    assert backends["bad"].open_calls == 1
    assert backends["good"].open_calls == 1


def test_from_settings_uses_shortest_periods(tmp_path: Path):
    settings = Settings(
        scales=[
            ScaleSettings(model="Counter", serial="1", backend="simulated", sample_period=0.5, heartbeat_period=30),
            ScaleSettings(model="Counter", serial="2", backend="simulated", sample_period=0.25, heartbeat_period=90),
        ],
        liveness_path=tmp_path / "alive",
    )
    store = RecordingStore()
    loop = MonitoringLoop.from_settings(settings, store)
    try:
        assert loop.tick_period == 0.25
        assert loop.heartbeat_period == 30
        assert loop.publisher is None
        assert loop.liveness is not None
        assert all(isinstance(s, ScaleSupervisor) for s in loop.supervisors.values())
        batch = loop.tick()
        assert [e.kind for e in batch] == [EventKind.STARTING, EventKind.STARTING]
    finally:
        loop.close()


class FakeClient:
    def __init__(self) -> None:
        self.posts: list = []
        self.closed = False

    def post_reading(self, index, reading) -> None:
        if index == 1:
            raise monitor.requests.ConnectionError("refused")
        self.posts.append((index, reading))

    def close(self) -> None:
        self.closed = True


def test_demo_loop_posts_readings_and_survives_backend_errors(fake_clock):
    client = FakeClient()
    supervisors = _connected(
        make_supervisor(ScriptedBackend(default=250.0), serial="1"),
        make_supervisor(ScriptedBackend(default=30.0), serial="2"),
    )
    loop = monitor.DemoLoop(
        supervisors,
        client,
        tick_period=0.25,
        wall_clock=fake_clock.wall,
        monotonic=fake_clock.monotonic,
        sleep=fake_clock.sleep,
    )
    loop.run(max_ticks=20)
    assert len(client.posts) == 20
    assert all(index == 0 for index, _ in client.posts)
    assert client.posts[0][1].to_dict() == {"unstable": 250.0}
    assert client.posts[-1][1].to_dict() == {"stable": 250.0}
    loop.close()
    assert client.closed
