import sys
from collections import deque
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from libra.core.channel import BaseLoadCellBackend, CalibratedChannel
from libra.domain.models import Calibration, DeviceIdentity
from libra.errors import SensorFault
from libra.services.supervisor import ScaleSupervisor


class ScriptedBackend(BaseLoadCellBackend):
    """Backend replaying scripted open outcomes and samples.

    ``samples`` items are floats or exceptions to raise; once exhausted the
    backend keeps returning ``default``.
    """

    name = "SCRIPTED"

    def __init__(self, samples=(), *, opens=(), default=100.0):
        self.samples = deque(samples)
        self.opens = deque(opens)
        self.default = default
        self.open_calls = 0
        self.close_calls = 0
        self.intervals = []

    def open(self, timeout):
        self.open_calls += 1
        outcome = self.opens.popleft() if self.opens else None
        if isinstance(outcome, BaseException):
            raise outcome

    def close(self):
        self.close_calls += 1

    def set_sample_interval(self, seconds):
        self.intervals.append(seconds)

    def read_raw(self):
        item = self.samples.popleft() if self.samples else self.default
        if isinstance(item, BaseException):
            raise item
        return item


class FakeClock:
    """Monotonic and wall clock advanced by the fake ``sleep``."""

    def __init__(self, start=1000.0):
        self.now = start
        self.sleeps = []
        self._epoch = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def monotonic(self):
        return self.now

    def wall(self):
        return self._epoch + timedelta(seconds=self.now)

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds):
        self.now += seconds


def make_supervisor(backend, *, serial="1", window=20, noise_threshold=3.0, offline_policy="every_tick", heartbeat_period=60.0):
    channel = CalibratedChannel(backend, Calibration(1.0, 0.0), sample_period=0.25)
    return ScaleSupervisor(
        DeviceIdentity("Counter", serial),
        channel,
        location="Kitchen",
        ingredient="Rice",
        window=window,
        noise_threshold=noise_threshold,
        offline_policy=offline_policy,
        heartbeat_period=heartbeat_period,
    )


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def timestamp():
    return datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def fault(message="bridge detached"):
    return SensorFault(message)
