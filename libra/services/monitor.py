"""Top-level scheduler polling every scale once per tick."""
from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional

import requests

from ..config.settings import Settings
from ..domain.models import DeviceIdentity, DomainEvent, EventKind, Reading
from ..errors import SensorFault, TimingFault
from ..runtime.liveness import LivenessFile
from .storage import EventStore
from .supervisor import ScaleSupervisor, SupervisorState
from .telemetry import BackendClient, TelemetryPublisher

LOGGER = logging.getLogger("libra.monitor")


def local_now() -> datetime:
    return datetime.now().astimezone()


def connect_scales(
    settings: Settings,
    *,
    factory: Callable[..., ScaleSupervisor] = ScaleSupervisor.from_settings,
    logger: Optional[logging.Logger] = None,
) -> Dict[DeviceIdentity, ScaleSupervisor]:
    """Build and connect one supervisor per configured scale.

    A scale that cannot be connected is closed and left out; the rest of the
    fleet is unaffected.
    """

    logger = logger or LOGGER
    supervisors: Dict[DeviceIdentity, ScaleSupervisor] = {}
    for scale in settings.scales:
        supervisor = factory(
            scale,
            window=settings.window_size,
            noise_threshold=settings.noise_threshold,
            offline_policy=settings.offline_policy,
        )
        if supervisor.device in supervisors:
            logger.error("scale=%s configured twice; ignoring duplicate", supervisor.device)
            continue
        try:
            supervisor.connect()
        except SensorFault as exc:
            supervisor.close()
            logger.error("scale=%s could not be connected, excluded from this run: %s", supervisor.device, exc)
            continue
        supervisors[supervisor.device] = supervisor
    return supervisors


class _PeriodicLoop:
    """Drift-free tick scheduling shared by the monitoring and demo loops.

    Tick boundaries are computed from the start time, so the cost of a tick
    does not accumulate. Boundaries that were missed entirely are skipped.
    """

    def __init__(
        self,
        supervisors: Mapping[DeviceIdentity, ScaleSupervisor],
        *,
        tick_period: float,
        wall_clock: Callable[[], datetime] = local_now,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], object]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if tick_period <= 0:
            raise ValueError("tick_period must be positive")
        self.supervisors = dict(supervisors)
        self.tick_period = float(tick_period)
        self.logger = logger or LOGGER
        self._wall_clock = wall_clock
        self._monotonic = monotonic
        self._stop_event = threading.Event()
        self._sleep = sleep or self._stop_event.wait
        self.ticks = 0

    @property
    def running(self) -> bool:
        return not self._stop_event.is_set()

    def stop(self) -> None:
        self._stop_event.set()

    def tick(self) -> object:  # pragma: no cover - implemented by subclasses
        raise NotImplementedError

    def run(self, max_ticks: Optional[int] = None) -> None:
        next_tick = self._monotonic_now()
        while not self._stop_event.is_set():
            self.tick()
            self.ticks += 1
            if max_ticks is not None and self.ticks >= max_ticks:
                break
            next_tick += self.tick_period
            now = self._monotonic_now()
            if now > next_tick:
                missed = int((now - next_tick) // self.tick_period) + 1
                self.logger.debug("Tick overran by %.3fs; skipping %d boundary(ies)", now - next_tick, missed)
                next_tick += missed * self.tick_period
            self._sleep(max(0.0, next_tick - now))

    def close(self) -> None:
        for supervisor in self.supervisors.values():
            supervisor.close()

    # ------------------------------------------------------------------
    def _timestamp(self) -> datetime:
        try:
            return self._wall_clock()
        except (OSError, OverflowError, ValueError) as exc:
            raise TimingFault(f"wall clock unavailable: {exc}") from exc

    def _monotonic_now(self) -> float:
        try:
            return self._monotonic()
        except (OSError, OverflowError, ValueError) as exc:
            raise TimingFault(f"monotonic clock unavailable: {exc}") from exc


class MonitoringLoop(_PeriodicLoop):
    """Poll every scale, add heartbeats and persist each tick as one batch.

    :class:`~libra.errors.StorageFault` and :class:`~libra.errors.TimingFault`
    propagate out of :meth:`tick`; sensor faults never do.
    """

    def __init__(
        self,
        supervisors: Mapping[DeviceIdentity, ScaleSupervisor],
        store: EventStore,
        *,
        tick_period: float = 0.25,
        heartbeat_period: float = 60.0,
        publisher: Optional[TelemetryPublisher] = None,
        liveness: Optional[LivenessFile] = None,
        wall_clock: Callable[[], datetime] = local_now,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], object]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__(
            supervisors,
            tick_period=tick_period,
            wall_clock=wall_clock,
            monotonic=monotonic,
            sleep=sleep,
            logger=logger,
        )
        self.store = store
        self.heartbeat_period = float(heartbeat_period)
        self.publisher = publisher
        self.liveness = liveness
        self._last_heartbeat: Optional[float] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: EventStore,
        supervisors: Optional[Mapping[DeviceIdentity, ScaleSupervisor]] = None,
        **kwargs,
    ) -> "MonitoringLoop":
        if supervisors is None:
            supervisors = connect_scales(settings)
        publisher = kwargs.pop("publisher", None)
        if publisher is None and settings.backend_url:
            publisher = TelemetryPublisher(
                BackendClient(settings.backend_url, timeout=settings.backend_timeout),
                maxsize=settings.backend_queue_size,
                retries=settings.backend_retries,
            )
        liveness = kwargs.pop("liveness", None)
        if liveness is None and settings.liveness_path:
            liveness = LivenessFile(settings.liveness_path)
        return cls(
            supervisors,
            store,
            tick_period=min((s.channel.sample_period for s in supervisors.values()), default=settings.tick_period),
            heartbeat_period=min((s.heartbeat_period for s in supervisors.values()), default=settings.heartbeat_period),
            publisher=publisher,
            liveness=liveness,
            **kwargs,
        )

    def run(self, max_ticks: Optional[int] = None) -> None:
        if self.publisher is not None:
            self.publisher.start()
        self.logger.info(
            "Monitoring %d scale(s): tick=%.3fs heartbeat=%.1fs",
            len(self.supervisors),
            self.tick_period,
            self.heartbeat_period,
        )
        super().run(max_ticks)

    def tick(self) -> List[DomainEvent]:
        timestamp = self._timestamp()
        now = self._monotonic_now()
        batch: List[DomainEvent] = []
        for supervisor in self.supervisors.values():
            event = supervisor.sample_and_classify(timestamp)
            if event is not None:
                batch.append(event)

        if self._last_heartbeat is None:
            self._last_heartbeat = now
        elif now - self._last_heartbeat >= self.heartbeat_period:
            self._last_heartbeat = now
            batch.extend(supervisor.heartbeat(timestamp) for supervisor in self.supervisors.values())

        self.store.append_batch(batch)
        for event in batch:
            if event.kind is not EventKind.HEARTBEAT:
                self.logger.info("scale=%s event=%s amount=%.2f", event.device, event.kind, event.amount)
        if self.liveness is not None:
            self.liveness.touch()
        if self.publisher is not None and batch:
            self.publisher.publish(batch)
        return batch

    def close(self) -> None:
        super().close()
        if self.publisher is not None:
            self.publisher.stop()


class DemoLoop(_PeriodicLoop):
    """Post every scale's current reading to the backend each tick."""

    def __init__(
        self,
        supervisors: Mapping[DeviceIdentity, ScaleSupervisor],
        client: BackendClient,
        **kwargs,
    ) -> None:
        super().__init__(supervisors, **kwargs)
        self.client = client

    def tick(self) -> List[Reading]:
        timestamp = self._timestamp()
        readings: List[Reading] = []
        for index, supervisor in enumerate(self.supervisors.values()):
            supervisor.sample_and_classify(timestamp)
            if supervisor.state is not SupervisorState.CONNECTED or supervisor.latest_reading is None:
                continue
            reading = Reading(supervisor.latest_reading, supervisor.filter.is_stable())
            readings.append(reading)
            try:
                self.client.post_reading(index, reading)
            except requests.RequestException as exc:
                self.logger.warning("Backend post for scale=%s failed: %s", supervisor.device, exc)
        self.logger.debug("Readings: %s", ", ".join(str(r) for r in readings))
        return readings

    def close(self) -> None:
        super().close()
        self.client.close()


__all__ = ["MonitoringLoop", "DemoLoop", "connect_scales", "local_now"]
