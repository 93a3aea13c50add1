"""Per-scale supervision: sampling, classification and fault recovery."""
from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from ..config.settings import ScaleSettings
from ..core.channel import CalibratedChannel, build_channel
from ..domain.classifier import EventClassifier, EventContext
from ..domain.filters import StabilityFilter
from ..domain.models import DeviceIdentity, DomainEvent
from ..errors import SensorFault

LOGGER = logging.getLogger("libra.supervisor")


class SupervisorState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    FAULTED = "faulted"


class ScaleSupervisor:
    """Own the channel, filter and classifier of one physical scale.

    :meth:`sample_and_classify` never raises: a :class:`SensorFault` moves the
    scale to ``FAULTED`` and is answered with an inline restart attempt.
    While faulted, every call retries the restart.
    """

    def __init__(
        self,
        device: DeviceIdentity,
        channel: CalibratedChannel,
        *,
        location: str = "",
        ingredient: str = "",
        open_timeout: float = 5.0,
        heartbeat_period: float = 60.0,
        window: int = 20,
        noise_threshold: float = 3.0,
        offline_policy: str = "every_tick",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.device = device
        self.channel = channel
        self.location = location
        self.ingredient = ingredient
        self.open_timeout = float(open_timeout)
        self.heartbeat_period = float(heartbeat_period)
        self.offline_policy = offline_policy
        self.logger = logger or LOGGER
        self.filter = StabilityFilter(window=window, noise_threshold=noise_threshold)
        self.classifier = EventClassifier(EventContext(device, location, ingredient), noise_threshold)
        self.state = SupervisorState.DISCONNECTED
        self.latest_reading: Optional[float] = None
        self._awaiting_first_sample = False
        self._offline_reported = False

    @classmethod
    def from_settings(
        cls,
        settings: ScaleSettings,
        *,
        window: int = 20,
        noise_threshold: float = 3.0,
        offline_policy: str = "every_tick",
        channel: Optional[CalibratedChannel] = None,
        logger: Optional[logging.Logger] = None,
    ) -> "ScaleSupervisor":
        return cls(
            DeviceIdentity(settings.model, settings.serial),
            channel or build_channel(settings, logger=logger),
            location=settings.location,
            ingredient=settings.ingredient,
            open_timeout=settings.open_timeout,
            heartbeat_period=settings.heartbeat_period,
            window=window,
            noise_threshold=noise_threshold,
            offline_policy=offline_policy,
            logger=logger,
        )

    # ------------------------------------------------------------------
    def connect(self) -> None:
        """Open the channel from cold start; raises :class:`SensorFault`."""

        self.channel.open(self.open_timeout)
        self._reset_window()
        self.state = SupervisorState.CONNECTED
        self.logger.info("scale=%s connected", self.device)

    def restart(self) -> bool:
        """Close and reopen the channel, discarding every pre-fault sample."""

        self.logger.warning("scale=%s restart attempt", self.device)
        self.channel.close()
        self._reset_window()
        try:
            self.channel.open(self.open_timeout)
        except SensorFault as exc:
            self.state = SupervisorState.FAULTED
            self.logger.warning("scale=%s restart failed: %s", self.device, exc)
            return False
        self.state = SupervisorState.CONNECTED
        self.logger.warning("scale=%s restart succeeded", self.device)
        return True

    def close(self) -> None:
        self.channel.close()
        self.state = SupervisorState.DISCONNECTED

    # ------------------------------------------------------------------
    def sample_and_classify(self, timestamp: datetime) -> Optional[DomainEvent]:
        restarted = False
        if self.state is not SupervisorState.CONNECTED:
            if not self.restart():
                return self._offline(timestamp)
            restarted = True
        try:
            reading = self.channel.sample()
        except SensorFault as exc:
            self._fault(exc)
            # one restart per tick bounds the tick to a single open timeout
            if restarted or not self.restart():
                return self._offline(timestamp)
            try:
                reading = self.channel.sample()
            except SensorFault as retry_exc:
                self._fault(retry_exc)
                return self._offline(timestamp)
        return self._accept(reading, timestamp)

    def heartbeat(self, timestamp: datetime) -> DomainEvent:
        """Heartbeat carrying the latest reading.

        A scale that has not produced a reading since start reports ``0.0``;
        a preceding ``Starting`` row in the log tells the two cases apart.
        """

        reading = self.latest_reading if self.latest_reading is not None else 0.0
        return self.classifier.heartbeat(reading, timestamp)

    # ------------------------------------------------------------------
    def _accept(self, reading: float, timestamp: datetime) -> Optional[DomainEvent]:
        self.latest_reading = reading
        self._offline_reported = False
        self.filter.push(reading)
        if self._awaiting_first_sample:
            self._awaiting_first_sample = False
            return self.classifier.starting(reading, timestamp)
        return self.classifier.classify(self.filter, timestamp)

    def _fault(self, exc: SensorFault) -> None:
        self.state = SupervisorState.FAULTED
        self.logger.warning("scale=%s sample failed: %s", self.device, exc)

    def _offline(self, timestamp: datetime) -> Optional[DomainEvent]:
        if self.offline_policy == "transition" and self._offline_reported:
            return None
        self._offline_reported = True
        self.logger.warning("scale=%s offline", self.device)
        return self.classifier.offline(timestamp)

    def _reset_window(self) -> None:
        self.filter.clear()
        self.classifier.reset()
        self._awaiting_first_sample = True


__all__ = ["ScaleSupervisor", "SupervisorState"]
