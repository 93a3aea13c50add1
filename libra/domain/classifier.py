"""Turn stability transitions into domain events."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from .filters import StabilityFilter
from .models import DeviceIdentity, DomainEvent, EventKind


class Unset:
    """Last-stable marker before the scale has settled for the first time."""

    _instance: Optional["Unset"] = None

    def __new__(cls) -> "Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"


UNSET = Unset()


@dataclass(frozen=True)
class Stable:
    value: float


LastStable = Union[Unset, Stable]


@dataclass(frozen=True)
class EventContext:
    """Fields copied into every event produced for one scale."""

    device: DeviceIdentity
    location: str = ""
    ingredient: str = ""


class EventClassifier:
    """Compare successive stable values of one scale.

    At most one event is produced per call. Deltas whose magnitude does not
    exceed the noise threshold are ignored without moving the last-stable
    value, so drift below the threshold per step is never reported.
    """

    def __init__(self, context: EventContext, noise_threshold: float = 3.0) -> None:
        self.context = context
        self.noise_threshold = float(noise_threshold)
        self.last_stable: LastStable = UNSET

    def reset(self) -> None:
        self.last_stable = UNSET

    def classify(self, window: StabilityFilter, timestamp: datetime) -> Optional[DomainEvent]:
        if not window.is_stable():
            return None
        current = window.current()
        if current is None:  # pragma: no cover - a stable window is never empty
            return None
        if isinstance(self.last_stable, Unset):
            self.last_stable = Stable(current)
            return None
        delta = current - self.last_stable.value
        if abs(delta) <= self.noise_threshold:
            return None
        self.last_stable = Stable(current)
        kind = EventKind.REFILLED if delta > 0 else EventKind.SERVED
        return self._event(kind, delta, timestamp)

    # ------------------------------------------------------------------
    def starting(self, reading: float, timestamp: datetime) -> DomainEvent:
        return self._event(EventKind.STARTING, reading, timestamp)

    def offline(self, timestamp: datetime) -> DomainEvent:
        return self._event(EventKind.OFFLINE, 0.0, timestamp)

    def heartbeat(self, reading: float, timestamp: datetime) -> DomainEvent:
        return self._event(EventKind.HEARTBEAT, reading, timestamp)

    def _event(self, kind: EventKind, amount: float, timestamp: datetime) -> DomainEvent:
        return DomainEvent(
            kind=kind,
            amount=float(amount),
            device=self.context.device,
            timestamp=timestamp,
            location=self.context.location,
            ingredient=self.context.ingredient,
        )


__all__ = [
    "EventClassifier",
    "EventContext",
    "LastStable",
    "Stable",
    "Unset",
    "UNSET",
]
