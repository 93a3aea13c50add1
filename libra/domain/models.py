"""Value objects shared by the filter, the classifier and the sinks."""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict


@dataclass(frozen=True)
class DeviceIdentity:
    """Join key for logged events: (model tag, serial number)."""

    model: str
    serial: str

    def __str__(self) -> str:
        return f"{self.model}-{self.serial}"


@dataclass(frozen=True)
class Calibration:
    gain: float
    offset: float

    def apply(self, raw: float) -> float:
        return raw * self.gain - self.offset


class EventKind(str, Enum):
    STARTING = "Starting"
    SERVED = "Served"
    REFILLED = "Refilled"
    OFFLINE = "Offline"
    HEARTBEAT = "Heartbeat"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class DomainEvent:
    """A classified occurrence, written once to the event log."""

    kind: EventKind
    amount: float
    device: DeviceIdentity
    timestamp: datetime
    location: str = ""
    ingredient: str = ""

    def to_record(self) -> tuple:
        return (
            str(self.device),
            self.device.model,
            self.timestamp.isoformat(),
            self.kind.value,
            float(self.amount),
            self.location,
            self.ingredient,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scale": str(self.device),
            "model": self.device.model,
            "serial": self.device.serial,
            "timestamp": self.timestamp.isoformat(),
            "action": self.kind.value,
            "amount": float(self.amount),
            "location": self.location,
            "ingredient": self.ingredient,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


@dataclass(frozen=True)
class Reading:
    """A single calibrated sample tagged with the window's stability."""

    value: float
    stable: bool

    def to_dict(self) -> Dict[str, float]:
        return {"stable" if self.stable else "unstable": self.value}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    def __str__(self) -> str:
        state = "Stable" if self.stable else "Unstable"
        return f"{state}: {int(self.value)} g"


__all__ = ["DeviceIdentity", "Calibration", "EventKind", "DomainEvent", "Reading"]
