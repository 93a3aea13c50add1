"""Pure domain logic: value objects, stability filter and classifier."""

from .classifier import UNSET, EventClassifier, EventContext, Stable, Unset
from .filters import StabilityFilter
from .models import Calibration, DeviceIdentity, DomainEvent, EventKind, Reading

__all__ = [
    "Calibration",
    "DeviceIdentity",
    "DomainEvent",
    "EventClassifier",
    "EventContext",
    "EventKind",
    "Reading",
    "StabilityFilter",
    "Stable",
    "UNSET",
    "Unset",
]
