"""Error taxonomy shared by every layer of the monitor."""
from __future__ import annotations


class LibraError(RuntimeError):
    """Base class for monitor errors."""


class SensorFault(LibraError):
    """Hardware I/O or protocol failure; recoverable by restarting the channel."""


class StorageFault(LibraError):
    """The event log could not be written."""


class ConfigFault(LibraError):
    """Malformed or missing scale configuration."""


class TimingFault(LibraError):
    """No usable clock reading; events cannot be timestamped."""


__all__ = [
    "LibraError",
    "SensorFault",
    "StorageFault",
    "ConfigFault",
    "TimingFault",
]
