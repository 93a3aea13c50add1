"""Process-level runtime helpers."""

from .liveness import LivenessFile

__all__ = ["LivenessFile"]
