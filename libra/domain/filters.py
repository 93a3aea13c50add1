"""Sliding-window stability filter used by every scale."""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Optional, Tuple

DEFAULT_WINDOW = 20
DEFAULT_NOISE_THRESHOLD = 3.0


@dataclass
class StabilityFilter:
    """Keep the last ``window`` calibrated readings and judge their spread.

    The window is stable only once it is full and ``max - min`` is strictly
    below ``noise_threshold``.
    """

    window: int = DEFAULT_WINDOW
    noise_threshold: float = DEFAULT_NOISE_THRESHOLD
    _samples: Deque[float] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.window < 1:
            raise ValueError("window must hold at least one reading")
        self._samples = deque(maxlen=self.window)

    def push(self, reading: float) -> None:
        self._samples.append(float(reading))

    def is_full(self) -> bool:
        return len(self._samples) == self.window

    def spread(self) -> float:
        if not self._samples:
            return 0.0
        return max(self._samples) - min(self._samples)

    def is_stable(self) -> bool:
        if not self.is_full():
            return False
        return self.spread() < self.noise_threshold

    def current(self) -> Optional[float]:
        return self._samples[-1] if self._samples else None

    def clear(self) -> None:
        self._samples.clear()

    def history(self) -> Tuple[float, ...]:
        return tuple(self._samples)

    def __len__(self) -> int:
        return len(self._samples)


__all__ = ["StabilityFilter", "DEFAULT_WINDOW", "DEFAULT_NOISE_THRESHOLD"]
