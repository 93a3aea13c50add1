"""Liveness file touched once per monitoring tick for external watchdogs."""
from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Callable, Union

__all__ = ["LivenessFile"]

log = logging.getLogger(__name__)


class LivenessFile:
    """Write the current epoch time to ``path`` so a watchdog sees progress."""

    def __init__(self, path: Union[str, "os.PathLike[str]"], clock: Callable[[], float] = time.time) -> None:
        self._path = Path(path)
        self._clock = clock
        self._warned = False
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            log.debug("Failed to ensure liveness directory %s: %s", self._path.parent, exc)

    @property
    def path(self) -> Path:
        return self._path

    def touch(self) -> bool:
        try:
            self._write()
        except OSError as exc:
            if not self._warned:
                log.warning("Could not write liveness file %s: %s", self._path, exc)
                self._warned = True
            return False
        self._warned = False
        return True

    def _write(self) -> None:
        with open(self._path, "w", encoding="utf-8") as handle:
            handle.write(f"{self._clock():.6f}\n")
            handle.flush()
            os.fsync(handle.fileno())
