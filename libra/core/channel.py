"""Load-cell backends and the calibrated channel built on top of them."""
from __future__ import annotations

import logging
import math
import random
import threading
import time
from typing import Optional

from ..config.settings import ScaleSettings
from ..domain.models import Calibration
from ..errors import SensorFault

try:  # pragma: no cover - optional dependency, needs libphidget22 at runtime
    from Phidget22.Devices.VoltageRatioInput import VoltageRatioInput  # type: ignore
    from Phidget22.PhidgetException import PhidgetException  # type: ignore
except Exception:  # pragma: no cover
    VoltageRatioInput = None  # type: ignore
    PhidgetException = Exception  # type: ignore

try:  # pragma: no cover - optional dependency on Raspberry Pi
    import lgpio  # type: ignore
except Exception:  # pragma: no cover
    lgpio = None  # type: ignore

LOGGER = logging.getLogger("libra.channel")


class BaseLoadCellBackend:
    """Hardware binding for one load-cell input.

    Every method reports hardware problems as :class:`SensorFault`.
    """

    name = "BASE"

    def open(self, timeout: float) -> None:  # pragma: no cover - interface method
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover - default no-op
        """Release hardware resources."""

    def read_raw(self) -> float:  # pragma: no cover - interface method
        raise NotImplementedError

    def set_sample_interval(self, seconds: float) -> None:  # pragma: no cover - optional
        """Ask the hardware to refresh at ``seconds`` intervals."""


class PhidgetBackend(BaseLoadCellBackend):
    """Voltage-ratio input of a Phidget bridge board."""

    name = "PHIDGET"

    def __init__(self, board_serial: int, channel_id: int, *, logger: Optional[logging.Logger] = None) -> None:
        self._board_serial = int(board_serial)
        self._channel_id = int(channel_id)
        self._logger = logger or LOGGER
        self._input = None

    def open(self, timeout: float) -> None:
        if VoltageRatioInput is None:
            raise SensorFault("Phidget22 library not available")
        handle = VoltageRatioInput()
        try:
            handle.setDeviceSerialNumber(self._board_serial)
            handle.setChannel(self._channel_id)
            handle.openWaitForAttachment(int(timeout * 1000))
        except PhidgetException as exc:
            self._safe_close(handle)
            raise SensorFault(
                f"phidget {self._board_serial}/{self._channel_id} open failed: {_describe(exc)}"
            ) from exc
        self._input = handle
        self._logger.info("Phidget %s, load cell %s connected", self._board_serial, self._channel_id)

    def close(self) -> None:
        handle, self._input = self._input, None
        if handle is not None:
            self._safe_close(handle)

    def set_sample_interval(self, seconds: float) -> None:
        handle = self._require_open()
        try:
            handle.setDataInterval(max(1, int(round(seconds * 1000))))
        except PhidgetException as exc:
            raise SensorFault(f"phidget data interval rejected: {_describe(exc)}") from exc

    def read_raw(self) -> float:
        handle = self._require_open()
        try:
            return float(handle.getVoltageRatio())
        except PhidgetException as exc:
            raise SensorFault(f"phidget read failed: {_describe(exc)}") from exc

    def _require_open(self):
        if self._input is None:
            raise SensorFault("phidget channel not open")
        return self._input

    def _safe_close(self, handle) -> None:
        try:
            handle.close()
        except PhidgetException as exc:
            self._logger.debug("Phidget close failed: %s", _describe(exc))


class HX711GpioBackend(BaseLoadCellBackend):
    """HX711 amplifier wired to Raspberry Pi GPIO pins, read with lgpio."""

    name = "HX711_GPIO"

    def __init__(
        self,
        dt_pin: int,
        sck_pin: int,
        *,
        chip: int = 0,
        read_timeout: float = 0.2,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._dt_pin = int(dt_pin)
        self._sck_pin = int(sck_pin)
        self._chip_id = int(chip)
        self._read_timeout = max(0.05, float(read_timeout))
        self._logger = logger or LOGGER
        self._lock = threading.Lock()
        self._chip_handle: Optional[int] = None

    def open(self, timeout: float) -> None:
        if lgpio is None:
            raise SensorFault("lgpio not available")
        if self._dt_pin < 0 or self._sck_pin < 0:
            raise SensorFault("HX711 pins must be positive BCM numbers")
        try:
            handle = lgpio.gpiochip_open(self._chip_id)
        except Exception as exc:  # lgpio raises its own error type
            raise SensorFault(f"lgpio open failed: {exc}") from exc
        try:
            lgpio.gpio_claim_input(handle, self._dt_pin)
            lgpio.gpio_claim_output(handle, self._sck_pin, 0)
        except Exception as exc:
            self._release(handle)
            raise SensorFault(f"lgpio setup failed: {exc}") from exc
        self._chip_handle = handle
        try:
            self._wait_ready(handle, timeout)
        except SensorFault:
            self.close()
            raise
        self._logger.info(
            "HX711 ready (chip=%s, dt=%s, sck=%s)", self._chip_id, self._dt_pin, self._sck_pin
        )

    def close(self) -> None:
        handle, self._chip_handle = self._chip_handle, None
        if handle is not None:
            self._release(handle)

    def read_raw(self) -> float:
        with self._lock:
            if self._chip_handle is None:
                raise SensorFault("lgpio chip not initialised")
            handle = self._chip_handle
            self._wait_ready(handle, self._read_timeout)
            value = 0
            for _ in range(24):
                self._set_clock(handle, 1)
                value = (value << 1) | self._read_bit(handle)
                self._set_clock(handle, 0)
            # 25th pulse selects channel A, gain 128 for the next conversion
            self._set_clock(handle, 1)
            self._set_clock(handle, 0)
        if value & 0x800000:
            value -= 0x1000000
        return float(value)

    def _wait_ready(self, handle: int, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        while self._read_bit(handle):
            if time.monotonic() > deadline:
                raise SensorFault("HX711 data not ready")
            time.sleep(0.001)

    def _set_clock(self, handle: int, level: int) -> None:
        try:
            lgpio.gpio_write(handle, self._sck_pin, level)
        except Exception as exc:
            raise SensorFault(f"gpio write failed: {exc}") from exc
        time.sleep(0.000002)

    def _read_bit(self, handle: int) -> int:
        try:
            level = lgpio.gpio_read(handle, self._dt_pin)
        except Exception as exc:
            raise SensorFault(f"gpio read failed: {exc}") from exc
        return 1 if level else 0

    def _release(self, handle: int) -> None:
        for pin in (self._sck_pin, self._dt_pin):
            try:
                lgpio.gpio_free(handle, pin)
            except Exception as exc:
                self._logger.debug("lgpio free pin %s failed: %s", pin, exc)
        try:
            lgpio.gpiochip_close(handle)
        except Exception as exc:
            self._logger.debug("lgpio close failed: %s", exc)


class SimulatedBackend(BaseLoadCellBackend):
    """Readings that settle on random targets, for running without hardware."""

    name = "SIMULATED"

    def __init__(self, *, seed: Optional[int] = None, start: float = 500.0) -> None:
        self._random = random.Random(seed)
        self._current = float(start)
        self._target = float(start)
        self._hold = 0
        self._open = False

    def open(self, timeout: float) -> None:
        self._open = True

    def close(self) -> None:
        self._open = False

    def read_raw(self) -> float:
        if not self._open:
            raise SensorFault("simulated channel not open")
        if self._hold <= 0:
            self._target = max(0.0, self._current + self._random.choice([-1, 1]) * self._random.uniform(20.0, 150.0))
            self._hold = self._random.randint(40, 120)
        self._hold -= 1
        diff = self._target - self._current
        step = math.copysign(min(abs(diff), max(0.5, abs(diff) * 0.2)), diff)
        self._current += step
        return round(self._current + self._random.uniform(-0.4, 0.4), 3)


class CalibratedChannel:
    """One load cell converted to weight units with ``raw * gain - offset``.

    No retries happen here; the caller decides how to recover.
    """

    def __init__(
        self,
        backend: BaseLoadCellBackend,
        calibration: Calibration,
        *,
        sample_period: float = 0.25,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.backend = backend
        self.calibration = calibration
        self.sample_period = float(sample_period)
        self._logger = logger or LOGGER
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self, timeout: float) -> None:
        if self._open:
            raise SensorFault(f"{self.backend.name} channel already open")
        self.backend.open(timeout)
        try:
            self.backend.set_sample_interval(self.sample_period)
        except SensorFault:
            self._close_backend()
            raise
        self._open = True

    def close(self) -> None:
        if not self._open:
            return
        self._open = False
        self._close_backend()

    def sample(self) -> float:
        if not self._open:
            raise SensorFault(f"{self.backend.name} channel not open")
        raw = self.backend.read_raw()
        if raw is None or not math.isfinite(raw):
            raise SensorFault(f"{self.backend.name} returned invalid sample {raw!r}")
        return self.calibration.apply(raw)

    def _close_backend(self) -> None:
        try:
            self.backend.close()
        except SensorFault as exc:
            self._logger.debug("%s close failed: %s", self.backend.name, exc)

    def __enter__(self) -> "CalibratedChannel":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def build_backend(settings: ScaleSettings, *, logger: Optional[logging.Logger] = None) -> BaseLoadCellBackend:
    if settings.backend == "hx711":
        return HX711GpioBackend(settings.hx711_dt, settings.hx711_sck, logger=logger)
    if settings.backend == "simulated":
        return SimulatedBackend()
    return PhidgetBackend(settings.board_serial, settings.channel_id, logger=logger)


def build_channel(settings: ScaleSettings, *, logger: Optional[logging.Logger] = None) -> CalibratedChannel:
    return CalibratedChannel(
        build_backend(settings, logger=logger),
        Calibration(settings.gain, settings.offset),
        sample_period=settings.sample_period,
        logger=logger,
    )


def _describe(exc: BaseException) -> str:
    details = getattr(exc, "details", None) or getattr(exc, "description", None)
    code = getattr(exc, "code", None)
    text = str(details or exc)
    return f"{text} (code {code})" if code is not None else text


__all__ = [
    "BaseLoadCellBackend",
    "PhidgetBackend",
    "HX711GpioBackend",
    "SimulatedBackend",
    "CalibratedChannel",
    "build_backend",
    "build_channel",
]
