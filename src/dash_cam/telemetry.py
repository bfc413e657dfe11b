"""System telemetry included in the periodic capture sample."""
from __future__ import annotations

import glob
from dataclasses import dataclass
from pathlib import Path

THERMAL_ZONE_GLOB = "/sys/class/thermal/thermal_zone*/temp"
POWER_SUPPLY_GLOB = "/sys/class/power_supply/*"


@dataclass(slots=True)
class TelemetrySample:
    """Power draw in watts and SoC temperature in degrees Celsius."""

    power_w: float = 0.0
    temperature_c: float = 0.0


def _read_number(path: Path) -> float | None:
    try:
        text = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def read_temperature_c(pattern: str = THERMAL_ZONE_GLOB) -> float:
    """Return the highest thermal zone reading, or ``0.0`` if none is exposed."""

    readings: list[float] = []
    for candidate in sorted(glob.glob(pattern)):
        value = _read_number(Path(candidate))
        if value is None:
            continue
        # Kernel reports millidegrees.
        readings.append(value / 1000.0 if abs(value) > 200 else value)
    return max(readings) if readings else 0.0


def read_power_w(pattern: str = POWER_SUPPLY_GLOB) -> float:
    """Return the summed power draw reported by the power supply class."""

    total = 0.0
    for folder in sorted(glob.glob(pattern)):
        base = Path(folder)
        power = _read_number(base / "power_now")
        if power is not None:
            total += power / 1_000_000.0
            continue
        current = _read_number(base / "current_now")
        voltage = _read_number(base / "voltage_now")
        if current is not None and voltage is not None:
            total += (current / 1_000_000.0) * (voltage / 1_000_000.0)
    return total


def read_telemetry() -> TelemetrySample:
    return TelemetrySample(power_w=read_power_w(), temperature_c=read_temperature_c())


def format_capture_sample(fps: float, sample: TelemetrySample) -> str:
    """Render the ``fps,power,temperature`` info string."""

    return "%.2f,%.1f,%.2f" % (fps, sample.power_w, sample.temperature_c)


def parse_capture_sample(message: str | None) -> tuple[float, float, float] | None:
    if not message:
        return None
    parts = message.split(",")
    if len(parts) != 3:
        return None
    try:
        fps, power, temperature = (float(part) for part in parts)
    except ValueError:
        return None
    return fps, power, temperature


__all__ = [
    "TelemetrySample",
    "format_capture_sample",
    "parse_capture_sample",
    "read_power_w",
    "read_telemetry",
    "read_temperature_c",
]
