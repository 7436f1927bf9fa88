from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
import math
import re

_MAC_RE = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$")


@dataclass
class LiveSample:
    """One advertisement-derived reading.

    temperature_c, humidity_pct and pressure_pa are always floats; a NaN
    means the sensor broadcast its "no data" sentinel for that field.
    """
    device_id: str
    mac_address: Optional[str]
    temperature_c: float
    humidity_pct: float
    pressure_pa: float
    rssi_dbm: int
    captured_at: datetime
    data_format: int = 5
    acceleration_x: Optional[int] = None  # milli-g
    acceleration_y: Optional[int] = None
    acceleration_z: Optional[int] = None
    battery_mv: Optional[int] = None
    tx_power_dbm: Optional[int] = None
    movement_counter: Optional[int] = None
    sequence_number: Optional[int] = None

    def to_record(self) -> Dict[str, object]:
        """Flat JSON-friendly dict; NaN sentinels become None."""
        def _num(v):
            return None if v is None or (isinstance(v, float) and math.isnan(v)) else v

        return {
            "ts_iso": self.captured_at.isoformat(),
            "device_id": self.device_id,
            "mac": self.mac_address,
            "rssi": self.rssi_dbm,
            "format": self.data_format,
            "temperature_c": _num(self.temperature_c),
            "humidity_pct": _num(self.humidity_pct),
            "pressure_pa": _num(self.pressure_pa),
            "accel_x_mg": self.acceleration_x,
            "accel_y_mg": self.acceleration_y,
            "accel_z_mg": self.acceleration_z,
            "battery_mv": self.battery_mv,
            "tx_power_dbm": self.tx_power_dbm,
            "movement_counter": self.movement_counter,
            "seq": self.sequence_number,
        }


@dataclass(frozen=True)
class HistorySample:
    timestamp: int  # device epoch seconds
    temperature_c: Optional[float] = None
    humidity_pct: Optional[float] = None
    pressure_hpa: Optional[float] = None

    @property
    def time(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)

    @property
    def temperature_f(self) -> Optional[float]:
        if self.temperature_c is None:
            return None
        return (9 * self.temperature_c / 5) + 32

    @property
    def pressure_mmhg(self) -> Optional[float]:
        if self.pressure_hpa is None:
            return None
        return self.pressure_hpa * 0.750062

    @property
    def pressure_inhg(self) -> Optional[float]:
        if self.pressure_hpa is None:
            return None
        return self.pressure_hpa * 0.02953

    def is_complete(self) -> bool:
        return None not in (self.temperature_c, self.humidity_pct, self.pressure_hpa)

    def available_sensors(self) -> List[str]:
        out = []
        if self.temperature_c is not None:
            out.append("temperature")
        if self.humidity_pct is not None:
            out.append("humidity")
        if self.pressure_hpa is not None:
            out.append("pressure")
        return out

    def to_dict(self) -> Dict[str, object]:
        return {
            "timestamp": self.timestamp,
            "ts_iso": self.time.isoformat(),
            "temperature_c": self.temperature_c,
            "humidity_pct": self.humidity_pct,
            "pressure_hpa": self.pressure_hpa,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, object]) -> "HistorySample":
        def _f(key):
            v = d.get(key)
            return None if v is None else float(v)

        return cls(
            timestamp=int(d["timestamp"]),
            temperature_c=_f("temperature_c"),
            humidity_pct=_f("humidity_pct"),
            pressure_hpa=_f("pressure_hpa"),
        )


@dataclass(frozen=True)
class ParseWarning:
    """Data-quality note attached to parsed history; the data itself is kept."""
    kind: str  # "truncated" or "out_of_range"
    message: str
    record_index: Optional[int] = None


@dataclass(frozen=True)
class MeasurementCollection:
    """Immutable, timestamp-ordered result of one history retrieval."""
    device_id: str
    samples: Tuple[HistorySample, ...] = ()
    warnings: Tuple[ParseWarning, ...] = ()

    @classmethod
    def build(cls, device_id: str, samples, warnings=()) -> "MeasurementCollection":
        # sorted() is stable, so equal timestamps keep their arrival order
        ordered = tuple(sorted(samples, key=lambda s: s.timestamp))
        return cls(device_id=device_id, samples=ordered, warnings=tuple(warnings))

    def __len__(self) -> int:
        return len(self.samples)

    def __iter__(self):
        return iter(self.samples)

    @property
    def count(self) -> int:
        return len(self.samples)

    @property
    def first(self) -> Optional[HistorySample]:
        return self.samples[0] if self.samples else None

    @property
    def last(self) -> Optional[HistorySample]:
        return self.samples[-1] if self.samples else None

    @property
    def start_timestamp(self) -> Optional[int]:
        return self.first.timestamp if self.samples else None

    @property
    def end_timestamp(self) -> Optional[int]:
        return self.last.timestamp if self.samples else None

    @property
    def time_range(self) -> Optional[int]:
        """Seconds between first and last sample, None below two samples."""
        if len(self.samples) < 2:
            return None
        return self.samples[-1].timestamp - self.samples[0].timestamp

    def filter_by_date_range(self, start: int, end: int) -> "MeasurementCollection":
        kept = [s for s in self.samples if start <= s.timestamp <= end]
        return MeasurementCollection(self.device_id, tuple(kept), self.warnings)

    def complete_only(self) -> "MeasurementCollection":
        kept = [s for s in self.samples if s.is_complete()]
        return MeasurementCollection(self.device_id, tuple(kept), self.warnings)

    def averages(self) -> Dict[str, Optional[float]]:
        out: Dict[str, Optional[float]] = {}
        for name, attr in (("temperature", "temperature_c"),
                           ("humidity", "humidity_pct"),
                           ("pressure", "pressure_hpa")):
            vals = [getattr(s, attr) for s in self.samples if getattr(s, attr) is not None]
            out[name] = sum(vals) / len(vals) if vals else None
        return out


@dataclass
class DeviceInformation:
    """Contents of the Device Information Service (0x180A)."""
    identifier: str
    mac_address: str
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    firmware_version: Optional[str] = None
    hardware_version: Optional[str] = None

    @property
    def display_name(self) -> str:
        return display_name_for(self.identifier)

    def has_serial_number(self) -> bool:
        return not _MAC_RE.match(self.identifier)

    def to_dict(self) -> Dict[str, object]:
        return {
            "identifier": self.identifier,
            "mac": self.mac_address,
            "manufacturer": self.manufacturer,
            "model": self.model,
            "firmware": self.firmware_version,
            "hardware": self.hardware_version,
            "display_name": self.display_name,
            "has_serial_number": self.has_serial_number(),
        }


def display_name_for(identifier: str) -> str:
    """'Ruuvi XXXX' from the last four hex digits of a MAC or serial."""
    tail = identifier.replace(":", "").upper()
    return f"Ruuvi {tail[-4:]}"
