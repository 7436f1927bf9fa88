"""Parser for fixed-record history blobs (firmware 3.31.1+).

Each record is 10 bytes, little-endian:

  [0:4]   epoch seconds   u32
  [4:6]   temperature     s16  0.005 C
  [6:8]   humidity        u16  0.0025 %
  [8:10]  pressure        u16  0.1 hPa, +500 hPa

There are no sentinel values in this format. Physically implausible values are
reported as warnings but the record is still returned.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List
import logging
import struct

from ruuvi_models import HistorySample, ParseWarning

logger = logging.getLogger(__name__)

RECORD_SIZE = 10
_RECORD = struct.Struct("<IhHH")

TEMP_RANGE_C = (-40.0, 85.0)
HUMIDITY_RANGE_PCT = (0.0, 100.0)
PRESSURE_RANGE_HPA = (300.0, 1100.0)

# plausibility window for the first record's timestamp
VALID_FROM = int(datetime(2020, 1, 1, tzinfo=timezone.utc).timestamp())
VALID_UNTIL = int(datetime(2030, 1, 1, tzinfo=timezone.utc).timestamp())


@dataclass
class CutParseResult:
    samples: List[HistorySample] = field(default_factory=list)
    warnings: List[ParseWarning] = field(default_factory=list)

    @property
    def truncated(self) -> bool:
        return any(w.kind == "truncated" for w in self.warnings)


def parse_history_data(data: bytes, device_id: str) -> CutParseResult:
    """Parse every complete record in `data`, in device order."""
    result = CutParseResult()
    n_records, remainder = divmod(len(data), RECORD_SIZE)
    logger.debug("%s: parsing %d bytes of history data", device_id, len(data))

    if remainder:
        msg = (f"data length {len(data)} is not a multiple of {RECORD_SIZE}; "
               f"ignoring {remainder} trailing bytes")
        logger.warning("%s: %s", device_id, msg)
        result.warnings.append(ParseWarning("truncated", msg, n_records))

    for idx in range(n_records):
        sample = _parse_record(data, idx)
        result.warnings.extend(_range_warnings(sample, idx, device_id))
        result.samples.append(sample)

    logger.debug("%s: parsed %d history entries", device_id, len(result.samples))
    return result


def _parse_record(data: bytes, idx: int) -> HistorySample:
    epoch, temp_raw, hum_raw, pres_raw = _RECORD.unpack_from(data, idx * RECORD_SIZE)
    return HistorySample(
        timestamp=epoch,
        temperature_c=temp_raw * 0.005,
        humidity_pct=hum_raw * 0.0025,
        pressure_hpa=500 + pres_raw * 0.1,
    )


def _range_warnings(sample: HistorySample, idx: int, device_id: str) -> List[ParseWarning]:
    out = []
    checks = (
        ("temperature", sample.temperature_c, TEMP_RANGE_C, "C"),
        ("humidity", sample.humidity_pct, HUMIDITY_RANGE_PCT, "%"),
        ("pressure", sample.pressure_hpa, PRESSURE_RANGE_HPA, "hPa"),
    )
    for name, value, (lo, hi), unit in checks:
        if value < lo or value > hi:
            msg = f"entry {idx}: {name} out of range: {value:.3f} {unit}"
            logger.warning("%s: %s", device_id, msg)
            out.append(ParseWarning("out_of_range", msg, idx))
    return out


def is_valid_history_data(data: bytes) -> bool:
    """Cheap pre-filter: does the first record carry a sane timestamp?

    Only the first record is inspected; this says the bytes look like history,
    not that they are correct.
    """
    if len(data) < RECORD_SIZE:
        return False
    (epoch,) = struct.unpack_from("<I", data, 0)
    return VALID_FROM <= epoch <= VALID_UNTIL
