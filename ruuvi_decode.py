from __future__ import annotations
from datetime import datetime, timezone
from typing import Mapping, Optional
import struct

from ruuvi_errors import PayloadLengthError, UnsupportedFormatError
from ruuvi_models import LiveSample

RUUVI_MANUFACTURER_ID = 0x0499

DATA_FORMAT_5 = 0x05  # RAWv2
DATA_FORMAT_3 = 0x03  # RAWv1

FORMAT_5_LENGTH = 24
FORMAT_3_LENGTH = 14

# raw "no data" values, format 5
_S16_INVALID = -32768
_U16_INVALID = 0xFFFF
_BATTERY_INVALID = 0x7FF
_TX_POWER_INVALID = 0x1F
_MOVEMENT_INVALID = 0xFF


def decode_manufacturer_data(manufacturer_data: Mapping[int, bytes], device_id: str, rssi: int,
                             *, now: Optional[datetime] = None) -> Optional[LiveSample]:
    """Decode the Ruuvi entry of an advertisement's manufacturer data.

    Returns None when the map has no Ruuvi (0x0499) entry; most devices in
    range are not Ruuvi sensors, so that is not an error. Raises
    UnsupportedFormatError / PayloadLengthError for Ruuvi payloads we can't read.
    """
    if not manufacturer_data or RUUVI_MANUFACTURER_ID not in manufacturer_data:
        return None
    return decode_payload(bytes(manufacturer_data[RUUVI_MANUFACTURER_ID]), device_id, rssi, now=now)


def decode_payload(payload: bytes, device_id: str, rssi: int,
                   *, now: Optional[datetime] = None) -> LiveSample:
    """Dispatch on the format tag in byte 0."""
    if not payload:
        raise PayloadLengthError(None, 0, 1)
    captured_at = now or datetime.now(timezone.utc)
    fmt = payload[0]
    if fmt == DATA_FORMAT_5:
        return decode_format5(payload, device_id, rssi, captured_at)
    if fmt == DATA_FORMAT_3:
        return decode_format3(payload, device_id, rssi, captured_at)
    raise UnsupportedFormatError(fmt)


def decode_format5(payload: bytes, device_id: str, rssi: int, captured_at: datetime) -> LiveSample:
    """RAWv2, all fields big-endian.

      [0]      format (5)
      [1:3]    temperature  s16  0.005 C
      [3:5]    humidity     u16  0.0025 %
      [5:7]    pressure     u16  1 Pa, +50000
      [7:13]   accel x/y/z  s16  1 mg
      [13:15]  power        u16  battery 11 bits (+1600 mV) | tx 5 bits (*2 - 40 dBm)
      [15]     movement     u8
      [16:18]  sequence     u16
      [18:24]  MAC
    """
    if len(payload) < FORMAT_5_LENGTH:
        raise PayloadLengthError(DATA_FORMAT_5, len(payload), FORMAT_5_LENGTH)

    (temp_raw, hum_raw, pres_raw, ax, ay, az,
     power, movement, seq) = struct.unpack_from(">hHHhhhHBH", payload, 1)

    battery_raw = (power >> 5) & 0x7FF
    tx_raw = power & 0x1F

    return LiveSample(
        device_id=device_id,
        mac_address=format_mac(payload[18:24]),
        temperature_c=float("nan") if temp_raw == _S16_INVALID else temp_raw * 0.005,
        humidity_pct=float("nan") if hum_raw == _U16_INVALID else hum_raw * 0.0025,
        pressure_pa=float("nan") if pres_raw == _U16_INVALID else float(pres_raw + 50000),
        rssi_dbm=rssi,
        captured_at=captured_at,
        data_format=DATA_FORMAT_5,
        acceleration_x=None if ax == _S16_INVALID else ax,
        acceleration_y=None if ay == _S16_INVALID else ay,
        acceleration_z=None if az == _S16_INVALID else az,
        battery_mv=None if battery_raw == _BATTERY_INVALID else battery_raw + 1600,
        tx_power_dbm=None if tx_raw == _TX_POWER_INVALID else tx_raw * 2 - 40,
        movement_counter=None if movement == _MOVEMENT_INVALID else movement,
        sequence_number=None if seq == _U16_INVALID else seq,
    )


def decode_format3(payload: bytes, device_id: str, rssi: int, captured_at: datetime) -> LiveSample:
    """RAWv1 (legacy firmware).

      [1]    humidity     u8   0.5 %
      [2]    temperature  integer part, bit 7 is the sign
      [3]    temperature  fraction, 1/100 C
      [4:6]  pressure     u16 BE, 1 Pa, +50000

    Acceleration and battery follow in the frame but are left unset; there is
    no embedded MAC in this format.
    """
    if len(payload) < FORMAT_3_LENGTH:
        raise PayloadLengthError(DATA_FORMAT_3, len(payload), FORMAT_3_LENGTH)

    humidity = payload[1] * 0.5
    temp_int = payload[2] & 0x7F
    temperature = temp_int + payload[3] / 100.0
    if payload[2] & 0x80:
        temperature = -temperature
    (pres_raw,) = struct.unpack_from(">H", payload, 4)

    return LiveSample(
        device_id=device_id,
        mac_address=None,
        temperature_c=temperature,
        humidity_pct=humidity,
        pressure_pa=float(pres_raw + 50000),
        rssi_dbm=rssi,
        captured_at=captured_at,
        data_format=DATA_FORMAT_3,
    )


def format_mac(b: bytes) -> str:
    return ":".join(f"{x:02X}" for x in b)


def encode_format5(temperature_c: float, humidity_pct: float, pressure_pa: float,
                   accel=(0, 0, 0), battery_mv: int = 3000, tx_power_dbm: int = 4,
                   movement: int = 0, seq: int = 0, mac: bytes = b"\x00" * 6) -> bytes:
    """Build a format 5 payload from physical values (inverse of decode_format5).

    Used to synthesise advertisements for tests and offline replay.
    """
    power = ((battery_mv - 1600) & 0x7FF) << 5 | ((tx_power_dbm + 40) // 2) & 0x1F
    body = struct.pack(
        ">BhHHhhhHBH",
        DATA_FORMAT_5,
        int(round(temperature_c / 0.005)),
        int(round(humidity_pct / 0.0025)),
        int(round(pressure_pa - 50000)),
        accel[0], accel[1], accel[2],
        power,
        movement,
        seq,
    )
    return body + bytes(mac)
