from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Optional
import struct

# AD types we care about
_AD_FLAGS = 0x01
_AD_LOCAL_NAME_SHORT = 0x08
_AD_LOCAL_NAME_COMPLETE = 0x09
_AD_TX_POWER = 0x0A
_AD_MANUFACTURER_SPECIFIC_DATA = 0xFF


@dataclass
class ScanRecord:
    manufacturer_data: Dict[int, bytes] = field(default_factory=dict)  # company_id -> payload
    flags: Optional[int] = None
    tx_power: Optional[int] = None
    local_name: Optional[str] = None
    raw: Optional[bytes] = None


def parse_scan_record(ad: bytes) -> ScanRecord:
    """Parse raw AdvData / ScanRsp bytes into a ScanRecord.

    Stops at a zero-length structure or at a structure running past the end
    of the buffer.
    """
    i = 0
    sr = ScanRecord(raw=bytes(ad))
    while i < len(ad):
        length = ad[i]
        if length == 0 or i + 1 + length > len(ad):
            break
        ad_type = ad[i + 1]
        value = bytes(ad[i + 2:i + 1 + length])
        if ad_type == _AD_MANUFACTURER_SPECIFIC_DATA and len(value) >= 2:
            (company_id,) = struct.unpack("<H", value[:2])
            sr.manufacturer_data[company_id] = value[2:]
        elif ad_type in (_AD_LOCAL_NAME_SHORT, _AD_LOCAL_NAME_COMPLETE):
            sr.local_name = value.decode("utf-8", errors="ignore")
        elif ad_type == _AD_TX_POWER and value:
            sr.tx_power = struct.unpack("b", value[:1])[0]
        elif ad_type == _AD_FLAGS and value:
            sr.flags = value[0]
        i += 1 + length
    return sr


def manufacturer_data_from_hex(hex_str: str, company_id: int) -> Dict[int, bytes]:
    """Accept either a full advertisement or a bare manufacturer payload.

    Bare payloads (what `adv.manufacturer_data[...]` holds) are mapped to
    `company_id`.
    """
    raw = bytes.fromhex(hex_str.replace(" ", "").replace(":", ""))
    if _walks_cleanly(raw):
        sr = parse_scan_record(raw)
        if sr.manufacturer_data:
            return sr.manufacturer_data
    return {company_id: raw}


def _walks_cleanly(ad: bytes) -> bool:
    i = 0
    while i < len(ad):
        if ad[i] == 0:
            return all(b == 0 for b in ad[i:])  # zero padding
        i += 1 + ad[i]
    return i == len(ad)
