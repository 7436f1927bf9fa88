#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
ruuvi_scanner.py
----------------
- Listens for RuuviTag advertisements (manufacturer id 0x0499).
- Decodes data format 5 (RAWv2) and 3 (RAWv1).
- Keeps one "last known sample" per device for the duration of the scan.
- Prints one JSON line per decoded advertisement; optional NDJSON log file.

Offline:  ruuvi_scanner.py --hex 0512FC5394C37C0004FFFC040CAC364200CDCBB8334C884F
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from ruuvi_decode import RUUVI_MANUFACTURER_ID, decode_manufacturer_data
from ruuvi_errors import DecodeError
from ruuvi_models import LiveSample, display_name_for
from ruuvi_scanrecord import manufacturer_data_from_hex

logger = logging.getLogger(__name__)


def _norm_mac(s: str) -> str:
    return s.replace(":", "").replace("-", "").lower()


@dataclass
class KnownDevice:
    device_id: str
    name: Optional[str]
    rssi: int
    last_sample: LiveSample
    first_seen: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_seen: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updates: int = 1

    def update(self, sample: LiveSample, rssi: int, name: Optional[str] = None):
        self.last_sample = sample
        self.rssi = rssi
        self.last_seen = sample.captured_at
        self.updates += 1
        if name:
            self.name = name

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        return display_name_for(self.last_sample.mac_address or self.device_id)


class RuuviScanner:
    """Owns the device map; only the detection callback writes to it."""

    def __init__(self, mac_filter: Optional[str] = None,
                 on_sample: Optional[Callable[[LiveSample], None]] = None):
        self.mac_filter = _norm_mac(mac_filter) if mac_filter else None
        self.on_sample = on_sample
        self.devices: Dict[str, KnownDevice] = {}
        self.scan_count = 0
        self.ruuvi_count = 0
        self.error_count = 0

    def handle_advertisement(self, device_id: str, name: Optional[str], rssi: int,
                             manufacturer_data: Dict[int, bytes]) -> Optional[LiveSample]:
        self.scan_count += 1
        if self.mac_filter and _norm_mac(device_id) != self.mac_filter:
            return None
        try:
            sample = decode_manufacturer_data(manufacturer_data, device_id, rssi)
        except DecodeError as e:
            # one bad payload must not stop the scan
            self.error_count += 1
            logger.warning("%s: %s", device_id, e)
            return None
        if sample is None:
            return None

        self.ruuvi_count += 1
        known = self.devices.get(device_id)
        if known is None:
            self.devices[device_id] = KnownDevice(device_id, name, rssi, sample,
                                                  first_seen=sample.captured_at,
                                                  last_seen=sample.captured_at)
            logger.info("new Ruuvi device %s (%s)", device_id, sample.mac_address)
        else:
            known.update(sample, rssi, name)

        if self.on_sample:
            self.on_sample(sample)
        return sample

    def detection_callback(self, device: BLEDevice, adv: AdvertisementData):
        self.handle_advertisement(device.address, adv.local_name or device.name, adv.rssi,
                                  adv.manufacturer_data or {})

    async def scan(self, duration: Optional[float] = None, adapter: Optional[str] = None):
        """Scan for `duration` seconds, or until cancelled when None."""
        extra = {"adapter": adapter} if adapter else {}
        async with BleakScanner(detection_callback=self.detection_callback, **extra):
            if duration is None:
                while True:
                    await asyncio.sleep(3600)
            await asyncio.sleep(duration)
        logger.info("scan complete: %d adverts, %d Ruuvi, %d decode errors, %d devices",
                    self.scan_count, self.ruuvi_count, self.error_count, len(self.devices))


def decode_hex(hex_str: str) -> int:
    try:
        mfr = manufacturer_data_from_hex(hex_str, RUUVI_MANUFACTURER_ID)
        sample = decode_manufacturer_data(mfr, "offline", 0)
    except (ValueError, DecodeError) as e:
        print(f"decode error: {e}", file=sys.stderr)
        return 1
    if sample is None:
        print("no Ruuvi manufacturer data (0x0499) in input", file=sys.stderr)
        return 1
    print(json.dumps(sample.to_record(), indent=2))
    return 0


async def main(args) -> int:
    log_fp = open(args.log_file, "a", buffering=1) if args.log_file else None

    def emit(sample: LiveSample):
        line = json.dumps(sample.to_record(), separators=(",", ":"))
        print(line)
        if log_fp:
            log_fp.write(line + "\n")

    scanner = RuuviScanner(mac_filter=args.mac, on_sample=emit)
    print("🔍 Listening for RuuviTag advertisements... (Ctrl+C to stop)", file=sys.stderr)
    try:
        await scanner.scan(args.seconds, adapter=args.adapter)
    except BleakError as e:
        print(f"❌ Scan failed: {e}", file=sys.stderr)
        return 1
    finally:
        if log_fp:
            log_fp.close()

    for dev in scanner.devices.values():
        print(f"{dev.display_name:12s} {dev.device_id}  rssi={dev.rssi}dBm  updates={dev.updates}",
              file=sys.stderr)
    return 0


def build_arg_parser():
    p = argparse.ArgumentParser(description="Scan and decode RuuviTag advertisements.")
    p.add_argument("--mac", help="Only report this device address (case-insensitive).")
    p.add_argument("--seconds", type=float, default=None, help="Scan duration; default runs until Ctrl+C.")
    p.add_argument("--adapter", default=None, help="HCI adapter (e.g. hci0).")
    p.add_argument("--log-file", help="Append NDJSON lines to this file.")
    p.add_argument("--hex", help="Decode one advertisement / manufacturer payload given as hex and exit.")
    p.add_argument("--debug", action="store_true", help="Verbose logging to stderr.")
    return p


def run():
    args = build_arg_parser().parse_args()
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if args.hex:
        sys.exit(decode_hex(args.hex))
    try:
        sys.exit(asyncio.run(main(args)))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
