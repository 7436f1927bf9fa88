#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
ruuvi_history_reader.py
Connect to a RuuviTag and download its logged history over the Nordic UART Service.

Usage:
  python3 ruuvi_history_reader.py --mac CC:AF:FD:5D:26:DE                 # last 7 days, legacy log protocol
  python3 ruuvi_history_reader.py --mac ... --all --csv history.csv       # everything the tag has
  python3 ruuvi_history_reader.py --mac ... --variant cut                 # 10-byte record firmware
  python3 ruuvi_history_reader.py --mac ... --info                        # Device Information Service only

Flags:
  --since ISO            Start time (e.g. 2024-05-01T00:00:00+00:00)
  --config FILE          JSON settings (timeouts, trigger commands); see ruuvi_config.py
  --save-config FILE     Write the effective settings to FILE and exit
  --silence S            Override silence timeout (seconds)
  --timeout S            Override absolute timeout (seconds)
"""

import argparse
import asyncio
import csv
import json
import logging
import sys
from dataclasses import replace
from datetime import datetime, timezone

from bleak.exc import BleakError

from ruuvi_config import load_config, save_config
from ruuvi_errors import RuuviError
from ruuvi_history_session import HistoryResult, HistorySession, ProtocolVariant
from ruuvi_transport import NusTransport, read_device_information

logger = logging.getLogger(__name__)

CSV_FIELDS = ["timestamp", "ts_iso", "temperature_c", "humidity_pct", "pressure_hpa"]


def parse_since(value: str) -> int:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def write_csv(path: str, result: HistoryResult):
    with open(path, "w", newline="") as f:
        w = csv.DictWriter(f, fieldnames=CSV_FIELDS)
        w.writeheader()
        for s in result.collection:
            w.writerow(s.to_dict())
    print(f"✅ Wrote {result.collection.count} rows to {path}")


def write_ndjson(path: str, result: HistoryResult):
    with open(path, "w") as f:
        for s in result.collection:
            f.write(json.dumps(s.to_dict(), separators=(",", ":")) + "\n")
    print(f"✅ Wrote {result.collection.count} lines to {path}")


def print_summary(result: HistoryResult):
    c = result.collection
    print(f"📈 Retrieved {c.count} measurements ({result.completion.value})")
    if not result.device_confirmed:
        print("⚠️  Device did not confirm end of data; history may be partial.")
    if c.count:
        print(f"📅 Time range: {c.first.time.isoformat()} to {c.last.time.isoformat()}")
        avg = c.averages()
        if avg["temperature"] is not None:
            print(f"🌡️ Average temperature: {avg['temperature']:.2f}°C")
        if avg["humidity"] is not None:
            print(f"💧 Average humidity: {avg['humidity']:.1f}%")
        if avg["pressure"] is not None:
            print(f"📊 Average pressure: {avg['pressure']:.1f} hPa")
    for w in c.warnings:
        print(f"⚠️  {w.message}")


async def read_history(args, cfg) -> int:
    transport = await NusTransport.connect(args.mac, timeout=cfg.connect_timeout,
                                           retries=cfg.connect_retries, adapter=cfg.adapter)
    async with transport:
        if args.info:
            info = await read_device_information(transport.client)
            print(json.dumps(info.to_dict(), indent=2))
            return 0

        session = HistorySession(transport, args.mac, variant=ProtocolVariant(args.variant), config=cfg)
        start = parse_since(args.since) if args.since else None
        result = await session.retrieve(start, retrieve_all=args.all)

    print_summary(result)
    if args.csv:
        write_csv(args.csv, result)
    if args.ndjson:
        write_ndjson(args.ndjson, result)
    return 0


def build_arg_parser():
    p = argparse.ArgumentParser(description="Download RuuviTag history over BLE")
    p.add_argument("--mac", help="Device address")
    p.add_argument("--variant", choices=[v.value for v in ProtocolVariant], default=ProtocolVariant.LEGACY.value,
                   help="History protocol: legacy endpoint log or cut 10-byte records")
    p.add_argument("--since", help="ISO start time (default: lookback_days ago)")
    p.add_argument("--all", action="store_true", help="Request all stored history")
    p.add_argument("--info", action="store_true", help="Read device information and exit")
    p.add_argument("--config", default=None, help="JSON config file")
    p.add_argument("--save-config", default=None, help="Write effective config to this path and exit")
    p.add_argument("--silence", type=float, default=None, help="Silence timeout seconds")
    p.add_argument("--timeout", type=float, default=None, help="Absolute timeout seconds")
    p.add_argument("--adapter", default=None, help="HCI adapter (e.g. hci0)")
    p.add_argument("--csv", default=None, help="Write samples to CSV")
    p.add_argument("--ndjson", default=None, help="Write samples as NDJSON")
    p.add_argument("--debug", action="store_true", help="Verbose logging")
    return p


def run():
    args = build_arg_parser().parse_args()
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    overrides = {k: v for k, v in (("silence_timeout", args.silence),
                                   ("absolute_timeout", args.timeout),
                                   ("adapter", args.adapter)) if v is not None}
    try:
        cfg = load_config(args.config)
        if overrides:
            cfg = replace(cfg, **overrides)
    except ValueError as e:
        print(f"❌ Invalid settings: {e}", file=sys.stderr)
        sys.exit(2)

    if args.save_config:
        save_config(args.save_config, cfg)
        print(f"✅ Saved config to {args.save_config}")
        return
    if not args.mac:
        build_arg_parser().error("--mac is required")

    try:
        sys.exit(asyncio.run(read_history(args, cfg)))
    except (RuuviError, BleakError) as e:
        print(f"❌ {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
