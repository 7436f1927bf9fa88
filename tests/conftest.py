"""Pytest configuration and fixtures for the Ruuvi decoder and history tests."""

from __future__ import annotations

import asyncio
import struct
from typing import Dict, List, Optional

import pytest

from ruuvi_config import HistoryConfig

NOW = 1567134317  # 2019-08-30T03:05:17Z, matches the vendor log examples


class FakeTransport:
    """Scripted stand-in for the BLE link.

    `responses` maps an exact command to the frames the "device" pushes back;
    `default` is used for any other command.
    """

    def __init__(self, responses: Optional[Dict[bytes, List[bytes]]] = None,
                 default: Optional[List[bytes]] = None, write_ok: bool = True,
                 connected: bool = True):
        self.responses = responses or {}
        self.default = default or []
        self.write_ok = write_ok
        self.is_connected = connected
        self.sent: List[bytes] = []
        self.subscribed = False
        self.unsubscribed = False
        self._on_frame = None
        self._on_error = None

    async def send_bytes(self, payload: bytes) -> bool:
        self.sent.append(bytes(payload))
        if not self.write_ok:
            return False
        frames = self.responses.get(bytes(payload), self.default)
        loop = asyncio.get_running_loop()
        for frame in frames:
            loop.call_soon(self._on_frame, frame)
        return True

    async def subscribe(self, on_frame, on_error):
        self._on_frame = on_frame
        self._on_error = on_error
        self.subscribed = True

    async def unsubscribe(self):
        self.unsubscribed = True

    def push(self, frame: bytes):
        self._on_frame(frame)

    def fail(self, exc: BaseException):
        self._on_error(exc)


def log_frame(source: int, timestamp: int, value: int, msg_type: int = 0x10) -> bytes:
    return struct.pack(">BBBIi", 0x3A, source, msg_type, timestamp, value)


def cut_record(epoch: int, temp_raw: int, hum_raw: int, pres_raw: int) -> bytes:
    return struct.pack("<IhHH", epoch, temp_raw, hum_raw, pres_raw)


@pytest.fixture
def fast_config() -> HistoryConfig:
    """Short timers so session tests run in well under a second."""
    return HistoryConfig(silence_timeout=0.2, absolute_timeout=2.0, trigger_delay=0.05)


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def format5_payload() -> bytes:
    """Vendor documentation test vector for data format 5."""
    return bytes.fromhex("0512FC5394C37C0004FFFC040CAC364200CDCBB8334C884F")


@pytest.fixture
def format3_payload() -> bytes:
    """Vendor documentation test vector for data format 3."""
    return bytes.fromhex("03291A1ECE1EFC18F94202CA0B53")
