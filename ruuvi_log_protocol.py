from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Optional
import struct

# Endpoints
ENDPOINT_TEMPERATURE = 0x30
ENDPOINT_HUMIDITY = 0x31
ENDPOINT_PRESSURE = 0x32
ENDPOINT_ENVIRONMENTAL = 0x3A  # all environmental channels

# Message types
TYPE_LOG_WRITE = 0x10
TYPE_LOG_READ = 0x11
TYPE_ERROR = 0xF0

FRAME_SIZE = 11
_FRAME = struct.Struct(">BBBIi")
_COMMAND = struct.Struct(">BBBII")


class Channel(str, Enum):
    TEMPERATURE = "temperature"
    HUMIDITY = "humidity"
    PRESSURE = "pressure"


# endpoint -> (channel, physical value per LSB)
_CHANNELS = {
    ENDPOINT_TEMPERATURE: (Channel.TEMPERATURE, 0.01),  # C
    ENDPOINT_HUMIDITY: (Channel.HUMIDITY, 0.01),        # %
    ENDPOINT_PRESSURE: (Channel.PRESSURE, 1.0),         # Pa
}


class FrameKind(str, Enum):
    RECORD = "record"
    END = "end"
    ERROR = "error"


@dataclass(frozen=True)
class LogFrame:
    kind: FrameKind
    raw: bytes
    source: int = 0
    timestamp: int = 0
    channel: Optional[Channel] = None
    value: Optional[float] = None  # C, % or Pa depending on channel


def encode_log_read(now: int, start: int,
                    destination: int = ENDPOINT_ENVIRONMENTAL,
                    source: int = ENDPOINT_ENVIRONMENTAL) -> bytes:
    """11-byte log read request: [dst, src, 0x11, now u32 BE, start u32 BE]."""
    return _COMMAND.pack(destination, source, TYPE_LOG_READ, now & 0xFFFFFFFF, start & 0xFFFFFFFF)


def parse_log_frame(frame: bytes) -> Optional[LogFrame]:
    """Classify one notification frame.

    Returns None for anything that is not a well-formed 11-byte frame of a
    known type and endpoint; garbled frames are normal on a radio link.
    """
    frame = bytes(frame)
    if len(frame) != FRAME_SIZE:
        return None

    if frame == b"\xff" * FRAME_SIZE:
        return LogFrame(FrameKind.END, frame)

    _dst, source, msg_type, timestamp, value = _FRAME.unpack(frame)

    if msg_type == TYPE_ERROR:
        return LogFrame(FrameKind.ERROR, frame, source=source)
    if msg_type != TYPE_LOG_WRITE:
        return None

    # header followed by an all-0xFF body also marks the end of the log
    if frame[3:] == b"\xff" * (FRAME_SIZE - 3):
        return LogFrame(FrameKind.END, frame, source=source)

    entry = _CHANNELS.get(source)
    if entry is None:
        return None
    channel, scale = entry
    return LogFrame(FrameKind.RECORD, frame, source=source, timestamp=timestamp,
                    channel=channel, value=value * scale)
