"""Exceptions raised by the Ruuvi decoders and history reader."""

from typing import Optional


class RuuviError(Exception):
    """Base exception for everything in this package."""

    pass


class DecodeError(RuuviError):
    """Payload could not be decoded."""

    pass


class UnsupportedFormatError(DecodeError):
    """Advertisement carries a data format tag we do not understand."""

    def __init__(self, data_format: int):
        super().__init__(f"Unsupported data format: {data_format} (supported: 5, 3)")
        self.data_format = data_format


class PayloadLengthError(DecodeError):
    """Payload shorter than its format requires."""

    def __init__(self, data_format: Optional[int], length: int, expected: int):
        if data_format is None:
            msg = f"Empty manufacturer payload: {length} bytes, expected at least {expected}"
        else:
            msg = f"Invalid data length for format {data_format}: {length} bytes, expected at least {expected}"
        super().__init__(msg)
        self.data_format = data_format
        self.length = length
        self.expected = expected


class ProtocolError(RuuviError):
    """Device reported an error while serving a log read."""

    def __init__(self, message: str, frame: bytes = b""):
        super().__init__(message)
        self.frame = bytes(frame)


class TransportError(RuuviError):
    """Write or notification failure on the BLE link."""

    pass


class ConnectionFailedError(TransportError):
    """Could not establish a GATT connection."""

    pass
