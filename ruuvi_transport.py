"""bleak-backed link to a RuuviTag over the Nordic UART Service (NUS)."""

from __future__ import annotations
from typing import Callable, Dict, Optional
import asyncio
import logging

from bleak import BleakClient
from bleak.exc import BleakError

from ruuvi_errors import ConnectionFailedError, TransportError
from ruuvi_models import DeviceInformation

logger = logging.getLogger(__name__)

NUS_SERVICE_UUID = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
NUS_RX_CHAR_UUID = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"  # we write here
NUS_TX_CHAR_UUID = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"  # device notifies here

DIS_SERVICE_UUID = "0000180a-0000-1000-8000-00805f9b34fb"
DIS_CHARACTERISTICS = {
    "2a25": "serial_number",
    "2a26": "firmware_revision",
    "2a27": "hardware_revision",
    "2a29": "manufacturer_name",
    "2a24": "model_number",
}

MAX_WRITE_BYTES = 20


class NusTransport:
    """send_bytes / subscribe / unsubscribe on top of a connected BleakClient."""

    def __init__(self, client: Optional[BleakClient] = None, max_write: int = MAX_WRITE_BYTES):
        self.client = client
        self.max_write = max_write
        self._on_error: Optional[Callable[[BaseException], None]] = None
        self._subscribed = False

    @property
    def is_connected(self) -> bool:
        return bool(self.client and self.client.is_connected)

    @classmethod
    async def connect(cls, address: str, *, timeout: float = 10.0, retries: int = 3,
                      adapter: Optional[str] = None) -> "NusTransport":
        """Connect, trying both address types on each attempt."""
        transport = cls()
        last_exc = None
        extra = {"adapter": adapter} if adapter else {}
        for attempt in range(1, retries + 1):
            for addr_type in ("public", "random"):
                logger.info("connecting to %s (type=%s, attempt %d/%d)", address, addr_type, attempt, retries)
                client = BleakClient(address, timeout=timeout, address_type=addr_type,
                                     disconnected_callback=transport._handle_disconnect, **extra)
                try:
                    await client.connect()
                except (BleakError, asyncio.TimeoutError, OSError) as e:
                    last_exc = e
                    logger.warning("attempt %d type=%s failed: %s", attempt, addr_type, e)
                    await asyncio.sleep(1.0)
                    continue
                transport.client = client
                logger.info("connected to %s", address)
                return transport
        raise ConnectionFailedError(f"failed to connect to {address} after {retries} retries: {last_exc}")

    async def disconnect(self):
        if self.client is None:
            return
        try:
            await self.client.disconnect()
        except BleakError as e:
            logger.warning("disconnect error: %s", e)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.disconnect()

    def _handle_disconnect(self, _client):
        logger.info("device disconnected")
        if self._on_error is not None:
            self._on_error(TransportError("device disconnected"))

    async def send_bytes(self, payload: bytes) -> bool:
        if not self.is_connected:
            raise TransportError("not connected")
        if len(payload) > self.max_write:
            raise TransportError(f"command too long ({len(payload)} > {self.max_write} bytes)")
        try:
            await self.client.write_gatt_char(NUS_RX_CHAR_UUID, bytes(payload), response=True)
        except BleakError as e:
            raise TransportError(f"write failed: {e}") from e
        return True

    async def subscribe(self, on_frame: Callable[[bytes], None], on_error: Callable[[BaseException], None]):
        if not self.is_connected:
            raise TransportError("not connected")

        def cb(_sender, data: bytearray):
            on_frame(bytes(data))

        self._on_error = on_error
        try:
            await self.client.start_notify(NUS_TX_CHAR_UUID, cb)
        except BleakError as e:
            self._on_error = None
            raise TransportError(f"failed to enable notifications: {e}") from e
        self._subscribed = True

    async def unsubscribe(self):
        self._on_error = None
        if not self._subscribed:
            return
        self._subscribed = False
        if self.is_connected:
            await self.client.stop_notify(NUS_TX_CHAR_UUID)


async def read_device_information(client: BleakClient) -> DeviceInformation:
    """Read the Device Information Service; unreadable fields are skipped.

    The identifier is the serial number when present, otherwise the address.
    """
    values: Dict[str, str] = {}
    svc = client.services.get_service(DIS_SERVICE_UUID)
    if svc is None:
        logger.info("Device Information Service (180A) not found")
    else:
        for ch in svc.characteristics:
            short = str(ch.uuid).lower()[4:8]
            name = DIS_CHARACTERISTICS.get(short)
            if name is None or "read" not in ch.properties:
                continue
            try:
                data = await client.read_gatt_char(ch)
            except BleakError as e:
                logger.warning("failed to read %s (%s): %s", name, short, e)
                continue
            values[name] = bytes(data).decode("utf-8", errors="replace").strip("\x00 ").strip()
            logger.debug("%s: %r", name, values[name])

    serial = values.pop("serial_number", None)
    return DeviceInformation(
        identifier=serial or client.address,
        mac_address=client.address,
        manufacturer=values.pop("manufacturer_name", None),
        model=values.pop("model_number", None),
        firmware_version=values.pop("firmware_revision", None),
        hardware_version=values.pop("hardware_revision", None),
    )
