"""Drives one history retrieval over an open BLE link.

The session writes the request command(s), collects notification frames and
decides when the device is done:

  - the legacy log protocol sends an explicit end-of-data frame;
  - otherwise a silence timer fires after `silence_timeout` seconds without
    frames;
  - an absolute timer bounds the whole retrieval, command writes included.

End marker and silence finish in COMPLETED, the absolute timer in TIMED_OUT.
Both return whatever was assembled. Device error frames and link failures
finish in FAILED and raise. Cancelling the awaiting task finishes in
CANCELLED and never returns a result.

The transport is any object providing:

    async send_bytes(payload: bytes) -> bool
    async subscribe(on_frame, on_error) -> None
    async unsubscribe() -> None
    is_connected: bool   (optional)
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional
import asyncio
import logging
import time

from ruuvi_config import HistoryConfig
from ruuvi_errors import ProtocolError, TransportError
from ruuvi_history_parser import is_valid_history_data, parse_history_data, RECORD_SIZE
from ruuvi_log_protocol import Channel, FrameKind, encode_log_read, parse_log_frame
from ruuvi_models import HistorySample, MeasurementCollection

logger = logging.getLogger(__name__)

MAX_COMMAND_BYTES = 20  # practical link MTU

# "everything": old enough to cover any log, but never epoch zero
ALL_HISTORY_START = 1577836800  # 2020-01-01T00:00:00Z


class ProtocolVariant(str, Enum):
    LEGACY = "legacy"  # endpoint-based 11-byte log frames
    CUT = "cut"        # raw 10-byte records behind a trigger byte


class SessionState(str, Enum):
    IDLE = "idle"
    COMMAND_SENT = "command_sent"
    COLLECTING = "collecting"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class Completion(str, Enum):
    END_OF_DATA = "end_of_data"  # device said done
    SILENCE = "silence"          # no frames for silence_timeout
    TIMEOUT = "timeout"          # absolute timer, data may be partial


@dataclass(frozen=True)
class HistoryResult:
    collection: MeasurementCollection
    state: SessionState
    completion: Completion

    @property
    def device_confirmed(self) -> bool:
        return self.completion is Completion.END_OF_DATA


class _LegacyLogStrategy:
    """Groups per-channel frames by timestamp until the end marker."""

    cascade = False

    def __init__(self, device_id: str):
        self.device_id = device_id
        self._groups: Dict[int, Dict[Channel, float]] = {}

    def commands(self, now: int, start: int) -> List[bytes]:
        return [encode_log_read(now, start)]

    def feed(self, frame: bytes) -> bool:
        parsed = parse_log_frame(frame)
        if parsed is None:
            logger.debug("%s: ignoring frame %s", self.device_id, bytes(frame).hex())
            return False
        if parsed.kind is FrameKind.ERROR:
            raise ProtocolError(f"{self.device_id}: device reported error during log read", parsed.raw)
        if parsed.kind is FrameKind.END:
            logger.debug("%s: end of log data", self.device_id)
            return True
        # later frames for the same (timestamp, channel) overwrite
        self._groups.setdefault(parsed.timestamp, {})[parsed.channel] = parsed.value
        return False

    def finalize(self) -> MeasurementCollection:
        samples = []
        for ts, values in self._groups.items():
            pressure_pa = values.get(Channel.PRESSURE)
            samples.append(HistorySample(
                timestamp=ts,
                temperature_c=values.get(Channel.TEMPERATURE),
                humidity_pct=values.get(Channel.HUMIDITY),
                pressure_hpa=None if pressure_pa is None else pressure_pa / 100.0,
            ))
        return MeasurementCollection.build(self.device_id, samples)


class _CutRecordStrategy:
    """Accumulates raw bytes; parsed once retrieval ends."""

    cascade = True

    def __init__(self, device_id: str, triggers: List[int]):
        self.device_id = device_id
        self._triggers = list(triggers)
        self._buf = bytearray()
        self._plausible = False

    def commands(self, now: int, start: int) -> List[bytes]:
        return [bytes([t]) for t in self._triggers]

    def feed(self, frame: bytes) -> bool:
        self._buf.extend(frame)
        if not self._plausible and len(self._buf) >= RECORD_SIZE and len(self._buf) % RECORD_SIZE == 0:
            self._plausible = is_valid_history_data(bytes(self._buf))
            if self._plausible:
                logger.debug("%s: received plausible history data (%d bytes)", self.device_id, len(self._buf))
        return False

    def finalize(self) -> MeasurementCollection:
        if self._buf and not self._plausible:
            logger.warning("%s: %d bytes received but first record timestamp looks implausible",
                           self.device_id, len(self._buf))
        result = parse_history_data(bytes(self._buf), self.device_id)
        return MeasurementCollection.build(self.device_id, result.samples, result.warnings)


class _StreamError:
    def __init__(self, exc: BaseException):
        self.exc = exc


class HistorySession:
    """One-shot history retrieval; create a new session per retrieval."""

    def __init__(self, transport, device_id: str,
                 variant: ProtocolVariant = ProtocolVariant.LEGACY,
                 config: Optional[HistoryConfig] = None,
                 clock=time.time):
        self._transport = transport
        self.device_id = device_id
        self.variant = ProtocolVariant(variant)
        self.config = config or HistoryConfig()
        self._clock = clock
        self.state = SessionState.IDLE

    def _set_state(self, state: SessionState):
        logger.debug("%s: %s -> %s", self.device_id, self.state.value, state.value)
        self.state = state

    def resolve_start(self, now: int, start_time: Optional[int], retrieve_all: bool) -> int:
        if retrieve_all:
            return ALL_HISTORY_START
        if start_time is None:
            return int(now - self.config.lookback_days * 86400)
        if start_time <= 0:
            logger.warning("%s: start time %s rejected by some firmware, using %d",
                           self.device_id, start_time, ALL_HISTORY_START)
            return ALL_HISTORY_START
        return int(start_time)

    def _make_strategy(self):
        if self.variant is ProtocolVariant.LEGACY:
            return _LegacyLogStrategy(self.device_id)
        return _CutRecordStrategy(self.device_id, self.config.trigger_commands)

    async def retrieve(self, start_time: Optional[int] = None, *, retrieve_all: bool = False) -> HistoryResult:
        """Run the retrieval to completion.

        start_time is epoch seconds; None means `lookback_days` ago.
        Raises ProtocolError / TransportError on failure.
        """
        if self.state is not SessionState.IDLE:
            raise RuntimeError(f"session already used (state={self.state.value})")
        if not getattr(self._transport, "is_connected", True):
            self._set_state(SessionState.FAILED)
            raise TransportError(f"{self.device_id}: not connected")

        now = int(self._clock())
        start = self.resolve_start(now, start_time, retrieve_all)
        strategy = self._make_strategy()
        commands = strategy.commands(now, start)
        queue: asyncio.Queue = asyncio.Queue()

        def on_frame(data):
            queue.put_nowait(bytes(data))

        def on_error(exc):
            queue.put_nowait(_StreamError(exc))

        self._set_state(SessionState.COMMAND_SENT)
        subscribed = False
        try:
            await self._transport.subscribe(on_frame, on_error)
            subscribed = True
            return await self._collect(strategy, commands, queue)
        except asyncio.CancelledError:
            self._set_state(SessionState.CANCELLED)
            raise
        except (ProtocolError, TransportError):
            self._set_state(SessionState.FAILED)
            raise
        except Exception as e:
            logger.error("%s: retrieval failed: %r", self.device_id, e)
            self._set_state(SessionState.FAILED)
            raise
        finally:
            if subscribed:
                try:
                    await self._transport.unsubscribe()
                except Exception as e:
                    logger.warning("%s: unsubscribe failed: %s", self.device_id, e)

    async def _send(self, payload: bytes, deadline: float) -> bool:
        """Write one command; False if the write outlived `deadline` (loop time)."""
        if len(payload) > MAX_COMMAND_BYTES:
            raise ValueError(f"command too long ({len(payload)} > {MAX_COMMAND_BYTES} bytes)")
        logger.debug("%s: sending %s", self.device_id, payload.hex())
        remaining = max(0.0, deadline - asyncio.get_running_loop().time())
        try:
            ok = await asyncio.wait_for(self._transport.send_bytes(payload), timeout=remaining)
        except asyncio.TimeoutError:
            logger.warning("%s: write of %s still pending at absolute timeout", self.device_id, payload.hex())
            return False
        if not ok:
            raise TransportError(f"{self.device_id}: failed to write command {payload.hex()}")
        return True

    async def _collect(self, strategy, commands: List[bytes], queue: asyncio.Queue) -> HistoryResult:
        loop = asyncio.get_running_loop()
        cfg = self.config
        hard_deadline = loop.time() + cfg.absolute_timeout
        pending = list(commands)

        if not await self._send(pending.pop(0), hard_deadline):
            return self._finish(strategy, SessionState.TIMED_OUT, Completion.TIMEOUT)
        self._set_state(SessionState.COLLECTING)
        last_activity = loop.time()
        # only cascading variants try the remaining commands
        next_trigger = last_activity + cfg.trigger_delay if strategy.cascade and pending else None

        while True:
            now = loop.time()
            if now >= hard_deadline:
                logger.info("%s: absolute timeout after %.1fs", self.device_id, cfg.absolute_timeout)
                return self._finish(strategy, SessionState.TIMED_OUT, Completion.TIMEOUT)
            silence_deadline = last_activity + cfg.silence_timeout
            if now >= silence_deadline:
                logger.info("%s: no data for %.1fs, assuming complete", self.device_id, cfg.silence_timeout)
                return self._finish(strategy, SessionState.COMPLETED, Completion.SILENCE)
            if next_trigger is not None and now >= next_trigger:
                logger.info("%s: no response yet, trying next command", self.device_id)
                if not await self._send(pending.pop(0), hard_deadline):
                    return self._finish(strategy, SessionState.TIMED_OUT, Completion.TIMEOUT)
                last_activity = loop.time()
                next_trigger = last_activity + cfg.trigger_delay if pending else None
                continue

            deadline = min(hard_deadline, silence_deadline)
            if next_trigger is not None:
                deadline = min(deadline, next_trigger)
            try:
                item = await asyncio.wait_for(queue.get(), timeout=max(0.0, deadline - now))
            except asyncio.TimeoutError:
                continue

            if isinstance(item, _StreamError):
                raise TransportError(f"{self.device_id}: notification stream error: {item.exc}") from item.exc
            if not item:
                continue
            last_activity = loop.time()
            next_trigger = None
            if strategy.feed(item):
                return self._finish(strategy, SessionState.COMPLETED, Completion.END_OF_DATA)

    def _finish(self, strategy, state: SessionState, completion: Completion) -> HistoryResult:
        collection = strategy.finalize()
        self._set_state(state)
        logger.info("%s: retrieved %d samples (%s)", self.device_id, collection.count, completion.value)
        return HistoryResult(collection=collection, state=state, completion=completion)
