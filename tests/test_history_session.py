"""Tests for the history retrieval state machine."""

import asyncio

import pytest

from ruuvi_config import HistoryConfig
from ruuvi_errors import ProtocolError, TransportError
from ruuvi_history_session import (
    ALL_HISTORY_START,
    Completion,
    HistorySession,
    ProtocolVariant,
    SessionState,
)
from ruuvi_log_protocol import encode_log_read
from tests.conftest import NOW, FakeTransport, cut_record, log_frame

TS = 1567047917
END = b"\xff" * 11


def legacy_session(transport, fast_config, clock):
    return HistorySession(transport, "dev-1", variant=ProtocolVariant.LEGACY, config=fast_config, clock=clock)


def cut_session(transport, fast_config, clock):
    return HistorySession(transport, "dev-1", variant=ProtocolVariant.CUT, config=fast_config, clock=clock)


@pytest.mark.asyncio
async def test_legacy_merges_channels_by_timestamp(fast_config, clock):
    """Three channel frames with one timestamp become one sample."""
    transport = FakeTransport(default=[
        log_frame(0x30, TS, 2430),
        log_frame(0x31, TS, 5349),
        log_frame(0x32, TS, 100044),
        END,
    ])
    session = legacy_session(transport, fast_config, clock)
    result = await session.retrieve()

    assert result.state is SessionState.COMPLETED
    assert result.completion is Completion.END_OF_DATA
    assert result.device_confirmed
    assert session.state is SessionState.COMPLETED
    (s,) = result.collection.samples
    assert s.timestamp == TS
    assert s.temperature_c == pytest.approx(24.30)
    assert s.humidity_pct == pytest.approx(53.49)
    assert s.pressure_hpa == pytest.approx(1000.44)
    assert transport.unsubscribed


@pytest.mark.asyncio
async def test_legacy_sends_lookback_command(fast_config, clock):
    """Without a start time the request covers the lookback window."""
    transport = FakeTransport(default=[END])
    await legacy_session(transport, fast_config, clock).retrieve()

    assert transport.sent == [encode_log_read(NOW, NOW - 7 * 86400)]


@pytest.mark.asyncio
async def test_legacy_retrieve_all(fast_config, clock):
    transport = FakeTransport(default=[END])
    await legacy_session(transport, fast_config, clock).retrieve(retrieve_all=True)

    assert transport.sent == [encode_log_read(NOW, ALL_HISTORY_START)]


@pytest.mark.asyncio
async def test_legacy_duplicate_channel_overwrites(fast_config, clock):
    transport = FakeTransport(default=[
        log_frame(0x30, TS, 2000),
        log_frame(0x30, TS, 2100),
        END,
    ])
    result = await legacy_session(transport, fast_config, clock).retrieve()

    (s,) = result.collection.samples
    assert s.temperature_c == pytest.approx(21.0)
    assert s.humidity_pct is None
    assert not s.is_complete()


@pytest.mark.asyncio
async def test_legacy_samples_sorted_by_timestamp(fast_config, clock):
    transport = FakeTransport(default=[
        log_frame(0x30, TS + 600, 2000),
        log_frame(0x30, TS, 2100),
        log_frame(0x30, TS + 300, 2200),
        END,
    ])
    result = await legacy_session(transport, fast_config, clock).retrieve()

    assert [s.timestamp for s in result.collection] == [TS, TS + 300, TS + 600]


@pytest.mark.asyncio
async def test_legacy_noise_is_skipped(fast_config, clock):
    transport = FakeTransport(default=[
        b"\x01\x02",
        log_frame(0x55, TS, 1),
        log_frame(0x30, TS, 2430),
        END,
    ])
    result = await legacy_session(transport, fast_config, clock).retrieve()
    assert result.collection.count == 1


@pytest.mark.asyncio
async def test_silence_without_end_marker(fast_config, clock):
    transport = FakeTransport(default=[log_frame(0x30, TS, 2430)])
    result = await legacy_session(transport, fast_config, clock).retrieve()

    assert result.state is SessionState.COMPLETED
    assert result.completion is Completion.SILENCE
    assert not result.device_confirmed
    assert result.collection.count == 1


@pytest.mark.asyncio
async def test_no_frames_completes_empty(fast_config, clock):
    """A device that never answers yields an empty, completed result."""
    transport = FakeTransport()
    result = await legacy_session(transport, fast_config, clock).retrieve()

    assert result.state is SessionState.COMPLETED
    assert result.completion is Completion.SILENCE
    assert result.collection.count == 0
    assert transport.unsubscribed


@pytest.mark.asyncio
async def test_absolute_timeout_with_chatty_device(clock):
    """Continuous traffic never ends by silence; the hard cap does."""
    cfg = HistoryConfig(silence_timeout=0.2, absolute_timeout=0.3, trigger_delay=0.05)
    transport = FakeTransport(default=[log_frame(0x30, TS, 2430)])
    session = legacy_session(transport, cfg, clock)

    async def chatter():
        while True:
            await asyncio.sleep(0.02)
            transport.push(b"\x00")

    noise = asyncio.ensure_future(chatter())
    try:
        result = await session.retrieve()
    finally:
        noise.cancel()

    assert result.state is SessionState.TIMED_OUT
    assert result.completion is Completion.TIMEOUT
    assert session.state is SessionState.TIMED_OUT
    assert result.collection.count == 1


@pytest.mark.asyncio
async def test_error_frame_fails(fast_config, clock):
    transport = FakeTransport(default=[log_frame(0x30, 0, 0, msg_type=0xF0)])
    session = legacy_session(transport, fast_config, clock)

    with pytest.raises(ProtocolError) as exc:
        await session.retrieve()
    assert exc.value.frame[2] == 0xF0
    assert session.state is SessionState.FAILED
    assert transport.unsubscribed


@pytest.mark.asyncio
async def test_write_failure_fails(fast_config, clock):
    transport = FakeTransport(write_ok=False)
    session = legacy_session(transport, fast_config, clock)

    with pytest.raises(TransportError):
        await session.retrieve()
    assert session.state is SessionState.FAILED
    assert transport.unsubscribed


@pytest.mark.asyncio
async def test_stream_error_fails(fast_config, clock):
    transport = FakeTransport()
    session = legacy_session(transport, fast_config, clock)
    asyncio.get_running_loop().call_later(0.02, transport.fail, TransportError("device disconnected"))

    with pytest.raises(TransportError):
        await session.retrieve()
    assert session.state is SessionState.FAILED


@pytest.mark.asyncio
async def test_not_connected(fast_config, clock):
    transport = FakeTransport(connected=False)
    session = legacy_session(transport, fast_config, clock)

    with pytest.raises(TransportError):
        await session.retrieve()
    assert session.state is SessionState.FAILED
    assert transport.sent == []
    assert not transport.subscribed


@pytest.mark.asyncio
async def test_cancel_stops_retrieval(clock):
    cfg = HistoryConfig(silence_timeout=5.0, absolute_timeout=10.0)
    transport = FakeTransport()
    session = legacy_session(transport, cfg, clock)

    task = asyncio.ensure_future(session.retrieve())
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert session.state is SessionState.CANCELLED
    assert transport.unsubscribed


@pytest.mark.asyncio
async def test_session_is_single_use(fast_config, clock):
    transport = FakeTransport(default=[END])
    session = legacy_session(transport, fast_config, clock)
    await session.retrieve()

    with pytest.raises(RuntimeError):
        await session.retrieve()


@pytest.mark.asyncio
async def test_cut_first_trigger_answers(fast_config, clock):
    """A response to the first trigger cancels the rest of the cascade."""
    blob = cut_record(1600000000, 4860, 21396, 5004) + cut_record(1600000060, 4870, 21400, 5005)
    transport = FakeTransport(responses={b"\x03": [blob[:20]]})
    result = await cut_session(transport, fast_config, clock).retrieve()

    assert transport.sent == [b"\x03"]
    assert result.state is SessionState.COMPLETED
    assert result.completion is Completion.SILENCE
    assert [s.timestamp for s in result.collection] == [1600000000, 1600000060]
    assert result.collection.first.temperature_c == pytest.approx(24.3)


@pytest.mark.asyncio
async def test_cut_cascade_stops_at_first_response(fast_config, clock):
    blob = cut_record(1600000000, 4860, 21396, 5004)
    transport = FakeTransport(responses={b"\x05": [blob]})
    result = await cut_session(transport, fast_config, clock).retrieve()

    assert transport.sent == [b"\x03", b"\x05"]
    assert result.collection.count == 1


@pytest.mark.asyncio
async def test_cut_cascade_exhausted(fast_config, clock):
    transport = FakeTransport()
    result = await cut_session(transport, fast_config, clock).retrieve()

    assert transport.sent == [b"\x03", b"\x05", b"\x80"]
    assert result.state is SessionState.COMPLETED
    assert result.collection.count == 0


@pytest.mark.asyncio
async def test_cut_partial_record_warns(fast_config, clock):
    blob = cut_record(1600000000, 4860, 21396, 5004) + b"\x01\x02\x03"
    transport = FakeTransport(responses={b"\x03": [blob]})
    result = await cut_session(transport, fast_config, clock).retrieve()

    assert result.collection.count == 1
    assert [w.kind for w in result.collection.warnings] == ["truncated"]


@pytest.mark.asyncio
async def test_cut_equal_timestamps_keep_arrival_order(fast_config, clock):
    blob = cut_record(1600000000, 1000, 8000, 5000) + cut_record(1600000000, 2000, 8000, 5000)
    transport = FakeTransport(responses={b"\x03": [blob]})
    result = await cut_session(transport, fast_config, clock).retrieve()

    temps = [s.temperature_c for s in result.collection]
    assert temps == pytest.approx([5.0, 10.0])


def test_resolve_start(fast_config, clock):
    session = HistorySession(FakeTransport(), "dev-1", config=fast_config, clock=clock)

    assert session.resolve_start(NOW, None, False) == NOW - 7 * 86400
    assert session.resolve_start(NOW, 1600000000, False) == 1600000000
    assert session.resolve_start(NOW, 1600000000, True) == ALL_HISTORY_START
    assert session.resolve_start(NOW, 0, False) == ALL_HISTORY_START


def test_resolve_start_uses_configured_lookback(clock):
    cfg = HistoryConfig(lookback_days=1)
    session = HistorySession(FakeTransport(), "dev-1", config=cfg, clock=clock)
    assert session.resolve_start(NOW, None, False) == NOW - 86400


class StalledWriteTransport(FakeTransport):
    """send_bytes never completes from the `stall_at`-th write on."""

    def __init__(self, stall_at, **kwargs):
        super().__init__(**kwargs)
        self.stall_at = stall_at

    async def send_bytes(self, payload):
        if len(self.sent) + 1 >= self.stall_at:
            self.sent.append(bytes(payload))
            await asyncio.sleep(3600)
        return await super().send_bytes(payload)


@pytest.mark.asyncio
async def test_stalled_cascade_write_hits_absolute_timeout(clock):
    """A trigger write that never completes still ends at the hard cap."""
    cfg = HistoryConfig(silence_timeout=0.2, absolute_timeout=0.3, trigger_delay=0.05)
    transport = StalledWriteTransport(stall_at=2)
    session = cut_session(transport, cfg, clock)

    result = await asyncio.wait_for(session.retrieve(), 2.0)

    assert transport.sent == [b"\x03", b"\x05"]
    assert result.state is SessionState.TIMED_OUT
    assert result.completion is Completion.TIMEOUT
    assert session.state is SessionState.TIMED_OUT
    assert transport.unsubscribed


@pytest.mark.asyncio
async def test_stalled_first_write_hits_absolute_timeout(clock):
    cfg = HistoryConfig(silence_timeout=0.2, absolute_timeout=0.3, trigger_delay=0.05)
    transport = StalledWriteTransport(stall_at=1)
    session = legacy_session(transport, cfg, clock)

    result = await asyncio.wait_for(session.retrieve(), 2.0)

    assert result.state is SessionState.TIMED_OUT
    assert result.collection.count == 0
    assert transport.unsubscribed


class RawErrorTransport(FakeTransport):
    """Transport that leaks an unwrapped OS error from its write."""

    async def send_bytes(self, payload):
        self.sent.append(bytes(payload))
        raise OSError("adapter gone")


@pytest.mark.asyncio
async def test_unexpected_error_marks_failed(fast_config, clock):
    transport = RawErrorTransport()
    session = legacy_session(transport, fast_config, clock)

    with pytest.raises(OSError):
        await session.retrieve()
    assert session.state is SessionState.FAILED
    assert transport.unsubscribed
