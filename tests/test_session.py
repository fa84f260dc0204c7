"""Tests for the chunked file transfer session.

Covers: construction, first request, single- and multi-chunk success,
first-chunk header retries, restart escalation, terminal failure, digest
mismatch, abort, zero-size files and callback ordering.
"""

from __future__ import annotations

import asyncio
import hashlib

import pytest

from wolk.device.errors import (
    ErrorKind,
    InvalidPacketError,
    SessionNotRunningError,
    SizeMismatchError,
)
from wolk.device.planner import FileInit
from wolk.device.session import (
    FileTransferSession,
    SessionState,
    TransferStatus,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class Recorder:
    """Callback that records every call."""

    def __init__(self) -> None:
        self.requests: list[tuple[str, int, int]] = []
        self.finished: list[tuple[TransferStatus, ErrorKind | None]] = []
        self.calls: list[str] = []

    def send_request(self, file_name: str, chunk_index: int, chunk_size: int) -> None:
        self.requests.append((file_name, chunk_index, chunk_size))
        self.calls.append("request")

    def on_finish(self, status: TransferStatus, error: ErrorKind | None) -> None:
        self.finished.append((status, error))
        self.calls.append("finish")


def _make_data(size: int) -> bytes:
    """Return deterministic file bytes of given size."""
    return bytes(range(256)) * (size // 256) + bytes(range(size % 256))


def _packet(data: bytes, previous: bytes = bytes(32)) -> bytes:
    return previous + data + hashlib.sha256(data).digest()


def _init(data: bytes, name: str = "fw.bin") -> FileInit:
    return FileInit(name, len(data), hashlib.sha256(data).digest())


async def _new_session(data: bytes, **kwargs) -> tuple[FileTransferSession, Recorder]:
    rec = Recorder()
    session = FileTransferSession(_init(data), rec, **kwargs)
    await session.join()
    return session, rec


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

class TestConstruction:
    def test_none_init_rejected(self):
        with pytest.raises(ValueError):
            FileTransferSession(None, Recorder())

    def test_none_callback_rejected(self):
        with pytest.raises(ValueError):
            FileTransferSession(_init(b"abc"), None)

    @pytest.mark.asyncio
    async def test_first_request_is_deferred(self):
        rec = Recorder()
        session = FileTransferSession(_init(_make_data(500_000)), rec)
        assert rec.requests == []
        await session.join()
        assert rec.requests == [("fw.bin", 0, 500_064)]
        assert session.state == SessionState.IN_PROGRESS
        assert session.status == TransferStatus.FILE_TRANSFER

    @pytest.mark.asyncio
    async def test_initial_counters(self):
        session, _ = await _new_session(_make_data(1000))
        assert session.current_chunk_index == 0
        assert session.chunk_retry_count == 0
        assert session.restart_count == 0
        assert session.last_error is None
        assert session.data == b""


# ---------------------------------------------------------------------------
# Successful transfers
# ---------------------------------------------------------------------------

class TestSuccess:
    @pytest.mark.asyncio
    async def test_single_chunk(self):
        data = _make_data(500_000)
        session, rec = await _new_session(data)

        assert await session.receive_bytes(_packet(data)) is True
        await session.join()

        assert session.state == SessionState.SUCCEEDED
        assert session.last_error is None
        assert session.data == data
        assert rec.finished == [(TransferStatus.FILE_READY, None)]
        assert rec.requests == [("fw.bin", 0, 500_064)]

    @pytest.mark.asyncio
    async def test_multi_chunk(self):
        data = _make_data(100)
        session, rec = await _new_session(data, chunk_size=96)  # 32 data bytes per chunk

        offsets = [(0, 32), (32, 64), (64, 96), (96, 100)]
        for i, (start, end) in enumerate(offsets):
            previous = bytes(32) if i == 0 else b"\x01" * 32
            assert await session.receive_bytes(_packet(data[start:end], previous)) is True
        await session.join()

        assert rec.requests == [
            ("fw.bin", 0, 96), ("fw.bin", 1, 96), ("fw.bin", 2, 96), ("fw.bin", 3, 68),
        ]
        assert rec.finished == [(TransferStatus.FILE_READY, None)]
        assert session.data == data
        assert session.progress == 1.0

    @pytest.mark.asyncio
    async def test_progress_partial(self):
        data = _make_data(64)
        session, _ = await _new_session(data, chunk_size=96)
        await session.receive_bytes(_packet(data[:32]))
        assert session.progress == 0.5
        assert session.current_chunk_index == 1

    @pytest.mark.asyncio
    async def test_async_callback(self):
        data = _make_data(200)
        events: list[str] = []

        class AsyncCallback:
            async def send_request(self, file_name, chunk_index, chunk_size):
                await asyncio.sleep(0)
                events.append(f"request:{chunk_index}")

            async def on_finish(self, status, error):
                events.append(f"finish:{status.value}")

        session = FileTransferSession(_init(data), AsyncCallback())
        await session.join()
        await session.receive_bytes(_packet(data))
        await session.join()
        assert events == ["request:0", "finish:FILE_READY"]


# ---------------------------------------------------------------------------
# Validation errors
# ---------------------------------------------------------------------------

class TestValidation:
    @pytest.mark.asyncio
    async def test_short_packet(self):
        session, _ = await _new_session(_make_data(10))
        with pytest.raises(InvalidPacketError):
            await session.receive_bytes(bytes(64))
        assert session.state == SessionState.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_size_mismatch(self):
        data = _make_data(10)
        session, rec = await _new_session(data)
        with pytest.raises(SizeMismatchError) as exc_info:
            await session.receive_bytes(_packet(data + b"x"))
        assert exc_info.value.kind == ErrorKind.SIZE_MISMATCH
        assert session.chunk_retry_count == 0
        assert session.data == b""
        await session.join()
        assert len(rec.requests) == 1


# ---------------------------------------------------------------------------
# Retry / restart
# ---------------------------------------------------------------------------

class TestRetryAndRestart:
    @pytest.mark.asyncio
    async def test_nonzero_previous_hash_retries(self):
        data = _make_data(500_000)
        session, rec = await _new_session(data)

        assert await session.receive_bytes(_packet(data, previous=b"\x01" * 32)) is False
        await session.join()

        assert session.state == SessionState.IN_PROGRESS
        assert session.chunk_retry_count == 1
        assert session.data == b""
        assert rec.requests == [("fw.bin", 0, 500_064)] * 2
        assert rec.finished == []

    @pytest.mark.asyncio
    async def test_third_rejection_restarts(self):
        data = _make_data(500_000)
        session, rec = await _new_session(data)
        bad = _packet(data, previous=b"\xff" * 32)

        await session.receive_bytes(bad)
        await session.receive_bytes(bad)
        assert session.chunk_retry_count == 2
        assert session.restart_count == 0

        await session.receive_bytes(bad)
        await session.join()
        assert session.restart_count == 1
        assert session.chunk_retry_count == 0
        assert rec.requests[-1] == ("fw.bin", 0, 500_064)
        assert len(rec.requests) == 4
        assert session.state == SessionState.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_restarts_exhausted_fails(self):
        data = _make_data(1000)
        session, rec = await _new_session(data)
        bad = _packet(data, previous=b"\x01" * 32)

        for _ in range(9):
            await session.receive_bytes(bad)
        await session.join()

        assert session.state == SessionState.FAILED
        assert session.status == TransferStatus.ERROR
        assert session.last_error == ErrorKind.RETRY_COUNT_EXCEEDED
        assert rec.finished == [(TransferStatus.ERROR, ErrorKind.RETRY_COUNT_EXCEEDED)]
        # 1 initial + 8 re-requests, none after the failure
        assert len(rec.requests) == 9
        assert rec.calls[-1] == "finish"

        with pytest.raises(SessionNotRunningError):
            await session.receive_bytes(bad)

    @pytest.mark.asyncio
    async def test_good_chunk_after_retry(self):
        data = _make_data(1000)
        session, rec = await _new_session(data)

        await session.receive_bytes(_packet(data, previous=b"\x01" * 32))
        assert await session.receive_bytes(_packet(data)) is True
        await session.join()
        assert session.state == SessionState.SUCCEEDED
        assert rec.finished == [(TransferStatus.FILE_READY, None)]

    @pytest.mark.asyncio
    async def test_digest_mismatch_restarts_from_first_chunk(self):
        data = _make_data(64)
        init = FileInit("fw.bin", 64, hashlib.sha256(b"something else").digest())
        rec = Recorder()
        session = FileTransferSession(init, rec, chunk_size=96)

        await session.receive_bytes(_packet(data[:32]))
        assert await session.receive_bytes(_packet(data[32:], b"\x01" * 32)) is False
        await session.join()

        assert session.restart_count == 1
        assert session.current_chunk_index == 0
        assert session.data == b""
        assert rec.requests == [("fw.bin", 0, 96), ("fw.bin", 1, 96), ("fw.bin", 0, 96)]

    @pytest.mark.asyncio
    async def test_repeated_digest_mismatch_fails(self):
        data = _make_data(500)
        init = FileInit("fw.bin", 500, bytes(32))
        rec = Recorder()
        session = FileTransferSession(init, rec)

        for _ in range(3):
            await session.receive_bytes(_packet(data))
        await session.join()

        assert session.state == SessionState.FAILED
        assert rec.finished == [(TransferStatus.ERROR, ErrorKind.RETRY_COUNT_EXCEEDED)]

    @pytest.mark.asyncio
    async def test_explicit_retry_chunk(self):
        data = _make_data(100)
        session, rec = await _new_session(data, chunk_size=96)
        await session.receive_bytes(_packet(data[:32]))

        assert await session.retry_chunk() is True
        await session.join()
        assert session.chunk_retry_count == 1
        assert rec.requests[-1] == ("fw.bin", 1, 96)

    @pytest.mark.asyncio
    async def test_retry_chunk_after_finish(self):
        data = _make_data(10)
        session, _ = await _new_session(data)
        await session.receive_bytes(_packet(data))
        assert await session.retry_chunk() is False


# ---------------------------------------------------------------------------
# Abort
# ---------------------------------------------------------------------------

class TestAbort:
    @pytest.mark.asyncio
    async def test_abort_in_progress(self):
        data = _make_data(100)
        session, rec = await _new_session(data, chunk_size=96)
        await session.receive_bytes(_packet(data[:32]))

        assert await session.abort() is True
        await session.join()

        assert session.state == SessionState.ABORTED
        assert session.last_error is None
        assert session.current_chunk_index == 0
        assert session.data == b""
        assert rec.finished == [(TransferStatus.ABORTED, None)]

    @pytest.mark.asyncio
    async def test_second_abort_is_noop(self):
        session, rec = await _new_session(_make_data(100))
        assert await session.abort() is True
        assert await session.abort() is False
        await session.join()
        assert rec.finished == [(TransferStatus.ABORTED, None)]

    @pytest.mark.asyncio
    async def test_abort_after_success(self):
        data = _make_data(10)
        session, rec = await _new_session(data)
        await session.receive_bytes(_packet(data))
        assert await session.abort() is False
        await session.join()
        assert rec.finished == [(TransferStatus.FILE_READY, None)]

    @pytest.mark.asyncio
    async def test_receive_after_abort(self):
        data = _make_data(10)
        session, _ = await _new_session(data)
        await session.abort()
        with pytest.raises(SessionNotRunningError):
            await session.receive_bytes(_packet(data))


# ---------------------------------------------------------------------------
# Zero-size files
# ---------------------------------------------------------------------------

class TestEmptyFile:
    @pytest.mark.asyncio
    async def test_empty_file_succeeds(self):
        session, rec = await _new_session(b"")
        assert rec.requests == []
        assert rec.finished == [(TransferStatus.FILE_READY, None)]
        assert session.state == SessionState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_empty_file_wrong_hash(self):
        rec = Recorder()
        session = FileTransferSession(FileInit("empty.bin", 0, bytes(32)), rec)
        await session.join()
        assert rec.requests == []
        assert rec.finished == [(TransferStatus.ERROR, ErrorKind.FILE_HASH_MISMATCH)]
        assert session.state == SessionState.FAILED


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

class TestStatus:
    @pytest.mark.asyncio
    async def test_to_status(self):
        session, _ = await _new_session(_make_data(100), chunk_size=96)
        status = session.to_status()
        assert status["file_name"] == "fw.bin"
        assert status["state"] == "in_progress"
        assert status["status"] == "FILE_TRANSFER"
        assert status["total_chunks"] == 4
        assert status["error"] is None
