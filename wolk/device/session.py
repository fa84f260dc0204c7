"""Chunked file transfer session.

A ``FileTransferSession`` pulls one file from the platform chunk by chunk.
It asks for each chunk through ``TransferCallback.send_request``, validates
the framed responses handed to ``receive_bytes``, reassembles the data and
checks the SHA-256 of the whole file before reporting the outcome through
``TransferCallback.on_finish``.

Failure handling
----------------
- A rejected chunk is requested again, up to ``max_retry`` times.
- When retries run out, or the finished file does not match its digest,
  the transfer restarts from chunk 0, up to ``max_restart`` times.
- When restarts run out the session fails with ``RETRY_COUNT_EXCEEDED``.

All callbacks of one session run on that session's ``SerialWorker``: never
inline in the caller, never concurrently, always in the order issued.
"""

from __future__ import annotations

import asyncio
import hashlib
from enum import Enum
from typing import Any, Protocol

from loguru import logger

from wolk.device.errors import (
    ErrorKind,
    InvalidPacketError,
    SessionNotRunningError,
    SizeMismatchError,
)
from wolk.device.planner import (
    CHUNK_SIZE,
    HASH_SIZE,
    MINIMUM_PACKET_SIZE,
    FileInit,
    TransferPlan,
)
from wolk.device.resilience import SerialWorker

MAX_RETRY = 3
MAX_RESTART = 3

_ZERO_HASH = bytes(HASH_SIZE)


class SessionState(str, Enum):
    """Lifecycle of a session. Every state but IN_PROGRESS is terminal."""

    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    ABORTED = "aborted"
    FAILED = "failed"


class TransferStatus(str, Enum):
    """Transfer status as reported to the platform."""

    FILE_TRANSFER = "FILE_TRANSFER"
    FILE_READY = "FILE_READY"
    ABORTED = "ABORTED"
    ERROR = "ERROR"


_STATUS_FOR_STATE = {
    SessionState.IN_PROGRESS: TransferStatus.FILE_TRANSFER,
    SessionState.SUCCEEDED: TransferStatus.FILE_READY,
    SessionState.ABORTED: TransferStatus.ABORTED,
    SessionState.FAILED: TransferStatus.ERROR,
}


class TransferCallback(Protocol):
    """What a session needs from its transport. Methods may be async."""

    def send_request(self, file_name: str, chunk_index: int, chunk_size: int) -> Any: ...

    def on_finish(self, status: TransferStatus, error: ErrorKind | None) -> Any: ...


class FileTransferSession:
    """Receives one file as a sequence of framed chunks.

    Parameters
    ----------
    init:
        Name, size and SHA-256 of the announced file.
    callback:
        Transport collaborator that sends chunk requests and receives the
        final outcome.
    worker:
        Sequential worker for callbacks; a private one is created if omitted.
    max_retry / max_restart:
        Bounds on chunk re-requests and whole-transfer restarts.
    chunk_size:
        Nominal wire size of a full chunk.
    """

    def __init__(
        self,
        init: FileInit | None,
        callback: TransferCallback | None,
        *,
        worker: SerialWorker | None = None,
        max_retry: int = MAX_RETRY,
        max_restart: int = MAX_RESTART,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        if init is None:
            raise ValueError("the file init descriptor must not be None")
        if callback is None:
            raise ValueError("the callback must not be None")

        self.init = init
        self.plan = TransferPlan.for_file(init, chunk_size)
        self._callback = callback
        self._worker = worker or SerialWorker(f"session-{init.name}")
        self._lock = asyncio.Lock()
        self.max_retry = max_retry
        self.max_restart = max_restart

        self.state = SessionState.IN_PROGRESS
        self.last_error: ErrorKind | None = None
        self.current_chunk_index = 0
        self.chunk_retry_count = 0
        self.restart_count = 0
        self._chunk_sizes = list(self.plan.chunk_sizes)
        self._accumulated = bytearray()

        logger.info(
            "[FileTransfer/Session] {!r}: {} bytes in {} chunk(s)",
            init.name, init.size, self.plan.chunk_count,
        )
        if not self._chunk_sizes:
            self._finish_empty_file()
        else:
            self._request_current_chunk()

    # -- accessors -----------------------------------------------------------

    @property
    def file_name(self) -> str:
        return self.plan.file_name

    @property
    def is_running(self) -> bool:
        return self.state == SessionState.IN_PROGRESS

    @property
    def status(self) -> TransferStatus:
        return _STATUS_FOR_STATE[self.state]

    @property
    def data(self) -> bytes:
        """Bytes received so far (the whole file once SUCCEEDED)."""
        return bytes(self._accumulated)

    @property
    def progress(self) -> float:
        """Fraction of the file received, 0.0–1.0."""
        if self.state == SessionState.SUCCEEDED or self.plan.total_size == 0:
            return 1.0
        return min(1.0, len(self._accumulated) / self.plan.total_size)

    def to_status(self) -> dict[str, Any]:
        """Return a summary dict for external consumers."""
        return {
            "file_name": self.file_name,
            "size": self.plan.total_size,
            "state": self.state.value,
            "status": self.status.value,
            "error": self.last_error.value if self.last_error else None,
            "chunk": self.current_chunk_index,
            "total_chunks": self.plan.chunk_count,
            "progress": round(self.progress, 3),
            "retries": self.chunk_retry_count,
            "restarts": self.restart_count,
        }

    # -- public API ----------------------------------------------------------

    async def receive_bytes(self, packet: bytes) -> bool:
        """Process the response to the latest chunk request.

        Returns ``True`` if the chunk was accepted (the next chunk has been
        requested or the file is complete), ``False`` if it was rejected and
        a retry or restart was issued instead.

        Raises ``SessionNotRunningError``, ``InvalidPacketError`` or
        ``SizeMismatchError`` without changing any state.
        """
        async with self._lock:
            if self.state != SessionState.IN_PROGRESS:
                raise SessionNotRunningError(
                    f"session for {self.file_name!r} is {self.state.value}"
                )
            if len(packet) < MINIMUM_PACKET_SIZE:
                raise InvalidPacketError(
                    f"packet of {len(packet)} bytes is shorter than {MINIMUM_PACKET_SIZE}"
                )
            expected = self._chunk_sizes[self.current_chunk_index]
            if len(packet) != expected:
                raise SizeMismatchError(
                    f"chunk {self.current_chunk_index}: expected {expected} bytes, got {len(packet)}"
                )

            logger.debug(
                "[FileTransfer/Session] {!r}: chunk {}/{} ({} bytes)",
                self.file_name, self.current_chunk_index + 1, len(self._chunk_sizes), len(packet),
            )
            previous_hash = packet[:HASH_SIZE]
            chunk_data = packet[HASH_SIZE:-HASH_SIZE]

            if self.current_chunk_index == 0 and previous_hash != _ZERO_HASH:
                logger.warning(
                    "[FileTransfer/Session] {!r}: first chunk has a non-zero previous hash",
                    self.file_name,
                )
                self._retry_chunk()
                return False

            self._accumulated += chunk_data

            last_index = len(self._chunk_sizes) - 1
            if self.current_chunk_index == last_index:
                if len(self._accumulated) != self.plan.total_size:
                    logger.warning(
                        "[FileTransfer/Session] {!r}: reassembled {} bytes, expected {}",
                        self.file_name, len(self._accumulated), self.plan.total_size,
                    )
                    self._restart()
                    return False
                digest = hashlib.sha256(self._accumulated).digest()
                if digest != self.plan.expected_digest:
                    logger.warning(
                        "[FileTransfer/Session] {!r}: file hash mismatch (got {}…)",
                        self.file_name, digest.hex()[:12],
                    )
                    self._restart()
                    return False
                self._finish(SessionState.SUCCEEDED, None)
                return True

            self.current_chunk_index += 1
            self._request_current_chunk()
            return True

    async def retry_chunk(self) -> bool:
        """Re-request the current chunk after the caller judged it invalid.

        Returns ``True`` if the same chunk was requested again, ``False`` if
        the retry budget ran out (restart or failure) or the session has
        already ended.
        """
        async with self._lock:
            if self.state != SessionState.IN_PROGRESS:
                return False
            return self._retry_chunk()

    async def abort(self) -> bool:
        """Abort the transfer. Only the first call on a running session has effect."""
        async with self._lock:
            if self.state != SessionState.IN_PROGRESS:
                return False
            self.current_chunk_index = 0
            self._accumulated.clear()
            logger.info("[FileTransfer/Session] {!r}: aborted", self.file_name)
            self._finish(SessionState.ABORTED, None)
            return True

    async def join(self) -> None:
        """Wait until every callback issued so far has run."""
        await self._worker.join()

    def close(self) -> None:
        """Release the callback worker; pending callbacks are dropped."""
        self._worker.close()

    # -- retry / restart -----------------------------------------------------

    def _retry_chunk(self) -> bool:
        self.chunk_retry_count += 1
        if self.chunk_retry_count >= self.max_retry:
            logger.warning(
                "[FileTransfer/Session] {!r}: chunk {} retried {} times, restarting",
                self.file_name, self.current_chunk_index, self.chunk_retry_count,
            )
            self._restart()
            self.chunk_retry_count = 0
            return False
        logger.debug(
            "[FileTransfer/Session] {!r}: requesting chunk {} again (retry {})",
            self.file_name, self.current_chunk_index, self.chunk_retry_count,
        )
        self._request_current_chunk()
        return True

    def _restart(self) -> bool:
        self.restart_count += 1
        self._accumulated.clear()
        self.current_chunk_index = 0
        if self.restart_count >= self.max_restart:
            logger.error(
                "[FileTransfer/Session] {!r}: restarted {} times, giving up",
                self.file_name, self.restart_count,
            )
            self._chunk_sizes.clear()
            self._finish(SessionState.FAILED, ErrorKind.RETRY_COUNT_EXCEEDED)
            return False
        self.chunk_retry_count = 0
        logger.warning(
            "[FileTransfer/Session] {!r}: restarting from chunk 0 (restart {})",
            self.file_name, self.restart_count,
        )
        self._request_current_chunk()
        return True

    # -- terminal transitions ------------------------------------------------

    def _finish_empty_file(self) -> None:
        if hashlib.sha256(b"").digest() == self.plan.expected_digest:
            self._finish(SessionState.SUCCEEDED, None)
        else:
            logger.error(
                "[FileTransfer/Session] {!r}: empty file does not match its hash",
                self.file_name,
            )
            self._finish(SessionState.FAILED, ErrorKind.FILE_HASH_MISMATCH)

    def _finish(self, state: SessionState, error: ErrorKind | None) -> None:
        self.state = state
        self.last_error = error
        status = self.status
        if state == SessionState.SUCCEEDED:
            logger.info(
                "[FileTransfer/Session] {!r}: received {} bytes, hash verified",
                self.file_name, len(self._accumulated),
            )
        self._worker.submit(self._callback.on_finish, status, error)

    def _request_current_chunk(self) -> None:
        index = self.current_chunk_index
        self._worker.submit(
            self._callback.send_request, self.file_name, index, self._chunk_sizes[index],
        )
