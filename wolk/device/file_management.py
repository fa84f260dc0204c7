"""File management protocol: platform-initiated file delivery.

Bridges the transport to ``FileTransferSession`` (chunked upload) and
``UrlFileDownloader`` (download by URL), stores received files in the
``FileStore`` and reports progress to the platform.

Chunked upload
--------------
Platform sends ``file_upload_initiate {name, size, hash}`` → device replies
``file_upload_status FILE_TRANSFER`` and ``file_binary_request`` for chunk
0 → platform answers each request on ``file_binary_response`` → device
reports ``FILE_READY``, ``ABORTED`` or ``ERROR`` on ``file_upload_status``.

URL download
------------
Platform sends ``file_url_download_initiate {fileUrl}`` → device reports
``FILE_TRANSFER`` and then ``FILE_READY`` (with ``fileName``) or ``ERROR``
on ``file_url_download_status``.

Inbound messages are handled one at a time, in arrival order.
"""

from __future__ import annotations

from typing import Any

from loguru import logger

from wolk.config.schema import FileTransferConfig
from wolk.device import protocol
from wolk.device.downloader import UrlFileDownloader
from wolk.device.errors import (
    ErrorKind,
    InvalidPacketError,
    SessionNotRunningError,
    SizeMismatchError,
)
from wolk.device.planner import CHUNK_SIZE, FileInit
from wolk.device.protocol import (
    ChunkRequest,
    FileTransferStatusReport,
    UrlDownloadInit,
    UrlDownloadStatusReport,
    decode_payload,
    encode_payload,
)
from wolk.device.resilience import SerialWorker
from wolk.device.session import FileTransferSession, TransferStatus
from wolk.device.store import FileStore
from wolk.device.transport import Transport


class _UploadCallback:
    """Session callback bound to one session."""

    def __init__(self, owner: FileManagementProtocol) -> None:
        self.owner = owner
        self.session: FileTransferSession | None = None

    async def send_request(self, file_name: str, chunk_index: int, chunk_size: int) -> None:
        await self.owner._publish(
            protocol.FILE_BINARY_REQUEST,
            ChunkRequest(file_name, chunk_index, chunk_size).to_dict(),
        )

    async def on_finish(self, status: TransferStatus, error: ErrorKind | None) -> None:
        await self.owner._on_upload_finished(self.session, status, error)


class _DownloadCallback:
    """Downloader callback bound to one URL."""

    def __init__(self, owner: FileManagementProtocol, url: str) -> None:
        self.owner = owner
        self.url = url

    async def on_file_received(self, file_name: str, data: bytes) -> None:
        try:
            self.owner.file_store.store_file(file_name, data)
        except (OSError, ValueError) as exc:
            logger.error("[FileTransfer] could not store {!r}: {!r}", file_name, exc)
            await self.owner._publish_download_status(
                self.url, TransferStatus.ERROR, error=ErrorKind.FILE_SYSTEM_ERROR,
            )
            return
        await self.owner._publish_download_status(
            self.url, TransferStatus.FILE_READY, file_name=file_name,
        )

    async def on_error(self, error: ErrorKind) -> None:
        await self.owner._publish_download_status(self.url, TransferStatus.ERROR, error=error)


class FileManagementProtocol:
    """Receives files from the platform over the transport.

    Parameters
    ----------
    transport:
        Publish/subscribe transport scoped to this device.
    file_store:
        Where completed files are written.
    config:
        Feature switches and retry bounds.
    downloader:
        URL downloader; a default one is created if omitted.
    chunk_size:
        Nominal wire chunk size for uploads.
    """

    def __init__(
        self,
        transport: Transport,
        file_store: FileStore,
        config: FileTransferConfig | None = None,
        *,
        downloader: UrlFileDownloader | None = None,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        self.transport = transport
        self.file_store = file_store
        self.config = config or FileTransferConfig()
        self.downloader = downloader or UrlFileDownloader()
        self.chunk_size = chunk_size
        self.session: FileTransferSession | None = None
        self._inbound = SerialWorker("file-management")

    # -- subscriptions -------------------------------------------------------

    async def subscribe(self) -> None:
        """Subscribe to every file management command topic."""
        routes = {
            protocol.FILE_UPLOAD_INITIATE: self.handle_upload_initiate,
            protocol.FILE_BINARY_RESPONSE: self.handle_binary_response,
            protocol.FILE_UPLOAD_ABORT: self.handle_upload_abort,
            protocol.FILE_URL_DOWNLOAD_INITIATE: self.handle_url_download_initiate,
            protocol.FILE_URL_DOWNLOAD_ABORT: self.handle_url_download_abort,
        }
        for prefix, handler in routes.items():
            await self.transport.subscribe(
                protocol.topic(prefix, self.transport.device_key), self._queue(handler),
            )
        logger.info("[FileTransfer] subscribed to file management topics")

    def _queue(self, handler: Any) -> Any:
        def _on_message(topic: str, payload: bytes) -> None:
            self._inbound.submit(handler, payload)
        return _on_message

    async def join(self) -> None:
        """Wait until queued messages, session callbacks and downloads have settled."""
        await self._inbound.join()
        if self.session is not None:
            await self.session.join()
        await self.downloader.join()

    # -- chunked upload ------------------------------------------------------

    async def handle_upload_initiate(self, payload: bytes) -> None:
        try:
            init = FileInit.from_dict(decode_payload(payload))
        except ValueError as exc:
            logger.warning("[FileTransfer] ignoring upload initiate: {}", exc)
            return

        if not self.config.enabled:
            logger.warning("[FileTransfer] upload of {!r} refused, file transfer disabled", init.name)
            await self._publish_upload_status(
                init.name, TransferStatus.ERROR, ErrorKind.TRANSFER_PROTOCOL_DISABLED,
            )
            return
        if self.session is not None and self.session.is_running:
            logger.warning(
                "[FileTransfer] upload of {!r} ignored, {!r} is still transferring",
                init.name, self.session.file_name,
            )
            return

        await self._publish_upload_status(init.name, TransferStatus.FILE_TRANSFER)
        callback = _UploadCallback(self)
        self.session = FileTransferSession(
            init,
            callback,
            max_retry=self.config.max_retry,
            max_restart=self.config.max_restart,
            chunk_size=self.chunk_size,
        )
        callback.session = self.session

    async def handle_binary_response(self, payload: bytes) -> None:
        session = self.session
        if session is None or not session.is_running:
            logger.warning("[FileTransfer] binary response of {} bytes with no active upload", len(payload))
            return
        try:
            await session.receive_bytes(payload)
        except (InvalidPacketError, SizeMismatchError) as exc:
            logger.warning("[FileTransfer] {!r}: {}", session.file_name, exc)
            await session.retry_chunk()
        except SessionNotRunningError as exc:
            logger.warning("[FileTransfer] {}", exc)

    async def handle_upload_abort(self, payload: bytes) -> None:
        session = self.session
        if session is None or not await session.abort():
            logger.warning("[FileTransfer] abort received with no active upload")

    async def _on_upload_finished(
        self,
        session: FileTransferSession | None,
        status: TransferStatus,
        error: ErrorKind | None,
    ) -> None:
        if session is None:
            return
        if status == TransferStatus.FILE_READY:
            try:
                self.file_store.store_file(session.file_name, session.data)
            except (OSError, ValueError) as exc:
                logger.error("[FileTransfer] could not store {!r}: {!r}", session.file_name, exc)
                status, error = TransferStatus.ERROR, ErrorKind.FILE_SYSTEM_ERROR
        await self._publish_upload_status(session.file_name, status, error)

    # -- URL download --------------------------------------------------------

    async def handle_url_download_initiate(self, payload: bytes) -> None:
        try:
            init = UrlDownloadInit.from_dict(decode_payload(payload))
        except ValueError as exc:
            logger.warning("[FileTransfer] ignoring URL download initiate: {}", exc)
            return

        if not self.config.url_download_enabled:
            logger.warning("[FileTransfer] URL download of {!r} refused, disabled", init.file_url)
            await self._publish_download_status(
                init.file_url, TransferStatus.ERROR, error=ErrorKind.TRANSFER_PROTOCOL_DISABLED,
            )
            return

        await self._publish_download_status(init.file_url, TransferStatus.FILE_TRANSFER)
        self.downloader.download_file(init.file_url, _DownloadCallback(self, init.file_url))

    async def handle_url_download_abort(self, payload: bytes) -> None:
        fetch = self.downloader.current
        if fetch is None or not self.downloader.abort():
            logger.warning("[FileTransfer] URL download abort with nothing in flight")
            return
        await self._publish_download_status(fetch.url, TransferStatus.ABORTED)

    # -- publishing ----------------------------------------------------------

    async def _publish(self, prefix: str, payload: dict[str, Any]) -> None:
        await self.transport.publish(
            protocol.topic(prefix, self.transport.device_key), encode_payload(payload),
        )

    async def _publish_upload_status(
        self, name: str, status: TransferStatus, error: ErrorKind | None = None,
    ) -> None:
        logger.info("[FileTransfer] upload {!r}: {}", name, status.value)
        await self._publish(
            protocol.FILE_UPLOAD_STATUS, FileTransferStatusReport(name, status, error).to_dict(),
        )

    async def _publish_download_status(
        self,
        url: str,
        status: TransferStatus,
        *,
        file_name: str | None = None,
        error: ErrorKind | None = None,
    ) -> None:
        logger.info("[FileTransfer] URL download {!r}: {}", url, status.value)
        await self._publish(
            protocol.FILE_URL_DOWNLOAD_STATUS,
            UrlDownloadStatusReport(url, status, file_name, error).to_dict(),
        )
