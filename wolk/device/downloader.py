"""Whole-file download from a URL.

``UrlFileDownloader`` fetches one file at a time in a background task and
reports the outcome through a callback::

    downloader = UrlFileDownloader()
    downloader.download_file("https://example.com/fw/app-1.2.bin", callback)
    # later: callback.on_file_received("app-1.2.bin", b"...")
    #    or: callback.on_error(ErrorKind.MALFORMED_URL | ErrorKind.UNSPECIFIED_ERROR)

Starting a new download cancels the one in flight; a cancelled download
never calls back. Failed downloads are not retried.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from loguru import logger

from wolk.device.errors import ErrorKind
from wolk.device.resilience import supervised_task

BLOCK_SIZE = 16 * 1024
DEFAULT_TIMEOUT = 60.0


class DownloadCallback(Protocol):
    """Receives the outcome of one download. Methods may be async."""

    def on_file_received(self, file_name: str, data: bytes) -> Any: ...

    def on_error(self, error: ErrorKind) -> Any: ...


class MalformedUrlError(ValueError):
    """The URL cannot be fetched over HTTP(S)."""


def parse_url(url: str) -> httpx.URL:
    """Parse an absolute http(s) URL or raise ``MalformedUrlError``."""
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError) as exc:
        raise MalformedUrlError(str(exc)) from exc
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise MalformedUrlError(f"not an absolute http(s) URL: {url!r}")
    return parsed


def file_name_from_url(url: httpx.URL) -> str:
    """Return the last ``/``-separated segment of the URL path."""
    return url.path.rsplit("/", 1)[-1]


@dataclass
class FetchTask:
    """One download: its target, its callback and whether it still may call back."""

    url: str
    callback: DownloadCallback
    cancelled: bool = False
    settled: bool = False  # A terminal callback has been claimed
    task: asyncio.Task | None = field(default=None, repr=False)


class UrlFileDownloader:
    """Downloads files over HTTP(S), one at a time.

    Parameters
    ----------
    block_size:
        Bytes requested per read from the response stream.
    timeout:
        httpx timeout in seconds.
    follow_redirects:
        Whether 3xx responses are followed.
    transport:
        Optional httpx transport, e.g. ``httpx.MockTransport`` in tests.
    """

    def __init__(
        self,
        *,
        block_size: int = BLOCK_SIZE,
        timeout: float = DEFAULT_TIMEOUT,
        follow_redirects: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.block_size = block_size
        self.timeout = timeout
        self.follow_redirects = follow_redirects
        self._transport = transport
        self._current: FetchTask | None = None

    @property
    def current(self) -> FetchTask | None:
        return self._current

    # -- public API ----------------------------------------------------------

    def download_file(self, url: str, callback: DownloadCallback) -> FetchTask:
        """Cancel any download in flight and start fetching *url*."""
        self._cancel_current()
        fetch = FetchTask(url=url, callback=callback)
        fetch.task = supervised_task(self._run(fetch), name=f"url-download-{url}")
        self._current = fetch
        logger.info("[UrlDownload] started {!r}", url)
        return fetch

    def abort(self) -> bool:
        """Cancel the download in flight. Returns True if one was cancelled."""
        return self._cancel_current()

    async def join(self) -> None:
        """Wait for the current download, if any, to settle."""
        fetch = self._current
        if fetch is not None and fetch.task is not None:
            await asyncio.gather(fetch.task, return_exceptions=True)

    # -- internals -----------------------------------------------------------

    def _cancel_current(self) -> bool:
        fetch, self._current = self._current, None
        if fetch is None or fetch.settled or fetch.cancelled:
            return False
        fetch.cancelled = True
        if fetch.task is not None and not fetch.task.done():
            fetch.task.cancel()
        logger.info("[UrlDownload] cancelled {!r}", fetch.url)
        return True

    async def _run(self, fetch: FetchTask) -> None:
        try:
            file_name, data = await self._fetch(fetch.url)
        except MalformedUrlError as exc:
            logger.warning("[UrlDownload] malformed URL {!r}: {}", fetch.url, exc)
            await self._settle(fetch, fetch.callback.on_error, ErrorKind.MALFORMED_URL)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[UrlDownload] {!r} failed: {!r}", fetch.url, exc)
            await self._settle(fetch, fetch.callback.on_error, ErrorKind.UNSPECIFIED_ERROR)
        else:
            logger.info("[UrlDownload] received {!r} ({} bytes)", file_name, len(data))
            await self._settle(fetch, fetch.callback.on_file_received, file_name, data)

    async def _fetch(self, url: str) -> tuple[str, bytes]:
        parsed = parse_url(url)
        file_name = file_name_from_url(parsed)
        if not file_name:
            raise ValueError(f"URL {url!r} does not name a file")

        buffer = bytearray()
        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=self.follow_redirects,
            transport=self._transport,
        ) as client:
            async with client.stream("GET", parsed) as response:
                response.raise_for_status()
                async for block in response.aiter_bytes(self.block_size):
                    buffer += block
        return file_name, bytes(buffer)

    async def _settle(self, fetch: FetchTask, fn: Any, *args: Any) -> None:
        # Claiming the callback and checking for cancellation happen without
        # an await in between, so abort() either wins or sees ``settled``.
        if fetch.cancelled:
            return
        fetch.settled = True
        result = fn(*args)
        if asyncio.iscoroutine(result):
            await result
