"""Topics and JSON payloads exchanged with the platform.

Every topic is a fixed prefix followed by the device key, e.g.
``p2d/file_upload_initiate/d/<device-key>``. ``p2d`` topics carry
platform-to-device commands, ``d2p`` topics device-to-platform reports.

Payloads are UTF-8 JSON objects with camelCase keys::

    d2p/file_binary_request     {"name": "fw.bin", "chunkIndex": 0, "chunkSize": 1000000}
    d2p/file_upload_status      {"name": "fw.bin", "status": "ERROR", "error": "RETRY_COUNT_EXCEEDED"}
    d2p/firmware_update_status  {"status": "INSTALLATION"}  or  {"error": "FILE_NOT_PRESENT"}

``p2d/file_binary_response`` is the only binary payload (one framed chunk)
and ``d2p/firmware_version_update`` carries the raw version string.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

# -- platform to device ------------------------------------------------------
FILE_UPLOAD_INITIATE = "p2d/file_upload_initiate/d/"
FILE_BINARY_RESPONSE = "p2d/file_binary_response/d/"
FILE_UPLOAD_ABORT = "p2d/file_upload_abort/d/"
FILE_URL_DOWNLOAD_INITIATE = "p2d/file_url_download_initiate/d/"
FILE_URL_DOWNLOAD_ABORT = "p2d/file_url_download_abort/d/"
FIRMWARE_UPDATE_INSTALL = "p2d/firmware_update_install/d/"
FIRMWARE_UPDATE_ABORT = "p2d/firmware_update_abort/d/"

# -- device to platform ------------------------------------------------------
FILE_BINARY_REQUEST = "d2p/file_binary_request/d/"
FILE_UPLOAD_STATUS = "d2p/file_upload_status/d/"
FILE_URL_DOWNLOAD_STATUS = "d2p/file_url_download_status/d/"
FIRMWARE_UPDATE_STATUS = "d2p/firmware_update_status/d/"
FIRMWARE_VERSION_UPDATE = "d2p/firmware_version_update/d/"


def topic(prefix: str, device_key: str) -> str:
    """Scope a topic prefix to one device."""
    return prefix + device_key


def _value(v: Any) -> Any:
    return v.value if isinstance(v, Enum) else v


def encode_payload(payload: dict[str, Any]) -> bytes:
    """Serialise a payload dict to JSON bytes."""
    return json.dumps({k: _value(v) for k, v in payload.items()}, ensure_ascii=False).encode()


def decode_payload(data: bytes) -> dict[str, Any]:
    """Parse a JSON object payload. Raises ``ValueError`` if malformed."""
    try:
        obj = json.loads(data or b"{}")
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValueError(f"malformed JSON payload: {exc}") from exc
    if not isinstance(obj, dict):
        raise ValueError(f"expected a JSON object, got {type(obj).__name__}")
    return obj


# ---------------------------------------------------------------------------
# File transfer payloads
# ---------------------------------------------------------------------------

@dataclass
class ChunkRequest:
    """Device asks for one chunk of an announced file."""

    name: str
    chunk_index: int
    chunk_size: int

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "chunkIndex": self.chunk_index, "chunkSize": self.chunk_size}


@dataclass
class FileTransferStatusReport:
    name: str
    status: str
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d = {"name": self.name, "status": _value(self.status)}
        if self.error is not None:
            d["error"] = _value(self.error)
        return d


@dataclass
class UrlDownloadInit:
    file_url: str

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> UrlDownloadInit:
        url = d.get("fileUrl")
        if not isinstance(url, str):
            raise ValueError("url download payload has no 'fileUrl'")
        return cls(file_url=url)


@dataclass
class UrlDownloadStatusReport:
    file_url: str
    status: str
    file_name: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d = {"fileUrl": self.file_url, "status": _value(self.status)}
        if self.file_name is not None:
            d["fileName"] = self.file_name
        if self.error is not None:
            d["error"] = _value(self.error)
        return d


# ---------------------------------------------------------------------------
# Firmware update payloads
# ---------------------------------------------------------------------------

@dataclass
class UpdateInit:
    file_name: str

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> UpdateInit:
        name = d.get("fileName")
        if not isinstance(name, str) or not name:
            raise ValueError("firmware install payload has no 'fileName'")
        return cls(file_name=name)


@dataclass
class UpdateStatus:
    """Either a status or an error, never both."""

    status: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.error is not None:
            return {"error": _value(self.error)}
        return {"status": _value(self.status)}
