"""Error vocabulary shared by file transfer, URL download and firmware update.

``ErrorKind`` values are sent to the platform verbatim in status reports.
The exception classes are raised locally to the caller of an operation.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Failure codes reported by the device."""

    SESSION_NOT_RUNNING = "SESSION_NOT_RUNNING"
    INVALID_PACKET = "INVALID_PACKET"
    SIZE_MISMATCH = "SIZE_MISMATCH"
    RETRY_COUNT_EXCEEDED = "RETRY_COUNT_EXCEEDED"
    FILE_HASH_MISMATCH = "FILE_HASH_MISMATCH"
    FILE_NOT_PRESENT = "FILE_NOT_PRESENT"
    MALFORMED_URL = "MALFORMED_URL"
    UNSPECIFIED_ERROR = "UNSPECIFIED_ERROR"
    TRANSFER_PROTOCOL_DISABLED = "TRANSFER_PROTOCOL_DISABLED"
    FILE_SYSTEM_ERROR = "FILE_SYSTEM_ERROR"
    INSTALLATION_FAILED = "INSTALLATION_FAILED"


class TransferError(Exception):
    """A chunk was refused by a transfer session."""

    kind: ErrorKind = ErrorKind.UNSPECIFIED_ERROR

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind.value)


class SessionNotRunningError(TransferError):
    kind = ErrorKind.SESSION_NOT_RUNNING


class InvalidPacketError(TransferError):
    kind = ErrorKind.INVALID_PACKET


class SizeMismatchError(TransferError):
    kind = ErrorKind.SIZE_MISMATCH


class TransportError(Exception):
    """The publish/subscribe transport refused an operation."""


class PublishError(TransportError):
    """The transport could not deliver an outbound message."""

    def __init__(self, topic: str, reason: str = "") -> None:
        self.topic = topic
        self.reason = reason
        super().__init__(f"could not publish to {topic!r}: {reason}" if reason else f"could not publish to {topic!r}")


class SubscribeError(TransportError):
    """The transport could not subscribe to a topic."""

    def __init__(self, topic: str, reason: str = "") -> None:
        self.topic = topic
        self.reason = reason
        super().__init__(f"could not subscribe to {topic!r}: {reason}" if reason else f"could not subscribe to {topic!r}")
