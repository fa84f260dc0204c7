"""Chunk planning for framed file transfers.

Each chunk on the wire carries a 32-byte digest of the previous chunk, the
data payload, and a 32-byte digest of the current chunk::

    +----------------+------------------------+----------------+
    | previous (32)  | data (<= 999,936)      | current (32)   |
    +----------------+------------------------+----------------+

A file of ``total_size`` bytes is split into as many full 1,000,000-byte
wire chunks as fit, followed by one shorter chunk holding the remainder.
The plan is computed once per transfer and never recomputed.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from typing import Any

# Nominal wire size of a full chunk, framing included.
CHUNK_SIZE = 1_000_000

HASH_SIZE = 32
FRAMING_SIZE = 2 * HASH_SIZE

# Smallest valid packet: both digests plus at least one data byte.
MINIMUM_PACKET_SIZE = FRAMING_SIZE + 1

DIGEST_SIZE = 32


def plan(total_size: int, chunk_size: int = CHUNK_SIZE) -> list[int]:
    """Return the wire sizes of the chunks carrying *total_size* bytes.

    >>> plan(2_000_000)
    [1000000, 1000000, 192]
    >>> plan(0)
    []
    """
    if total_size < 0:
        raise ValueError(f"total_size must be non-negative, got {total_size}")
    if chunk_size <= FRAMING_SIZE:
        raise ValueError(f"chunk_size must exceed the {FRAMING_SIZE}-byte framing")

    payload = chunk_size - FRAMING_SIZE
    full_chunks, leftover = divmod(total_size, payload)
    sizes = [chunk_size] * full_chunks
    if leftover > 0:
        sizes.append(leftover + FRAMING_SIZE)
    return sizes


@dataclass(frozen=True)
class FileInit:
    """Announcement of a file the platform is about to send."""

    name: str
    size: int
    digest: bytes  # Raw SHA-256 of the whole file

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("file name must not be empty")
        if self.size < 0:
            raise ValueError(f"file size must be non-negative, got {self.size}")
        if len(self.digest) != DIGEST_SIZE:
            raise ValueError(
                f"digest must be {DIGEST_SIZE} bytes, got {len(self.digest)}"
            )

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> FileInit:
        """Build from an upload-initiate payload (``hash`` is base64)."""
        try:
            digest = base64.b64decode(d["hash"], validate=True)
            return cls(name=str(d["name"]), size=int(d["size"]), digest=digest)
        except (KeyError, TypeError, binascii.Error) as exc:
            raise ValueError(f"invalid file init payload: {exc}") from exc

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "size": self.size,
            "hash": base64.b64encode(self.digest).decode("ascii"),
        }


@dataclass(frozen=True)
class TransferPlan:
    """Immutable chunk layout for one file."""

    file_name: str
    total_size: int
    expected_digest: bytes
    chunk_sizes: tuple[int, ...] = field(default_factory=tuple)

    @classmethod
    def for_file(cls, init: FileInit, chunk_size: int = CHUNK_SIZE) -> TransferPlan:
        return cls(
            file_name=init.name,
            total_size=init.size,
            expected_digest=init.digest,
            chunk_sizes=tuple(plan(init.size, chunk_size)),
        )

    @property
    def chunk_count(self) -> int:
        return len(self.chunk_sizes)

    @property
    def payload_size(self) -> int:
        """Sum of data bytes carried by all chunks; equals ``total_size``."""
        return sum(size - FRAMING_SIZE for size in self.chunk_sizes)
