"""Content addressing: SHA-256 digests as 64-character lowercase hex."""

from __future__ import annotations

import hashlib
import re
from collections.abc import AsyncIterable, Iterable
from typing import Final

HASH_ALGORITHM: Final = "sha256"
HASH_HEX_LENGTH: Final = 64

_HASH_RE = re.compile(r"^[0-9a-f]{64}$")


def hash_bytes(data: bytes | bytearray | memoryview) -> str:
    """Return the content address of ``data``."""
    return hashlib.sha256(data).hexdigest()


class StreamHasher:
    """Incremental hasher whose digest equals ``hash_bytes`` of everything fed.

    Usage:
        hasher = StreamHasher()
        for piece in pieces:
            hasher.update(piece)
        content_hash = hasher.hexdigest()
    """

    def __init__(self) -> None:
        self._digest = hashlib.sha256()
        self.size = 0

    def update(self, piece: bytes | bytearray | memoryview) -> None:
        self._digest.update(piece)
        self.size += len(piece)

    def hexdigest(self) -> str:
        return self._digest.hexdigest()


def hash_stream(pieces: Iterable[bytes]) -> str:
    """Hash an iterable of byte pieces without materializing the concatenation.

    The result is identical to ``hash_bytes(b"".join(pieces))`` regardless of
    where the piece boundaries fall.
    """
    hasher = StreamHasher()
    for piece in pieces:
        hasher.update(piece)
    return hasher.hexdigest()


async def hash_async_stream(pieces: AsyncIterable[bytes]) -> str:
    """Async counterpart of ``hash_stream``."""
    hasher = StreamHasher()
    async for piece in pieces:
        hasher.update(piece)
    return hasher.hexdigest()


def is_content_hash(value: object) -> bool:
    """True if ``value`` is a well-formed content address."""
    return isinstance(value, str) and _HASH_RE.match(value) is not None
