"""Storage strategy selection and chunking for large content."""

from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator, Iterable, Iterator, Sequence

from tenant_cas.config import MiB
from tenant_cas.models.enums import StorageType

MAX_INLINE_SIZE = 1 * MiB
CHUNK_SIZE = 5 * MiB


class _ChunkBuffer:
    """Re-slices arbitrarily sized pieces into fixed-size chunks."""

    def __init__(self, chunk_size: int) -> None:
        self._chunk_size = chunk_size
        self._pending = bytearray()

    def feed(self, piece: bytes) -> list[bytes]:
        self._pending += piece
        full: list[bytes] = []
        while len(self._pending) >= self._chunk_size:
            full.append(bytes(self._pending[: self._chunk_size]))
            del self._pending[: self._chunk_size]
        return full

    def flush(self) -> bytes | None:
        if not self._pending:
            return None
        tail = bytes(self._pending)
        self._pending.clear()
        return tail


class ChunkPlanner:
    """Chooses inline / single / chunked storage and splits content into chunks.

    Policy:
        size <= max_inline_size              -> INLINE
        max_inline_size < size <= chunk_size -> SINGLE
        size > chunk_size                    -> CHUNKED
    """

    def __init__(
        self,
        max_inline_size: int = MAX_INLINE_SIZE,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if max_inline_size < 0 or max_inline_size > chunk_size:
            raise ValueError("max_inline_size must be between 0 and chunk_size")
        self.max_inline_size = max_inline_size
        self.chunk_size = chunk_size

    def plan_storage(self, content_size: int) -> StorageType:
        if content_size <= self.max_inline_size:
            return StorageType.INLINE
        if content_size <= self.chunk_size:
            return StorageType.SINGLE
        return StorageType.CHUNKED

    def split_into_chunks(self, data: bytes) -> list[bytes]:
        """Split ``data`` into chunk_size slices; the last one may be shorter."""
        view = memoryview(data)
        return [
            bytes(view[offset : offset + self.chunk_size])
            for offset in range(0, len(data), self.chunk_size)
        ]

    def split_stream_into_chunks(self, pieces: Iterable[bytes]) -> Iterator[bytes]:
        """Yield chunk_size slices as soon as enough input has arrived.

        Chunk boundaries match ``split_into_chunks`` of the concatenated input,
        and at most one chunk is buffered at a time.
        """
        buffer = _ChunkBuffer(self.chunk_size)
        for piece in pieces:
            yield from buffer.feed(piece)
        tail = buffer.flush()
        if tail is not None:
            yield tail

    async def asplit_stream_into_chunks(
        self, pieces: AsyncIterable[bytes]
    ) -> AsyncIterator[bytes]:
        """Async counterpart of ``split_stream_into_chunks``."""
        buffer = _ChunkBuffer(self.chunk_size)
        async for piece in pieces:
            for chunk in buffer.feed(piece):
                yield chunk
        tail = buffer.flush()
        if tail is not None:
            yield tail

    @staticmethod
    def reassemble(ordered_chunks: Sequence[bytes]) -> bytes:
        """Concatenate chunks already sorted by index."""
        return b"".join(ordered_chunks)
