"""Tests for content addressing."""

import pytest

from tenant_cas.hashing import (
    HASH_HEX_LENGTH,
    StreamHasher,
    hash_async_stream,
    hash_bytes,
    hash_stream,
    is_content_hash,
)

HELLO_WORLD_SHA256 = "a591a6d40bf420404a011733cfb7b190d62c65bf0bcda32b57b277d9ad9f146e"
EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


class TestHashBytes:
    def test_known_digest(self) -> None:
        assert hash_bytes(b"Hello World") == HELLO_WORLD_SHA256

    def test_empty(self) -> None:
        assert hash_bytes(b"") == EMPTY_SHA256

    def test_lowercase_hex(self) -> None:
        digest = hash_bytes(b"\x00\xff" * 100)
        assert len(digest) == HASH_HEX_LENGTH
        assert digest == digest.lower()

    def test_accepts_buffers(self) -> None:
        data = b"some bytes"
        assert hash_bytes(bytearray(data)) == hash_bytes(memoryview(data)) == hash_bytes(data)


class TestStreamHashing:
    """Streaming digests must not depend on piece boundaries."""

    @pytest.mark.parametrize("piece_size", [1, 3, 7, 64, 1000])
    def test_matches_one_shot(self, piece_size: int) -> None:
        data = bytes(range(256)) * 17
        pieces = [data[i : i + piece_size] for i in range(0, len(data), piece_size)]
        assert hash_stream(pieces) == hash_bytes(data)

    def test_empty_stream(self) -> None:
        assert hash_stream([]) == EMPTY_SHA256

    def test_hasher_tracks_size(self) -> None:
        hasher = StreamHasher()
        hasher.update(b"Hello ")
        hasher.update(b"World")
        assert hasher.size == 11
        assert hasher.hexdigest() == HELLO_WORLD_SHA256

    async def test_async_stream(self) -> None:
        async def pieces():
            for piece in (b"Hel", b"lo W", b"orld"):
                yield piece

        assert await hash_async_stream(pieces()) == HELLO_WORLD_SHA256


class TestIsContentHash:
    def test_valid(self) -> None:
        assert is_content_hash(HELLO_WORLD_SHA256)

    @pytest.mark.parametrize(
        "value",
        [
            HELLO_WORLD_SHA256[:-1],  # 63 chars
            HELLO_WORLD_SHA256.upper(),
            HELLO_WORLD_SHA256[:-1] + "g",
            "../" + HELLO_WORLD_SHA256[3:],
            "",
            None,
            42,
        ],
    )
    def test_invalid(self, value: object) -> None:
        assert not is_content_hash(value)
