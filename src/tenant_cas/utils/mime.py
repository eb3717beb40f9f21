"""MIME type detection for stored files.

Detects a MIME type from magic bytes and falls back to the file
extension. Used by ``put_file`` when the caller does not supply one.
"""

from __future__ import annotations

import mimetypes
from pathlib import Path
from typing import Final

DEFAULT_MIME_TYPE: Final = "application/octet-stream"

# Format: (magic_bytes, offset, mime_type)
_MAGIC_SIGNATURES: Final[list[tuple[bytes, int, str]]] = [
    # Images
    (b"\xff\xd8\xff", 0, "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", 0, "image/png"),
    (b"GIF87a", 0, "image/gif"),
    (b"GIF89a", 0, "image/gif"),
    (b"BM", 0, "image/bmp"),
    (b"II*\x00", 0, "image/tiff"),
    (b"MM\x00*", 0, "image/tiff"),
    # Documents and archives
    (b"%PDF-", 0, "application/pdf"),
    (b"PK\x03\x04", 0, "application/zip"),
    (b"\x1f\x8b", 0, "application/gzip"),
    (b"7z\xbc\xaf\x27\x1c", 0, "application/x-7z-compressed"),
    (b"ustar", 257, "application/x-tar"),
    # Video
    (b"\x1aE\xdf\xa3", 0, "video/webm"),
    # Audio
    (b"ID3", 0, "audio/mpeg"),
    (b"\xff\xfb", 0, "audio/mpeg"),
    (b"\xff\xf3", 0, "audio/mpeg"),
    (b"fLaC", 0, "audio/flac"),
    (b"OggS", 0, "audio/ogg"),
]

# Extensions the platform mimetypes table gets wrong or lacks
_EXTENSION_MAP: Final[dict[str, str]] = {
    ".md": "text/markdown",
    ".jsonl": "application/x-ndjson",
    ".geojson": "application/geo+json",
    ".webp": "image/webp",
    ".heic": "image/heic",
    ".heif": "image/heif",
    ".mkv": "video/x-matroska",
    ".flac": "audio/flac",
    ".yaml": "application/yaml",
    ".yml": "application/yaml",
}

# Enough for every signature above, including the tar header
HEADER_SIZE: Final[int] = 512


def sniff_mime_type(header: bytes) -> str | None:
    """Detect a MIME type from the leading bytes of a file."""
    if header.startswith(b"RIFF") and len(header) >= 12:
        riff_type = header[8:12]
        if riff_type == b"WEBP":
            return "image/webp"
        if riff_type == b"WAVE":
            return "audio/wav"
        if riff_type == b"AVI ":
            return "video/x-msvideo"

    if len(header) >= 12 and header[4:8] == b"ftyp":
        brand = header[8:12]
        if brand in {b"heic", b"heix", b"mif1"}:
            return "image/heic"
        if brand in {b"M4A ", b"M4B "}:
            return "audio/mp4"
        if brand == b"qt  ":
            return "video/quicktime"
        return "video/mp4"

    for magic, offset, mime_type in _MAGIC_SIGNATURES:
        if header[offset : offset + len(magic)] == magic:
            return mime_type
    return None


def mime_type_from_name(filename: str) -> str | None:
    """Detect a MIME type from a filename's extension."""
    suffix = Path(filename).suffix.lower()
    if suffix in _EXTENSION_MAP:
        return _EXTENSION_MAP[suffix]
    mime_type, _encoding = mimetypes.guess_type(filename, strict=False)
    return mime_type


def guess_mime_type(path: str | Path, header: bytes | None = None) -> str:
    """Detect a file's MIME type.

    Magic bytes win over the extension so that a mislabelled upload is
    still described correctly; the extension covers text formats, which
    have no signature.

    Args:
        path: File path; only its name is used unless ``header`` is None.
        header: Leading bytes of the content, read from ``path`` if omitted.

    Returns:
        The detected MIME type, or ``application/octet-stream``.
    """
    path = Path(path)
    if header is None:
        try:
            with path.open("rb") as f:
                header = f.read(HEADER_SIZE)
        except OSError:
            header = b""

    return sniff_mime_type(header) or mime_type_from_name(path.name) or DEFAULT_MIME_TYPE
