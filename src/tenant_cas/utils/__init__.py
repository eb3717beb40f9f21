"""Utility modules for tenant-cas."""

from tenant_cas.utils.mime import guess_mime_type, mime_type_from_name, sniff_mime_type

__all__ = [
    "guess_mime_type",
    "mime_type_from_name",
    "sniff_mime_type",
]
