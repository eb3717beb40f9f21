"""tenant-cas: multi-tenant content-addressable storage."""

__version__ = "0.1.0"
