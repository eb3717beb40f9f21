"""Enumerations for the tenant-cas data model."""

from enum import Enum


class StorageType(str, Enum):
    """Where the bytes of a ContentObject live. Fixed at creation."""

    INLINE = "inline"  # In the metadata row itself
    SINGLE = "single"  # One backend object keyed by the content hash
    CHUNKED = "chunked"  # Ordered backend objects keyed by chunk hash


class RowState(str, Enum):
    """Lifecycle state of a ContentObject or Blob row.

    ContentObjects are only ever READY or PURGING: they are inserted once
    every byte they reference is confirmed written. Blobs pass through
    PENDING while their single physical write is in flight.
    """

    PENDING = "pending"  # Physical write in flight (blobs only)
    READY = "ready"  # Visible, bytes confirmed
    PURGING = "purging"  # Reference count hit zero, backend delete in flight


class TenantStatus(str, Enum):
    """Lifecycle status of a Tenant."""

    ACTIVE = "active"
    DEPROVISIONING = "deprovisioning"  # Namespace teardown in progress
