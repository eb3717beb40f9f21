"""Error taxonomy for tenant-cas.

Every error carries an ``http_status`` hint so an API layer can tell
"content does not exist" (404) apart from "storage is temporarily
unavailable" (503) without parsing messages.
"""

from __future__ import annotations


class CASError(Exception):
    """Base class for every error raised by the CAS core."""

    http_status: int = 500


class InvalidInput(CASError):
    """Malformed tenant id or hash, oversized content, unreadable input."""

    http_status = 400


class ContentNotFound(CASError):
    """No live content for this (tenant, hash)."""

    http_status = 404


class BlobNotFound(ContentNotFound):
    """A backend key is missing from the storage driver."""


class ContentCorrupted(CASError):
    """Bytes read back from the backend do not match their content address."""

    http_status = 500


class BackendUnavailable(CASError):
    """Storage driver failure (network, filesystem, object store)."""

    http_status = 503


class MetadataUnavailable(BackendUnavailable):
    """The metadata database could not be reached."""


class MetadataConflict(CASError):
    """A concurrent writer or purger did not settle within the claim timeout."""

    http_status = 409


class TenantNotProvisioned(CASError):
    """The tenant has no storage namespace or metadata partition."""

    http_status = 404


class TenantNotEmpty(CASError):
    """Deprovisioning was refused because the tenant still holds content."""

    http_status = 409
