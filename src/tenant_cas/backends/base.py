"""Storage driver contract shared by every backend."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import ClassVar

from tenant_cas.errors import InvalidInput
from tenant_cas.hashing import is_content_hash

_NAMESPACE_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,62}$")


def validate_namespace(namespace: str) -> str:
    """Namespaces become directory names and key prefixes; keep them tame."""
    if not isinstance(namespace, str) or not _NAMESPACE_RE.match(namespace):
        raise InvalidInput(f"Invalid storage namespace: {namespace!r}")
    return namespace


def validate_key(key: str) -> str:
    if not is_content_hash(key):
        raise InvalidInput(f"Invalid backend key (expected sha256 hex): {key!r}")
    return key


class Backend(ABC):
    """Polymorphic storage driver.

    Keys are content addresses supplied by the caller. ``store`` is idempotent:
    writing the same key twice with the same bytes leaves identical content.
    ``retrieve`` and ``delete`` raise ``BlobNotFound`` for an absent key;
    every other driver failure surfaces as ``BackendUnavailable``.
    """

    name: ClassVar[str]

    @abstractmethod
    async def store(self, namespace: str, key: str, data: bytes) -> None: ...

    @abstractmethod
    async def retrieve(self, namespace: str, key: str) -> bytes: ...

    @abstractmethod
    async def delete(self, namespace: str, key: str) -> None: ...

    # Namespace lifecycle hooks used by tenant provisioning

    @abstractmethod
    async def create_namespace(self, namespace: str) -> None:
        """Create the namespace; a no-op if it already exists."""

    @abstractmethod
    async def drop_namespace(self, namespace: str) -> None:
        """Remove the namespace and anything left inside it."""

    @abstractmethod
    async def namespace_exists(self, namespace: str) -> bool: ...

    def canonical_namespace(self, namespace: str) -> str:
        """The physical name ``namespace`` maps to.

        Two namespaces with the same canonical name share storage, so a
        tenant must never be given one that another tenant already maps to.
        """
        return validate_namespace(namespace)
