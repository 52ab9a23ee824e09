"""
Backing document store interface.

The orchestrator never talks to a concrete database. Everything it needs
(bounded scans for health sampling and validation, point reads, batched writes for
migration work and document-level restore) goes through DocumentStore.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class Document:
    """A document and its id within a collection."""

    id: str
    data: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class DocumentStore(Protocol):
    """
    Minimal contract of the shared document database.

    Implementations must keep ``scan`` bounded by ``limit`` and return
    documents ordered by id so callers can page with ``start_after``.
    """

    async def get(self, collection: str, doc_id: str) -> Document | None:
        """
        Read a single document.

        Args:
            collection: Collection name
            doc_id: Document id

        Returns:
            The document, or None if it does not exist
        """
        ...

    async def scan(
        self,
        collection: str,
        limit: int,
        start_after: str | None = None,
    ) -> list[Document]:
        """
        Read up to ``limit`` documents ordered by id.

        Args:
            collection: Collection name
            limit: Maximum number of documents to return
            start_after: Only return documents with an id greater than this

        Returns:
            Documents ordered by id
        """
        ...

    async def write_batch(self, collection: str, documents: Mapping[str, dict[str, Any]]) -> int:
        """
        Write (create or replace) several documents.

        Args:
            collection: Collection name
            documents: Mapping of document id to document data

        Returns:
            Number of documents written
        """
        ...

    async def collections(self) -> list[str]:
        """List collection names."""
        ...


__all__ = [
    "Document",
    "DocumentStore",
]
