"""
In-memory document store.

Useful for testing, dry runs and development. All documents are lost when
the process terminates.
"""

from __future__ import annotations

import asyncio
import copy
from collections import defaultdict
from collections.abc import Mapping
from typing import Any

from phasedrollout.observability import (
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DOCUMENT_COUNT,
    Tracer,
    create_tracer,
)
from phasedrollout.stores.interface import Document


class InMemoryDocumentStore:
    """
    In-memory implementation of DocumentStore.

    Documents are deep-copied on the way in and out, so callers can never
    mutate stored state by accident.

    Example:
        >>> store = InMemoryDocumentStore({"users": {"u1": {"name": "Ada"}}})
        >>> await store.write_batch("users", {"u2": {"name": "Grace"}})
        1
        >>> [doc.id for doc in await store.scan("users", limit=10)]
        ['u1', 'u2']

    Attributes:
        operations: Number of store calls served, used for ops/sec samples
    """

    def __init__(
        self,
        initial: Mapping[str, Mapping[str, dict[str, Any]]] | None = None,
        *,
        latency: float = 0.0,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the store.

        Args:
            initial: Optional collection -> {doc_id: data} seed data
            latency: Artificial delay in seconds added to every call
            tracer: Optional custom Tracer instance
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._collections: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        for name, docs in (initial or {}).items():
            self._collections[name] = {doc_id: copy.deepcopy(data) for doc_id, data in docs.items()}
        self._latency = latency
        self._lock = asyncio.Lock()
        self.operations = 0

    async def _pause(self) -> None:
        self.operations += 1
        if self._latency:
            await asyncio.sleep(self._latency)

    async def get(self, collection: str, doc_id: str) -> Document | None:
        with self._tracer.span(
            "phasedrollout.store.get",
            {ATTR_DB_SYSTEM: "memory", ATTR_DB_OPERATION: "get"},
        ):
            await self._pause()
            data = self._collections.get(collection, {}).get(doc_id)
            if data is None:
                return None
            return Document(id=doc_id, data=copy.deepcopy(data))

    async def scan(
        self,
        collection: str,
        limit: int,
        start_after: str | None = None,
    ) -> list[Document]:
        with self._tracer.span(
            "phasedrollout.store.scan",
            {ATTR_DB_SYSTEM: "memory", ATTR_DB_OPERATION: "scan"},
        ):
            await self._pause()
            docs = self._collections.get(collection, {})
            ids = sorted(doc_id for doc_id in docs if start_after is None or doc_id > start_after)
            return [Document(id=doc_id, data=copy.deepcopy(docs[doc_id])) for doc_id in ids[:limit]]

    async def write_batch(self, collection: str, documents: Mapping[str, dict[str, Any]]) -> int:
        with self._tracer.span(
            "phasedrollout.store.write_batch",
            {
                ATTR_DB_SYSTEM: "memory",
                ATTR_DB_OPERATION: "write_batch",
                ATTR_DOCUMENT_COUNT: len(documents),
            },
        ):
            await self._pause()
            async with self._lock:
                target = self._collections[collection]
                for doc_id, data in documents.items():
                    target[doc_id] = copy.deepcopy(data)
            return len(documents)

    async def collections(self) -> list[str]:
        await self._pause()
        return sorted(self._collections)

    def dump(self) -> dict[str, dict[str, dict[str, Any]]]:
        """Return a deep copy of every collection (for tests and backups)."""
        return copy.deepcopy(dict(self._collections))


__all__ = ["InMemoryDocumentStore"]
