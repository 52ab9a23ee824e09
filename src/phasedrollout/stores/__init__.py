"""Document store interface and implementations."""

from phasedrollout.stores.in_memory import InMemoryDocumentStore
from phasedrollout.stores.interface import Document, DocumentStore

__all__ = [
    "Document",
    "DocumentStore",
    "InMemoryDocumentStore",
]
