"""Status record persistence."""

from phasedrollout.repositories.status import (
    FileStatusStore,
    InMemoryStatusStore,
    SQLAlchemyStatusStore,
    StatusStore,
)

__all__ = [
    "StatusStore",
    "InMemoryStatusStore",
    "FileStatusStore",
    "SQLAlchemyStatusStore",
]
