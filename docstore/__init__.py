"""
Document store boundary

The settlement core talks to persistence only through this interface:
- get / query over named collections
- create and version-checked update
- atomic write batches
- snapshot subscriptions for read models
"""

from .memory import (
    ConflictError,
    DocumentNotFoundError,
    DocumentStoreError,
    InMemoryDocumentStore,
    UpstreamUnavailableError,
    WriteBatch,
)

__all__ = [
    "ConflictError",
    "DocumentNotFoundError",
    "DocumentStoreError",
    "InMemoryDocumentStore",
    "UpstreamUnavailableError",
    "WriteBatch",
]
