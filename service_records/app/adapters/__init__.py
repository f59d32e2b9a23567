"""
Adapters for external collaborators of the Records service.
"""

from .document_store import DocumentStore, InMemoryDocumentStore

__all__ = [
    "DocumentStore",
    "InMemoryDocumentStore",
]
