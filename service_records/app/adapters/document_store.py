"""
Document store contract used by the record routes.

Production runs against a managed document database; this package only ships
the contract and an in-memory implementation used for local runs and tests.
"""

import asyncio
import copy
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from farm_shared.logging import get_logger


class DocumentStore(Protocol):
    """Narrow get / set / query / delete contract over named collections."""

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]: ...

    async def set(self, collection: str, doc_id: Optional[str], data: Dict[str, Any]) -> Dict[str, Any]: ...

    async def query(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        *,
        order_by: str = "created_at",
        descending: bool = True,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]: ...

    async def delete(self, collection: str, doc_id: str) -> bool: ...


class InMemoryDocumentStore:
    """Dict-backed document store with equality filters."""

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()
        self.logger = get_logger("records.document_store")

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        doc = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def set(self, collection: str, doc_id: Optional[str], data: Dict[str, Any]) -> Dict[str, Any]:
        """Create or merge a document; returns the stored document."""
        now = datetime.now(timezone.utc).isoformat()
        async with self._lock:
            docs = self._collections.setdefault(collection, {})
            doc_id = doc_id or uuid.uuid4().hex
            existing = docs.get(doc_id)
            if existing is None:
                doc = {"id": doc_id, "created_at": now}
            else:
                doc = existing
            doc.update({k: v for k, v in data.items() if k not in ("id", "created_at")})
            doc["updated_at"] = now
            docs[doc_id] = doc

        self.logger.debug("Document stored", collection=collection, doc_id=doc_id)
        return copy.deepcopy(doc)

    async def query(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        *,
        order_by: str = "created_at",
        descending: bool = True,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        filters = filters or {}
        docs = [
            doc for doc in self._collections.get(collection, {}).values()
            if all(doc.get(field) == value for field, value in filters.items())
        ]
        docs.sort(key=lambda doc: str(doc.get(order_by, "")), reverse=descending)
        docs = docs[offset:]
        if limit is not None:
            docs = docs[:limit]
        return copy.deepcopy(docs)

    async def delete(self, collection: str, doc_id: str) -> bool:
        async with self._lock:
            removed = self._collections.get(collection, {}).pop(doc_id, None) is not None
        if removed:
            self.logger.debug("Document deleted", collection=collection, doc_id=doc_id)
        return removed
