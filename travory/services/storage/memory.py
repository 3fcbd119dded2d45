"""
In-Memory Remote Store

A dict-backed RemoteStoreInterface used when no Google Sheets account is
configured and as the remote fake in tests. It shares documents between
every bridge that holds a reference to it, which makes it a convenient
stand-in for "the cloud" when two devices are simulated in one process.
"""

import asyncio
from typing import Optional

from travory.services.storage.interface import RemoteDocument, RemoteStoreInterface


class InMemoryRemoteStore(RemoteStoreInterface):
    """Remote store keeping documents in a dict keyed by (record_type, record_id)."""

    def __init__(self):
        self._documents: dict[tuple[str, str], RemoteDocument] = {}
        self._sequence = 0
        self._lock = asyncio.Lock()

    @property
    def documents(self) -> list[RemoteDocument]:
        return list(self._documents.values())

    async def upsert(self, document: RemoteDocument) -> bool:
        key = (document.record_type, document.record_id)
        async with self._lock:
            current = self._documents.get(key)
            if current is not None and current.updated_at > document.updated_at:
                return False
            self._sequence += 1
            self._documents[key] = document.model_copy(
                update={"sequence": self._sequence}, deep=True
            )
            return True

    async def get(self, record_type: str, record_id: str) -> Optional[RemoteDocument]:
        document = self._documents.get((record_type, record_id))
        return document.model_copy(deep=True) if document else None

    async def fetch_changes(
        self,
        account_id: str,
        since: Optional[int] = None,
    ) -> list[RemoteDocument]:
        changes = [
            document.model_copy(deep=True)
            for document in self._documents.values()
            if document.is_visible_to(account_id)
            and (since is None or document.sequence > since)
        ]
        changes.sort(key=lambda d: d.sequence)
        return changes

    async def find_by_share_code(self, share_code: str) -> Optional[RemoteDocument]:
        for document in self._documents.values():
            if document.share_code == share_code and not document.deleted:
                return document.model_copy(deep=True)
        return None
