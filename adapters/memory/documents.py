"""
In-memory document store implementing ProfileStore, AlertStore and AuditStore.

Collections are ordered by insertion. Listeners receive the full collection on
subscribe and after every write, delivered on a later loop iteration so push
timing resembles a remote store.
"""

import asyncio
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from carewatch.domain.models import ServerTimestamp
from carewatch.services.contracts import (
    DocumentSnapshot,
    ErrorCallback,
    SnapshotCallback,
    Unsubscribe,
    logger,
)


def _split(path: str) -> tuple[str, str]:
    collection, _, document_id = path.rpartition("/")
    if not collection or not document_id:
        raise ValueError(f"Not a document path: {path!r}")
    return collection, document_id


def _stamp(value: Any, now: datetime) -> Any:
    if isinstance(value, ServerTimestamp):
        return now
    if isinstance(value, dict):
        return {key: _stamp(item, now) for key, item in value.items()}
    return value


class _Listener:
    def __init__(self, on_snapshot: SnapshotCallback, on_error: ErrorCallback) -> None:
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.active = True


class InMemoryDocumentStore:
    """Process-local collections with live listeners."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self.clock = clock or (lambda: datetime.now(UTC))
        self.write_error: Exception | None = None
        self.read_error: Exception | None = None
        self.logger = logger.bind(component="memory_document_store")

        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._listeners: dict[str, list[_Listener]] = {}

    def documents(self, collection_path: str) -> list[DocumentSnapshot]:
        collection = self._collections.get(collection_path, {})
        return [DocumentSnapshot(id=doc_id, data=dict(data)) for doc_id, data in collection.items()]

    async def get_document(self, path: str) -> dict[str, Any] | None:
        if self.read_error is not None:
            raise self.read_error
        collection, document_id = _split(path)
        data = self._collections.get(collection, {}).get(document_id)
        return dict(data) if data is not None else None

    async def set_document(self, path: str, data: dict[str, Any]) -> None:
        if self.write_error is not None:
            raise self.write_error
        collection, document_id = _split(path)
        self._collections.setdefault(collection, {})[document_id] = _stamp(data, self.clock())
        self._notify(collection)

    async def add_document(self, collection_path: str, data: dict[str, Any]) -> str:
        document_id = uuid.uuid4().hex[:20]
        await self.set_document(f"{collection_path}/{document_id}", data)
        return document_id

    async def delete_document(self, path: str) -> None:
        if self.write_error is not None:
            raise self.write_error
        collection, document_id = _split(path)
        if self._collections.get(collection, {}).pop(document_id, None) is not None:
            self._notify(collection)

    def listen(
        self,
        collection_path: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> Unsubscribe:
        listener = _Listener(on_snapshot, on_error)
        self._listeners.setdefault(collection_path, []).append(listener)
        self._deliver(listener, self.documents(collection_path))

        def unsubscribe() -> None:
            listener.active = False
            listeners = self._listeners.get(collection_path, [])
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def listener_count(self, collection_path: str) -> int:
        return len(self._listeners.get(collection_path, []))

    def fail_listeners(self, collection_path: str, error: Exception) -> None:
        """Report a push failure to every listener of the collection."""
        loop = asyncio.get_running_loop()
        for listener in list(self._listeners.get(collection_path, [])):
            loop.call_soon(self._fail, listener, error)

    def _notify(self, collection_path: str) -> None:
        snapshot = self.documents(collection_path)
        self.logger.debug("collection_changed", path=collection_path, size=len(snapshot))
        for listener in list(self._listeners.get(collection_path, [])):
            self._deliver(listener, snapshot)

    def _deliver(self, listener: _Listener, snapshot: list[DocumentSnapshot]) -> None:
        asyncio.get_running_loop().call_soon(self._push, listener, snapshot)

    @staticmethod
    def _push(listener: _Listener, snapshot: list[DocumentSnapshot]) -> None:
        if listener.active:
            listener.on_snapshot(snapshot)

    @staticmethod
    def _fail(listener: _Listener, error: Exception) -> None:
        if listener.active:
            listener.on_error(error)
