import asyncio
import logging
import os
from typing import Optional

from google.api_core import exceptions as gcp_exceptions
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from word_impostor.config import settings
from word_impostor.exceptions import InvalidState, StoreConflict, StoreUnavailable
from word_impostor.services.store import MemoryRoomStore, RoomStore, Transaction

logger = logging.getLogger(__name__)


def _build_query(db, collection, where=(), order_by=None, descending=False, limit=None):
    # Equality filter + order_by on another field needs a composite index.
    query = db.collection(collection)
    for field, op, value in where:
        query = query.where(filter=FieldFilter(field, op, value))
    if order_by:
        direction = firestore.Query.DESCENDING if descending else firestore.Query.ASCENDING
        query = query.order_by(order_by, direction=direction)
    if limit is not None:
        query = query.limit(limit)
    return query


class _FirestoreTransaction(Transaction):

    def __init__(self, db, transaction):
        self._db = db
        self._transaction = transaction

    def get(self, path):
        snap = self._db.document(path).get(transaction=self._transaction)
        return snap.to_dict() if snap.exists else None

    def query(self, collection, where=(), order_by=None, descending=False, limit=None):
        query = _build_query(self._db, collection, where, order_by, descending, limit)
        return [s.to_dict() for s in query.stream(transaction=self._transaction)]

    def set(self, path, data):
        self._transaction.set(self._db.document(path), data)

    def update(self, path, updates):
        self._transaction.update(self._db.document(path), updates)

    def delete(self, path):
        self._transaction.delete(self._db.document(path))


class FirestoreRoomStore(RoomStore):
    """
    Async-friendly Firestore wrapper using run_in_executor to avoid
    blocking the event loop. Switch to AsyncClient once stable.

    Transactions use firestore.transactional, which re-runs the callback on
    contention (Aborted) and gives up with a ValueError after its attempt
    budget; that case is surfaced as StoreConflict.
    """

    def __init__(self):
        if settings.firestore_emulator_host:
            os.environ["FIRESTORE_EMULATOR_HOST"] = settings.firestore_emulator_host
        self.db = firestore.Client(project=settings.google_cloud_project or None)

    def _run(self, fn):
        """Run a sync Firestore call in the default thread pool."""
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(None, fn)

    async def _call(self, fn):
        try:
            return await self._run(fn)
        except gcp_exceptions.Aborted as exc:
            raise StoreConflict(str(exc)) from exc
        except gcp_exceptions.NotFound as exc:
            raise InvalidState(str(exc)) from exc
        except (gcp_exceptions.GoogleAPICallError, gcp_exceptions.RetryError) as exc:
            logger.error("Firestore call failed: %s", exc)
            raise StoreUnavailable(str(exc)) from exc

    # ── Documents ─────────────────────────────────────────────────────────────

    async def get(self, path):
        snap = await self._call(lambda: self.db.document(path).get())
        return snap.to_dict() if snap.exists else None

    async def set(self, path, data):
        await self._call(lambda: self.db.document(path).set(data))

    async def update(self, path, updates):
        await self._call(lambda: self.db.document(path).update(updates))

    async def delete(self, path):
        await self._call(lambda: self.db.document(path).delete())

    async def query(self, collection, where=(), order_by=None, descending=False, limit=None):
        query = _build_query(self.db, collection, where, order_by, descending, limit)
        docs = await self._call(lambda: list(query.stream()))
        return [d.to_dict() for d in docs]

    # ── Transactions ──────────────────────────────────────────────────────────

    async def run_transaction(self, fn):
        def _body():
            @firestore.transactional
            def _apply(transaction):
                return fn(_FirestoreTransaction(self.db, transaction))

            try:
                return _apply(self.db.transaction())
            except ValueError as exc:
                if "Failed to commit transaction" in str(exc):
                    raise StoreConflict(str(exc)) from exc
                raise

        return await self._call(_body)

    # ── Listeners ─────────────────────────────────────────────────────────────
    # Callbacks fire on the Firestore watch thread, not the event loop.

    def watch_document(self, path, callback):
        def _on_snapshot(docs, changes, read_time):
            snap = docs[0] if docs else None
            callback(snap.to_dict() if snap is not None and snap.exists else None)

        watch = self.db.document(path).on_snapshot(_on_snapshot)
        return watch.unsubscribe

    def watch_collection(self, collection, callback, where=(), order_by=None, descending=False, limit=None):
        def _on_snapshot(docs, changes, read_time):
            callback([d.to_dict() for d in docs])

        query = _build_query(self.db, collection, where, order_by, descending, limit)
        watch = query.on_snapshot(_on_snapshot)
        return watch.unsubscribe


_room_store: Optional[RoomStore] = None


def get_room_store() -> RoomStore:
    """Lazy singleton — initialised on first call, not at import time.
    This prevents credential errors from crashing the app before FastAPI boots.
    Use as a FastAPI dependency: Depends(get_room_store)
    """
    global _room_store
    if _room_store is None:
        if settings.store_backend == "memory":
            logger.info("Using in-process room store")
            _room_store = MemoryRoomStore()
        else:
            _room_store = FirestoreRoomStore()
    return _room_store
