"""
Room Store — the document-store contract the round/voting core runs on.

Documents are addressed by slash paths ("rooms/ABCD1234/players/<id>").
Every correctness-sensitive read-modify-write goes through run_transaction():
the callback receives a Transaction, performs all of its reads first, then
its writes, and the store commits the writes atomically (retrying the whole
callback on contention where the backend supports it). Callbacks are plain
synchronous functions so the same code runs inside Firestore's transaction
thread and in the in-process store.

Listeners receive full-state snapshots (a dict, or a list of dicts for a
collection) in commit order and never observe a half-applied transaction.

Backends:
  MemoryRoomStore     — in-process, for local play and tests (this module)
  FirestoreRoomStore  — Google Cloud Firestore (services/firestore_service.py)
"""
import copy
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from word_impostor.exceptions import InvalidState

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (field, op, value) — op is "==" or "!="
Filter = Tuple[str, str, Any]
DocumentCallback = Callable[[Optional[Dict[str, Any]]], None]
CollectionCallback = Callable[[List[Dict[str, Any]]], None]
Unsubscribe = Callable[[], None]


# ── Paths ─────────────────────────────────────────────────────────────────────

ROOMS = "rooms"


def room_path(room_id: str) -> str:
    return f"{ROOMS}/{room_id}"


def players_path(room_id: str) -> str:
    return f"{room_path(room_id)}/players"


def player_path(room_id: str, player_id: str) -> str:
    return f"{players_path(room_id)}/{player_id}"


def rounds_path(room_id: str) -> str:
    return f"{room_path(room_id)}/rounds"


def round_path(room_id: str, round_id: str) -> str:
    return f"{rounds_path(room_id)}/{round_id}"


def sessions_path(room_id: str) -> str:
    return f"{room_path(room_id)}/votingSessions"


def session_path(room_id: str, session_id: str) -> str:
    return f"{sessions_path(room_id)}/{session_id}"


def parent_collection(path: str) -> str:
    return path.rsplit("/", 1)[0]


# ── Contract ──────────────────────────────────────────────────────────────────

class Transaction(ABC):
    """Read-then-write view handed to a run_transaction() callback."""

    @abstractmethod
    def get(self, path: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def query(
        self,
        collection: str,
        where: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def set(self, path: str, data: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def update(self, path: str, updates: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def delete(self, path: str) -> None:
        ...


class RoomStore(ABC):

    @abstractmethod
    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def set(self, path: str, data: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def update(self, path: str, updates: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def delete(self, path: str) -> None:
        ...

    @abstractmethod
    async def query(
        self,
        collection: str,
        where: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        """Run fn atomically. Exceptions raised by fn abort with nothing written."""

    @abstractmethod
    def watch_document(self, path: str, callback: DocumentCallback) -> Unsubscribe:
        ...

    @abstractmethod
    def watch_collection(
        self,
        collection: str,
        callback: CollectionCallback,
        where: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> Unsubscribe:
        ...


# ── In-process backend ────────────────────────────────────────────────────────

def _matches(doc: Dict[str, Any], where: Sequence[Filter]) -> bool:
    for field, op, value in where:
        if op == "==":
            if doc.get(field) != value:
                return False
        elif op == "!=":
            if field not in doc or doc.get(field) == value:
                return False
        else:
            raise ValueError(f"Unsupported filter operator: {op}")
    return True


def _set_field(doc: Dict[str, Any], dotted: str, value: Any) -> None:
    """Apply a Firestore-style dotted field path ("a.b.c") to a nested dict."""
    parts = dotted.split(".")
    target = doc
    for part in parts[:-1]:
        nested = target.get(part)
        if not isinstance(nested, dict):
            nested = {}
            target[part] = nested
        target = nested
    target[parts[-1]] = value


class MemoryTransaction(Transaction):

    def __init__(self, store: "MemoryRoomStore"):
        self._store = store
        self._writes: List[Tuple[str, str, Optional[Dict[str, Any]]]] = []

    def _check_read(self) -> None:
        # Same rule Firestore enforces: every read precedes every write.
        if self._writes:
            raise RuntimeError("Transaction reads must happen before writes")

    def get(self, path: str) -> Optional[Dict[str, Any]]:
        self._check_read()
        return self._store._read(path)

    def query(self, collection, where=(), order_by=None, descending=False, limit=None):
        self._check_read()
        return self._store._select(collection, where, order_by, descending, limit)

    def set(self, path: str, data: Dict[str, Any]) -> None:
        self._writes.append(("set", path, copy.deepcopy(data)))

    def update(self, path: str, updates: Dict[str, Any]) -> None:
        self._writes.append(("update", path, copy.deepcopy(updates)))

    def delete(self, path: str) -> None:
        self._writes.append(("delete", path, None))


class _Watch:

    def __init__(self, path: str, callback: Callable, collection: bool, query: Optional[dict] = None):
        self.path = path
        self.callback = callback
        self.collection = collection
        self.query = query or {}
        self.active = True


class MemoryRoomStore(RoomStore):
    """
    Single-process store. Transactions are serialised under one re-entrant
    lock, so there are never conflicts to retry; writes are staged and swapped
    in at commit. Listeners are invoked synchronously, under the same lock,
    right after each commit, which keeps delivery in commit order.
    """

    def __init__(self):
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()
        self._watches: List[_Watch] = []

    # ── Reads ──────────────────────────────────────────────────────────────────

    def _read(self, path: str) -> Optional[Dict[str, Any]]:
        doc = self._docs.get(path)
        return copy.deepcopy(doc) if doc is not None else None

    def _select(self, collection, where=(), order_by=None, descending=False, limit=None):
        docs = [
            copy.deepcopy(doc)
            for path, doc in self._docs.items()
            if parent_collection(path) == collection and _matches(doc, where)
        ]
        if order_by:
            # Firestore drops documents that lack the ordering field
            docs = [d for d in docs if d.get(order_by) is not None]
            docs.sort(key=lambda d: d[order_by], reverse=descending)
        if limit is not None:
            docs = docs[:limit]
        return docs

    # ── Commit ─────────────────────────────────────────────────────────────────

    def _commit(self, writes) -> List[str]:
        staged = dict(self._docs)
        touched: List[str] = []
        for op, path, data in writes:
            if op == "set":
                staged[path] = data
            elif op == "update":
                if path not in staged:
                    raise InvalidState(f"Cannot update missing document {path}")
                doc = copy.deepcopy(staged[path])
                for field, value in data.items():
                    _set_field(doc, field, value)
                staged[path] = doc
            else:
                staged.pop(path, None)
            if path not in touched:
                touched.append(path)
        self._docs = staged
        return touched

    async def run_transaction(self, fn):
        with self._lock:
            txn = MemoryTransaction(self)
            result = fn(txn)
            touched = self._commit(txn._writes)
            self._notify(touched)
        return result

    async def get(self, path):
        with self._lock:
            return self._read(path)

    async def query(self, collection, where=(), order_by=None, descending=False, limit=None):
        with self._lock:
            return self._select(collection, where, order_by, descending, limit)

    async def set(self, path, data):
        await self.run_transaction(lambda txn: txn.set(path, data))

    async def update(self, path, updates):
        await self.run_transaction(lambda txn: txn.update(path, updates))

    async def delete(self, path):
        await self.run_transaction(lambda txn: txn.delete(path))

    # ── Listeners ──────────────────────────────────────────────────────────────

    def _deliver(self, watch: _Watch) -> None:
        if not watch.active:
            return
        if watch.collection:
            payload = self._select(watch.path, **watch.query)
        else:
            payload = self._read(watch.path)
        try:
            watch.callback(payload)
        except Exception:
            logger.exception("Listener on %s raised", watch.path)

    def _notify(self, touched: List[str]) -> None:
        if not touched:
            return
        changed_collections = {parent_collection(p) for p in touched}
        for watch in list(self._watches):
            if watch.collection and watch.path in changed_collections:
                self._deliver(watch)
            elif not watch.collection and watch.path in touched:
                self._deliver(watch)

    def _subscribe(self, watch: _Watch) -> Unsubscribe:
        with self._lock:
            self._watches.append(watch)
            self._deliver(watch)

        def _unsubscribe() -> None:
            with self._lock:
                watch.active = False
                if watch in self._watches:
                    self._watches.remove(watch)

        return _unsubscribe

    def watch_document(self, path, callback):
        return self._subscribe(_Watch(path, callback, collection=False))

    def watch_collection(self, collection, callback, where=(), order_by=None, descending=False, limit=None):
        query = {"where": where, "order_by": order_by, "descending": descending, "limit": limit}
        return self._subscribe(_Watch(collection, callback, collection=True, query=query))
