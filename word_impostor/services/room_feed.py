"""
Room Feed — live GameSnapshot stream for one room.

The store pushes full-state snapshots per source (room document, players,
rounds, voting sessions). Each push becomes a FeedEvent; reduce_snapshot()
folds events into a GameSnapshot, and nothing else merges partial state.

Store listeners may fire on backend threads (Firestore watch), so callbacks
only hand the event to the owning event loop; reduction happens in stream(),
which starts yielding once all four sources have delivered their first state.
"""
import asyncio
import logging
from typing import Any, AsyncIterator, List, Optional

from pydantic import BaseModel

from word_impostor.models.game import GameSnapshot, Player, Room, Round, VotingSession
from word_impostor.services.store import (
    RoomStore, Unsubscribe, players_path, room_path, rounds_path, sessions_path,
)

logger = logging.getLogger(__name__)

ROOM = "room"
PLAYERS = "players"
ROUNDS = "rounds"
SESSIONS = "sessions"
ALL_KINDS = frozenset({ROOM, PLAYERS, ROUNDS, SESSIONS})


class FeedEvent(BaseModel):
    kind: str
    payload: Any = None


def reduce_snapshot(snapshot: GameSnapshot, event: FeedEvent) -> GameSnapshot:
    """Return a new snapshot with the event's source replaced wholesale."""
    if event.kind == ROOM:
        room = Room(**event.payload) if event.payload else None
        return snapshot.model_copy(update={"room": room})

    if event.kind == PLAYERS:
        players = sorted((Player(**d) for d in event.payload or []), key=lambda p: (p.joined_at, p.id))
        return snapshot.model_copy(update={"players": players})

    if event.kind == ROUNDS:
        rounds = sorted((Round(**d) for d in event.payload or []), key=lambda r: r.round_number, reverse=True)
        return snapshot.model_copy(update={
            "rounds": rounds,
            "current_round": rounds[0] if rounds else None,
        })

    if event.kind == SESSIONS:
        sessions = sorted(
            (VotingSession(**d) for d in event.payload or []),
            key=lambda s: s.started_at,
            reverse=True,
        )
        return snapshot.model_copy(update={
            "voting_session": next((s for s in sessions if s.is_active), None),
            "last_vote": next((s for s in sessions if not s.is_active), None),
        })

    raise ValueError(f"Unknown feed event kind: {event.kind}")


class RoomFeed:
    """
    One subscription set per room. open() must be called from the event loop
    that will consume stream(); close() ends the stream.
    """

    def __init__(self, store: RoomStore, room_id: str):
        self.store = store
        self.room_id = room_id
        self.snapshot = GameSnapshot()
        self._queue: "asyncio.Queue[Optional[FeedEvent]]" = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubscribes: List[Unsubscribe] = []
        self._closed = False
        self._seen: set = set()

    def _push(self, kind: str):
        def _callback(payload: Any) -> None:
            if self._closed or self._loop is None:
                return
            event = FeedEvent(kind=kind, payload=payload)
            try:
                self._loop.call_soon_threadsafe(self._queue.put_nowait, event)
            except RuntimeError:
                # Loop already closed; the feed is going away with it
                logger.warning("[%s] Dropped %s update after loop shutdown", self.room_id, kind)
        return _callback

    def open(self) -> "RoomFeed":
        self._loop = asyncio.get_running_loop()
        rid = self.room_id
        self._unsubscribes = [
            self.store.watch_document(room_path(rid), self._push(ROOM)),
            self.store.watch_collection(players_path(rid), self._push(PLAYERS)),
            self.store.watch_collection(
                rounds_path(rid), self._push(ROUNDS), order_by="round_number", descending=True
            ),
            self.store.watch_collection(
                sessions_path(rid), self._push(SESSIONS), order_by="started_at", descending=True
            ),
        ]
        logger.info("[%s] Room feed opened", rid)
        return self

    async def stream(self) -> AsyncIterator[GameSnapshot]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            self.snapshot = reduce_snapshot(self.snapshot, event)
            self._seen.add(event.kind)
            # Nothing is yielded until every source has reported once
            if self._seen >= ALL_KINDS:
                yield self.snapshot

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for unsubscribe in self._unsubscribes:
            unsubscribe()
        self._unsubscribes = []
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._queue.put_nowait, None)
        logger.info("[%s] Room feed closed", self.room_id)
