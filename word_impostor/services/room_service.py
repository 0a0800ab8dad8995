"""
Room Service — room/player lifecycle and typed reads over the Room Store.

Responsibilities:
- Create a room together with its host player (one transaction)
- Join: username validation, uniqueness among *connected* players, rejoin of
  a disconnected player under the same name
- Connection flag (soft delete; leaving for good is RoundManager.remove_player)
- Typed reads, one-shot GameSnapshot assembly and the open-room listing

The read_* helpers at the bottom are shared by the Round Manager and the
Voting Engine for reads inside their transactions.
"""
import asyncio
import logging
import random
from typing import List, Optional, Tuple

from word_impostor.exceptions import (
    InvalidState, NotHost, PlayerNotFound, RoomNotFound, RoundNotFound,
    SessionNotFound, UsernameTaken,
)
from word_impostor.models.game import (
    GameSnapshot, Player, Room, RoomStatus, RoomSummary, Round, SessionStatus,
    UsernameCheckResponse, VoteOutcome, VotingSession, to_document,
)
from word_impostor.services.store import (
    ROOMS, RoomStore, Transaction, player_path, players_path, room_path,
    round_path, rounds_path, session_path, sessions_path,
)
from word_impostor.utils.usernames import suggest_usernames, validate_username

logger = logging.getLogger(__name__)


class RoomService:

    def __init__(self, store: RoomStore, rng: Optional[random.Random] = None):
        self.store = store
        self.rng = rng or random.Random()

    # ── Room lifecycle ────────────────────────────────────────────────────────

    async def create_room(self, host_name: str, room_name: Optional[str] = None) -> Tuple[Room, Player]:
        username = validate_username(host_name)
        host = Player(username=username, is_host=True)
        room = Room(host_id=host.id, name=room_name)

        def _create(txn: Transaction) -> None:
            if txn.get(room_path(room.id)) is not None:
                raise InvalidState(f"Room {room.id} already exists")
            txn.set(room_path(room.id), to_document(room))
            txn.set(player_path(room.id, host.id), to_document(host))

        await self.store.run_transaction(_create)
        logger.info("[%s] Room created by host %s (%s)", room.id, host.id, username)
        return room, host

    async def join_room(self, room_id: str, username: str) -> Tuple[Player, bool]:
        """Returns (player, rejoined)."""
        name = validate_username(username)

        def _join(txn: Transaction) -> Tuple[Player, bool]:
            room = read_room(txn, room_id)
            if room.status == RoomStatus.FINISHED:
                raise InvalidState("Room has finished")
            players = read_players(txn, room_id)
            same_name = [p for p in players if p.username == name]
            if any(p.connected for p in same_name):
                raise UsernameTaken(
                    name, suggest_usernames(name, [p.username for p in players], self.rng)
                )
            if same_name:
                player = same_name[0]
                txn.update(player_path(room_id, player.id), {"connected": True})
                return player.model_copy(update={"connected": True}), True
            player = Player(username=name)
            txn.set(player_path(room_id, player.id), to_document(player))
            return player, False

        player, rejoined = await self.store.run_transaction(_join)
        logger.info(
            "[%s] Player %s (%s) %s", room_id, player.id, name,
            "rejoined" if rejoined else "joined",
        )
        return player, rejoined

    async def check_username(self, room_id: str, username: str) -> UsernameCheckResponse:
        name = validate_username(username)
        if await self.get_room(room_id) is None:
            raise RoomNotFound(room_id)
        players = await self.get_players(room_id)
        same_name = [p for p in players if p.username == name]
        if any(p.connected for p in same_name):
            return UsernameCheckResponse(
                available=False,
                suggestions=suggest_usernames(name, [p.username for p in players], self.rng),
            )
        if same_name:
            return UsernameCheckResponse(available=True, can_rejoin=True, player_id=same_name[0].id)
        return UsernameCheckResponse(available=True)

    async def set_connected(self, room_id: str, player_id: str, connected: bool) -> Player:
        """
        Flip the connection flag. When a disconnect leaves every remaining
        eligible voter with a vote in, the active session is resolved in the
        same transaction.
        """
        from word_impostor.agents.voting_engine import log_outcome, settle_if_everyone_voted

        def _set(txn: Transaction) -> Tuple[Player, Optional[VoteOutcome]]:
            room = read_room(txn, room_id)
            player = read_player(txn, room_id, player_id)
            players = read_players(txn, room_id)
            session, rnd = read_active_vote(txn, room_id)

            path = player_path(room_id, player_id)
            pending = {path: {"connected": connected}}
            settled = None
            if room.status != RoomStatus.FINISHED:
                flipped = player.model_copy(update={"connected": connected})
                after = [flipped if p.id == player_id else p for p in players]
                settled = settle_if_everyone_voted(txn, room, session, rnd, after, pending)
            for doc_path, fields in pending.items():
                txn.update(doc_path, fields)
            return player.model_copy(update=pending[path]), settled[1] if settled else None

        player, outcome = await self.store.run_transaction(_set)
        logger.info("[%s] Player %s connected=%s", room_id, player_id, connected)
        if outcome is not None:
            log_outcome(room_id, outcome, "auto-ended after a disconnect")
        return player

    # ── Reads ─────────────────────────────────────────────────────────────────

    async def list_rooms(self) -> List[RoomSummary]:
        """Open rooms, newest first: not finished and with at least one player."""
        docs = await self.store.query(ROOMS, order_by="created_at", descending=True)
        open_rooms = [Room(**d) for d in docs if d.get("status") != RoomStatus.FINISHED.value]
        members = await asyncio.gather(*(self.store.query(players_path(r.id)) for r in open_rooms))
        return [
            RoomSummary(
                id=room.id,
                name=room.name,
                host_id=room.host_id,
                status=room.status,
                player_count=len(players),
                created_at=room.created_at,
            )
            for room, players in zip(open_rooms, members)
            if players
        ]

    async def get_room(self, room_id: str) -> Optional[Room]:
        doc = await self.store.get(room_path(room_id))
        return Room(**doc) if doc else None

    async def get_player(self, room_id: str, player_id: str) -> Optional[Player]:
        doc = await self.store.get(player_path(room_id, player_id))
        return Player(**doc) if doc else None

    async def get_players(self, room_id: str) -> List[Player]:
        docs = await self.store.query(players_path(room_id), order_by="joined_at")
        return [Player(**d) for d in docs]

    async def get_round(self, room_id: str, round_id: str) -> Optional[Round]:
        doc = await self.store.get(round_path(room_id, round_id))
        return Round(**doc) if doc else None

    async def get_current_round(self, room_id: str) -> Optional[Round]:
        docs = await self.store.query(
            rounds_path(room_id), order_by="round_number", descending=True, limit=1
        )
        return Round(**docs[0]) if docs else None

    async def list_rounds(self, room_id: str) -> List[Round]:
        docs = await self.store.query(rounds_path(room_id), order_by="round_number", descending=True)
        return [Round(**d) for d in docs]

    async def get_session(self, room_id: str, session_id: str) -> Optional[VotingSession]:
        doc = await self.store.get(session_path(room_id, session_id))
        return VotingSession(**doc) if doc else None

    async def get_active_session(self, room_id: str) -> Optional[VotingSession]:
        docs = await self.store.query(
            sessions_path(room_id), where=[("status", "==", SessionStatus.ACTIVE.value)], limit=1
        )
        return VotingSession(**docs[0]) if docs else None

    async def list_sessions(self, room_id: str) -> List[VotingSession]:
        docs = await self.store.query(sessions_path(room_id), order_by="started_at", descending=True)
        return [VotingSession(**d) for d in docs]

    async def get_snapshot(self, room_id: str) -> GameSnapshot:
        room = await self.get_room(room_id)
        if room is None:
            raise RoomNotFound(room_id)
        players, rounds, sessions = await asyncio.gather(
            self.get_players(room_id),
            self.list_rounds(room_id),
            self.list_sessions(room_id),
        )
        return GameSnapshot(
            room=room,
            players=players,
            current_round=rounds[0] if rounds else None,
            rounds=rounds,
            voting_session=next((s for s in sessions if s.is_active), None),
            last_vote=next((s for s in sessions if not s.is_active), None),
        )


# ── Transaction readers ───────────────────────────────────────────────────────

def read_room(txn: Transaction, room_id: str) -> Room:
    doc = txn.get(room_path(room_id))
    if doc is None:
        raise RoomNotFound(room_id)
    return Room(**doc)


def read_player(txn: Transaction, room_id: str, player_id: str) -> Player:
    doc = txn.get(player_path(room_id, player_id))
    if doc is None:
        raise PlayerNotFound(player_id)
    return Player(**doc)


def read_players(txn: Transaction, room_id: str) -> List[Player]:
    docs = txn.query(players_path(room_id))
    return sorted((Player(**d) for d in docs), key=lambda p: (p.joined_at, p.id))


def read_round(txn: Transaction, room_id: str, round_id: str) -> Round:
    doc = txn.get(round_path(room_id, round_id))
    if doc is None:
        raise RoundNotFound(round_id)
    return Round(**doc)


def read_session(txn: Transaction, room_id: str, session_id: str) -> VotingSession:
    doc = txn.get(session_path(room_id, session_id))
    if doc is None:
        raise SessionNotFound(session_id)
    return VotingSession(**doc)


def read_active_sessions(txn: Transaction, room_id: str) -> List[VotingSession]:
    docs = txn.query(sessions_path(room_id), where=[("status", "==", SessionStatus.ACTIVE.value)])
    return [VotingSession(**d) for d in docs]


def ensure_host(room: Room, requester_id: Optional[str]) -> None:
    """requester_id=None skips the check (internal callers)."""
    if requester_id is not None and requester_id != room.host_id:
        raise NotHost("Only the host can do that")


def read_active_vote(txn: Transaction, room_id: str) -> Tuple[Optional[VotingSession], Optional[Round]]:
    """The room's active session (at most one) and its round, or (None, None)."""
    active = read_active_sessions(txn, room_id)
    if not active:
        return None, None
    session = active[0]
    doc = txn.get(round_path(room_id, session.round_id))
    return session, Round(**doc) if doc else None


def ensure_open(room: Room) -> None:
    if room.status == RoomStatus.FINISHED:
        raise InvalidState("Room has finished")
