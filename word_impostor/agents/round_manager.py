"""
Round Manager — pure deterministic Python, no LLM (word generation aside).

Responsibilities:
- Round creation (word pair from the word source, static fallback on outage)
- Round start: impostor assignment, room -> in_round
- Manual winner marking with score increments
- Player removal with host failover, closing or settling a running vote

Every state change is one Room Store transaction: reads first, then writes,
so concurrent hosts/clients can never observe or commit a half-applied step.
"""
import logging
import random
from typing import Any, Dict, List, Optional, Sequence

from word_impostor.agents.voting_engine import log_outcome, settle_if_everyone_voted
from word_impostor.agents.word_source import (
    FALLBACK_WORD_PAIRS, WordSource, pick_fallback_pair,
)
from word_impostor.config import settings
from word_impostor.exceptions import (
    InsufficientPlayers, InvalidState, InvalidTarget, NoWordsAvailable,
    NotHost, PlayerNotFound, SourceUnavailable,
)
from word_impostor.models.game import (
    PlayerRemoval, RoomStatus, Round, SessionStatus, VoteResolution,
    VotingSession, WordPair, WordProvenance, document_fields, to_document,
    utcnow,
)
from word_impostor.services.room_service import (
    ensure_host, ensure_open, read_active_sessions, read_active_vote,
    read_player, read_players, read_room, read_round,
)
from word_impostor.services.store import (
    RoomStore, Transaction, player_path, room_path, round_path,
    rounds_path, session_path,
)

logger = logging.getLogger(__name__)


class RoundManager:
    """
    Owns the round lifecycle and keeps Room.status consistent with it:
    waiting -> in_round -> waiting (winner marked / impostor caught) -> finished.
    """

    def __init__(
        self,
        store: RoomStore,
        word_source: Optional[WordSource] = None,
        rng: Optional[random.Random] = None,
        fallback_pairs: Sequence[WordPair] = FALLBACK_WORD_PAIRS,
    ):
        self.store = store
        self.word_source = word_source
        self.rng = rng or random.Random()
        self.fallback_pairs = list(fallback_pairs)

    # ── Word pair ─────────────────────────────────────────────────────────────

    async def _obtain_pair(self, room_id: str, source: Optional[WordSource]):
        pair: Optional[WordPair] = None
        provenance = WordProvenance.FALLBACK
        if source is not None:
            try:
                pair = await source.generate_pair(room_id)
                provenance = source.provenance
            except SourceUnavailable as exc:
                logger.warning("[%s] Word source unavailable (%s) — using fallback pairs", room_id, exc)
                pair = pick_fallback_pair(self.rng, self.fallback_pairs)
        else:
            pair = pick_fallback_pair(self.rng, self.fallback_pairs)
        if pair is None:
            raise NoWordsAvailable("No word pairs available for a new round")
        return pair, provenance

    # ── Create ────────────────────────────────────────────────────────────────

    async def create_round(
        self,
        room_id: str,
        word_source: Optional[WordSource] = None,
        word_pair: Optional[WordPair] = None,
        requester_id: Optional[str] = None,
    ) -> Round:
        """
        Create the next round with impostor_id = "pending".

        A current round that has started and is unresolved blocks creation.
        A current round that is still pending is superseded (last create wins):
        it is deleted and the new round takes over its number.
        """
        if word_pair is not None:
            pair, provenance = word_pair, WordProvenance.MANUAL
        else:
            pair, provenance = await self._obtain_pair(room_id, word_source or self.word_source)

        def _create(txn: Transaction) -> Round:
            room = read_room(txn, room_id)
            ensure_host(room, requester_id)
            ensure_open(room)

            superseded: Optional[Round] = None
            if room.current_round_id:
                doc = txn.get(round_path(room_id, room.current_round_id))
                if doc is not None:
                    current = Round(**doc)
                    if current.is_live:
                        raise InvalidState(f"Round {current.round_number} is still in progress")
                    if current.is_pending:
                        superseded = current
            latest = txn.query(rounds_path(room_id), order_by="round_number", descending=True, limit=1)

            if superseded is not None and latest and latest[0]["id"] == superseded.id:
                number = superseded.round_number
            else:
                number = (latest[0]["round_number"] if latest else 0) + 1

            new_round = Round(
                round_number=number,
                word_a=pair.word_a,
                word_b=pair.word_b,
                generated_by=provenance,
            )
            if superseded is not None:
                txn.delete(round_path(room_id, superseded.id))
            txn.set(round_path(room_id, new_round.id), to_document(new_round))
            txn.update(room_path(room_id), {"current_round_id": new_round.id})
            return new_round

        new_round = await self.store.run_transaction(_create)
        logger.info(
            "[%s] Round %d created (%s, words from %s)",
            room_id, new_round.round_number, new_round.id, provenance.value,
        )
        return new_round

    # ── Start ─────────────────────────────────────────────────────────────────

    async def start_round(self, room_id: str, round_id: str, requester_id: Optional[str] = None) -> Round:
        """
        Pick the impostor uniformly at random among connected players, stamp
        started_at and flip the room to in_round. Players disabled during the
        previous round are re-enabled.
        """

        def _start(txn: Transaction) -> Round:
            room = read_room(txn, room_id)
            ensure_host(room, requester_id)
            rnd = read_round(txn, room_id, round_id)
            players = read_players(txn, room_id)

            ensure_open(room)
            if room.current_round_id != round_id:
                raise InvalidState("Round is not the room's current round")
            if not rnd.is_pending:
                raise InvalidState("Round has already started")
            connected = [p for p in players if p.connected]
            if len(connected) < settings.min_players:
                raise InsufficientPlayers(settings.min_players, len(connected))

            impostor = self.rng.choice(connected)
            started = rnd.model_copy(update={"impostor_id": impostor.id, "started_at": utcnow()})
            txn.update(round_path(room_id, round_id), document_fields(started, "impostor_id", "started_at"))
            txn.update(room_path(room_id), {"status": RoomStatus.IN_ROUND.value})
            for p in players:
                if p.disabled:
                    txn.update(player_path(room_id, p.id), {"disabled": False})
            return started

        started = await self.store.run_transaction(_start)
        logger.info("[%s] Round %d started", room_id, started.round_number)
        return started

    # ── Winners ───────────────────────────────────────────────────────────────

    async def mark_winners(
        self,
        room_id: str,
        round_id: str,
        winner_ids: List[str],
        point_value: Optional[int] = None,
        marked_by: Optional[str] = None,
        requester_id: Optional[str] = None,
    ) -> Round:
        """
        Finalize a started round: add point_value to every named winner, stamp
        ended_at / winner_ids, cancel a vote still running for it, and put the
        room back to waiting. Player score reads and all writes share one
        transaction, so concurrent scoring cannot lose an increment.
        """
        points = settings.winner_points if point_value is None else point_value
        if points < 0:
            raise InvalidState("Point value must not be negative")
        unique_ids = list(dict.fromkeys(winner_ids))
        if not unique_ids:
            raise InvalidTarget("At least one winner is required")

        def _mark(txn: Transaction) -> Round:
            room = read_room(txn, room_id)
            ensure_host(room, requester_id)
            rnd = read_round(txn, room_id, round_id)
            winners = [read_player(txn, room_id, pid) for pid in unique_ids]
            running = [s for s in read_active_sessions(txn, room_id) if s.round_id == round_id]

            ensure_open(room)
            if rnd.started_at is None:
                raise InvalidState("Round has not started")
            if rnd.is_resolved:
                raise InvalidState("Winners were already marked for this round")

            now = utcnow()
            ended = rnd.model_copy(update={
                "ended_at": now,
                "winner_ids": unique_ids,
                "winner_marked_by": marked_by or requester_id or room.host_id,
            })
            for player in winners:
                txn.update(player_path(room_id, player.id), {"score": player.score + points})
            txn.update(
                round_path(room_id, round_id),
                document_fields(ended, "ended_at", "winner_ids", "winner_marked_by"),
            )
            for session in running:
                _cancel_session(txn, room_id, session, now)
            txn.update(room_path(room_id), {
                "status": RoomStatus.WAITING.value,
                "current_round_id": None,
            })
            return ended

        ended = await self.store.run_transaction(_mark)
        logger.info(
            "[%s] Round %d won by %s (+%d each)",
            room_id, ended.round_number, ended.winner_ids, points,
        )
        return ended

    # ── Leaving ───────────────────────────────────────────────────────────────

    async def remove_player(self, room_id: str, player_id: str, requester_id: str) -> PlayerRemoval:
        """
        Delete a player (self-leave, or the host removing someone). A departing
        host hands the role to the earliest-joined connected player; with no
        connected player left, or nobody left at all, the room is finished and
        a running vote is cancelled. Otherwise a vote in which every remaining
        eligible voter has already voted is resolved on the spot.
        Deletion, failover and vote handling commit together.
        """

        def _remove(txn: Transaction) -> PlayerRemoval:
            room = read_room(txn, room_id)
            players = read_players(txn, room_id)
            session, rnd = read_active_vote(txn, room_id)

            leaving = next((p for p in players if p.id == player_id), None)
            if leaving is None:
                raise PlayerNotFound(player_id)
            if requester_id != player_id and requester_id != room.host_id:
                raise NotHost("Only the host can remove other players")

            remaining = [p for p in players if p.id != player_id]
            result = PlayerRemoval(room_id=room_id, player_id=player_id)
            pending: Dict[str, Dict[str, Any]] = {}
            room_updates = pending.setdefault(room_path(room_id), {})

            if leaving.is_host or room.host_id == player_id:
                successor = next((p for p in remaining if p.connected), None)
                if successor is not None:
                    result.new_host_id = successor.id
                    room_updates["host_id"] = successor.id
                    pending[player_path(room_id, successor.id)] = {"is_host": True}
                else:
                    result.room_finished = True
            if not remaining:
                result.room_finished = True

            txn.delete(player_path(room_id, player_id))
            if result.room_finished:
                room_updates["status"] = RoomStatus.FINISHED.value
                room_updates["current_round_id"] = None
                if session is not None:
                    _cancel_session(txn, room_id, session, utcnow())
                    result.cancelled_session_id = session.id
            elif room.status != RoomStatus.FINISHED:
                settled = settle_if_everyone_voted(txn, room, session, rnd, remaining, pending)
                if settled is not None:
                    result.vote_outcome = settled[1]

            for path, fields in pending.items():
                if fields:
                    txn.update(path, fields)
            return result

        result = await self.store.run_transaction(_remove)
        if result.new_host_id:
            logger.info("[%s] Host %s left, host is now %s", room_id, player_id, result.new_host_id)
        elif result.room_finished:
            logger.info("[%s] Last connected player %s left, room finished", room_id, player_id)
        else:
            logger.info("[%s] Player %s left", room_id, player_id)
        if result.cancelled_session_id:
            logger.info("[%s] Voting session %s cancelled", room_id, result.cancelled_session_id)
        if result.vote_outcome is not None:
            log_outcome(room_id, result.vote_outcome, "auto-ended after a leave")
        return result


def _cancel_session(txn: Transaction, room_id: str, session: VotingSession, now) -> None:
    cancelled = session.model_copy(update={
        "status": SessionStatus.COMPLETED,
        "ended_at": now,
        "outcome": VoteResolution.CANCELLED,
    })
    txn.update(
        session_path(room_id, session.id),
        document_fields(cancelled, "status", "ended_at", "outcome"),
    )
