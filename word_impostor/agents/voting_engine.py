"""
Voting Engine — accusation phase of a round.

Responsibilities:
- Voting session lifecycle (start, cast, end, auto-end when everyone voted)
- Vote tallying and tie handling
- Outcome side effects: impostor caught -> round ends, room back to waiting;
  wrong accusation -> accused player disabled, round continues;
  tie -> nothing changes but the session itself.
- Start-new-round reset (room -> waiting, every player re-enabled)

tally_votes() is the only tally algorithm. Explicit end, auto-end on the last
vote, and auto-end after a leave or disconnect all go through
resolve_session(), inside the same transaction as the triggering command.
A finished room accepts no voting command.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from word_impostor.config import settings
from word_impostor.exceptions import (
    DuplicateVote, InsufficientPlayers, InvalidState, InvalidTarget,
    PlayerNotFound, SelfVote, VoterDisabled,
)
from word_impostor.models.game import (
    VOTING_SYSTEM, Player, Room, RoomStatus, Round, SessionStatus, Vote,
    VoteOutcome, VoteResolution, VotingSession, document_fields, to_document,
    utcnow,
)
from word_impostor.services.room_service import (
    ensure_host, ensure_open, read_active_sessions, read_players, read_room,
    read_round, read_session,
)
from word_impostor.services.store import (
    RoomStore, Transaction, player_path, room_path, round_path, session_path,
)

logger = logging.getLogger(__name__)


def tally_votes(
    votes: Sequence[Vote], player_ids: Sequence[str], impostor_id: Optional[str]
) -> VoteOutcome:
    """
    Count votes per player and resolve the session.

    Returns:
        TIE               two or more players share the top count, or nobody
                          received a vote at all; winner_id is None
        IMPOSTOR_CAUGHT   unique leader is the round's impostor
        WRONG_ACCUSATION  unique leader is anyone else

    Votes for ids not in player_ids (players who left) are ignored.
    """
    counts = {pid: 0 for pid in player_ids}
    for vote in votes:
        if vote.voted_for_id in counts:
            counts[vote.voted_for_id] += 1

    max_votes = max(counts.values(), default=0)
    leaders = [pid for pid, count in counts.items() if count == max_votes]

    if len(leaders) != 1 or max_votes == 0:
        return VoteOutcome(
            outcome=VoteResolution.TIE,
            is_tie=True,
            tied_ids=leaders,
            vote_counts=counts,
            max_votes=max_votes,
        )

    winner_id = leaders[0]
    is_impostor = winner_id == impostor_id
    return VoteOutcome(
        outcome=VoteResolution.IMPOSTOR_CAUGHT if is_impostor else VoteResolution.WRONG_ACCUSATION,
        winner_id=winner_id,
        is_impostor=is_impostor,
        vote_counts=counts,
        max_votes=max_votes,
    )


def eligible_voters(players: Sequence[Player]) -> List[Player]:
    return [p for p in players if p.connected and not p.disabled]


# ── Resolution (runs inside the caller's transaction) ────────────────────────

Pending = Dict[str, Dict[str, Any]]


def resolve_session(
    txn: Transaction,
    room: Room,
    session: VotingSession,
    rnd: Round,
    players: Sequence[Player],
    pending: Optional[Pending] = None,
) -> Tuple[VotingSession, VoteOutcome]:
    """
    Write-only half of a session resolution; every read is done by the caller.

    Session and round writes go straight to txn. Room and player updates are
    merged into `pending` ({path: fields}) when the caller still has its own
    writes for those documents, otherwise they are written here.
    """
    outcome = tally_votes(session.votes, [p.id for p in players], rnd.impostor_id)
    outcome = outcome.model_copy(update={"session_id": session.id})
    now = utcnow()
    writes: Pending = {} if pending is None else pending

    completed = session.model_copy(update={
        "status": SessionStatus.COMPLETED,
        "ended_at": now,
        "winner_id": outcome.winner_id,
        "is_impostor": outcome.is_impostor,
        "is_tie": outcome.is_tie,
        "tied_ids": outcome.tied_ids,
        "vote_counts": outcome.vote_counts,
        "outcome": outcome.outcome,
    })
    txn.update(
        session_path(room.id, session.id),
        document_fields(
            completed, "votes", "status", "ended_at", "winner_id", "is_impostor",
            "is_tie", "tied_ids", "vote_counts", "outcome",
        ),
    )

    if outcome.outcome == VoteResolution.IMPOSTOR_CAUGHT:
        ended = rnd.model_copy(update={
            "ended_at": now,
            "winner_ids": [outcome.winner_id],
            "winner_marked_by": VOTING_SYSTEM,
        })
        txn.update(
            round_path(room.id, rnd.id),
            document_fields(ended, "ended_at", "winner_ids", "winner_marked_by"),
        )
        writes.setdefault(room_path(room.id), {}).update({
            "status": RoomStatus.WAITING.value,
            "current_round_id": None,
        })
    elif outcome.outcome == VoteResolution.WRONG_ACCUSATION:
        writes.setdefault(player_path(room.id, outcome.winner_id), {})["disabled"] = True

    if pending is None:
        for path, fields in writes.items():
            txn.update(path, fields)
    return completed, outcome


def everyone_voted(session: VotingSession, players: Sequence[Player]) -> bool:
    """True once every eligible voter has a vote in the session."""
    eligible = eligible_voters(players)
    voted = {v.voter_id for v in session.votes}
    return bool(eligible) and all(p.id in voted for p in eligible)


def settle_if_everyone_voted(
    txn: Transaction,
    room: Room,
    session: Optional[VotingSession],
    rnd: Optional[Round],
    players: Sequence[Player],
    pending: Optional[Pending] = None,
) -> Optional[Tuple[VotingSession, VoteOutcome]]:
    """
    Auto-end check for commands that shrink the electorate (leave, disconnect).
    `players` must already reflect the command's own change.
    """
    if session is None or rnd is None or not session.is_active or rnd.is_resolved:
        return None
    if not everyone_voted(session, players):
        return None
    return resolve_session(txn, room, session, rnd, players, pending)


def log_outcome(room_id: str, outcome: VoteOutcome, how: str) -> None:
    if outcome.is_tie:
        logger.info("[%s] Vote %s in a tie between %s, round continues", room_id, how, outcome.tied_ids)
    elif outcome.is_impostor:
        logger.info("[%s] Vote %s: impostor %s caught", room_id, how, outcome.winner_id)
    else:
        logger.info("[%s] Vote %s: %s wrongly accused and disabled", room_id, how, outcome.winner_id)


class VotingEngine:

    def __init__(self, store: RoomStore):
        self.store = store

    # ── Session start ─────────────────────────────────────────────────────────

    async def start_voting_session(
        self, room_id: str, round_id: Optional[str] = None, requester_id: Optional[str] = None
    ) -> VotingSession:
        def _start(txn: Transaction) -> VotingSession:
            room = read_room(txn, room_id)
            ensure_host(room, requester_id)
            ensure_open(room)
            target_id = round_id or room.current_round_id
            if not target_id:
                raise InvalidState("No round in progress")
            rnd = read_round(txn, room_id, target_id)
            active = read_active_sessions(txn, room_id)
            players = read_players(txn, room_id)

            if rnd.started_at is None:
                raise InvalidState("Round has not started")
            if rnd.is_resolved:
                raise InvalidState("Round is already resolved")
            if active:
                raise InvalidState("A voting session is already active")
            connected = [p for p in players if p.connected]
            if len(connected) < settings.min_players:
                raise InsufficientPlayers(settings.min_players, len(connected))

            session = VotingSession(round_id=rnd.id)
            txn.set(session_path(room_id, session.id), to_document(session))
            return session

        session = await self.store.run_transaction(_start)
        logger.info("[%s] Voting session %s started for round %s", room_id, session.id, session.round_id)
        return session

    # ── Casting ───────────────────────────────────────────────────────────────

    async def cast_vote(
        self, room_id: str, session_id: str, voter_id: str, voted_for_id: str
    ) -> Tuple[VotingSession, Optional[VoteOutcome]]:
        """
        Record one vote (first vote wins; a second one is DuplicateVote).
        When every eligible voter has voted, the session is resolved in the
        same transaction and the completed session is returned with the outcome.
        """

        def _cast(txn: Transaction) -> Tuple[VotingSession, Optional[VoteOutcome]]:
            room = read_room(txn, room_id)
            session = read_session(txn, room_id, session_id)
            rnd = read_round(txn, room_id, session.round_id)
            players = read_players(txn, room_id)

            ensure_open(room)
            if not session.is_active:
                raise InvalidState("Voting session is not active")
            by_id = {p.id: p for p in players}
            voter = by_id.get(voter_id)
            if voter is None:
                raise PlayerNotFound(voter_id)
            if voter.disabled:
                raise VoterDisabled(voter_id)
            if session.has_voted(voter_id):
                raise DuplicateVote(voter_id)
            if voter_id == voted_for_id:
                raise SelfVote()
            target = by_id.get(voted_for_id)
            if target is None:
                raise InvalidTarget(f"Player {voted_for_id} is not in this room")
            if target.disabled:
                raise InvalidTarget(f"Player {voted_for_id} is disabled and cannot be accused")

            updated = session.model_copy(update={
                "votes": [*session.votes, Vote(voter_id=voter_id, voted_for_id=voted_for_id)],
            })
            if everyone_voted(updated, players):
                return resolve_session(txn, room, updated, rnd, players)

            txn.update(session_path(room_id, session_id), document_fields(updated, "votes"))
            return updated, None

        session, outcome = await self.store.run_transaction(_cast)
        logger.info("[%s] Vote cast in session %s (%d so far)", room_id, session_id, len(session.votes))
        if outcome is not None:
            log_outcome(room_id, outcome, "auto-ended")
        return session, outcome

    # ── Ending ────────────────────────────────────────────────────────────────

    async def end_voting_session(
        self, room_id: str, session_id: str, requester_id: Optional[str] = None
    ) -> VoteOutcome:
        def _end(txn: Transaction) -> VoteOutcome:
            room = read_room(txn, room_id)
            ensure_host(room, requester_id)
            session = read_session(txn, room_id, session_id)
            rnd = read_round(txn, room_id, session.round_id)
            players = read_players(txn, room_id)

            ensure_open(room)
            if not session.is_active:
                raise InvalidState("Voting session has already ended")
            if rnd.is_resolved:
                raise InvalidState("Round is already resolved")
            _, outcome = resolve_session(txn, room, session, rnd, players)
            return outcome

        outcome = await self.store.run_transaction(_end)
        log_outcome(room_id, outcome, "ended")
        return outcome

    # ── Next round ────────────────────────────────────────────────────────────

    async def start_new_round(self, room_id: str, requester_id: Optional[str] = None) -> Room:
        """
        Reset the room for the next round: waiting, no current round, every
        disabled player re-enabled. A generated-but-unstarted round is
        discarded; a live round blocks the reset.
        """

        def _reset(txn: Transaction) -> Room:
            room = read_room(txn, room_id)
            ensure_host(room, requester_id)
            current: Optional[Round] = None
            if room.current_round_id:
                doc = txn.get(round_path(room_id, room.current_round_id))
                current = Round(**doc) if doc else None
            players = read_players(txn, room_id)

            if room.status == RoomStatus.FINISHED:
                raise InvalidState("Room has finished")
            if current is not None and current.is_live:
                raise InvalidState(f"Round {current.round_number} is still in progress")

            if current is not None and current.is_pending:
                txn.delete(round_path(room_id, current.id))
            txn.update(room_path(room_id), {
                "status": RoomStatus.WAITING.value,
                "current_round_id": None,
            })
            for p in players:
                if p.disabled:
                    txn.update(player_path(room_id, p.id), {"disabled": False})
            return room.model_copy(update={"status": RoomStatus.WAITING, "current_round_id": None})

        room = await self.store.run_transaction(_reset)
        logger.info("[%s] Room reset for a new round", room_id)
        return room
