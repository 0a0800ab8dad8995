from pydantic import BaseModel, Field, model_validator
from typing import Optional, List, Dict, Any
from enum import Enum
from datetime import datetime, timezone
import uuid


def utcnow() -> datetime:
    """Timezone-aware UTC datetime (replaces deprecated datetime.utcnow)."""
    return datetime.now(timezone.utc)


def _short_id() -> str:
    return str(uuid.uuid4())[:8].upper()


def _uuid() -> str:
    return str(uuid.uuid4())


# Round.impostor_id before start_round assigns one
PENDING_IMPOSTOR = "pending"
# Round.winner_marked_by when a vote caught the impostor
VOTING_SYSTEM = "voting_system"


class RoomStatus(str, Enum):
    WAITING = "waiting"      # between rounds, or a round is generated but not started
    IN_ROUND = "in_round"
    FINISHED = "finished"    # everyone left


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class VoteResolution(str, Enum):
    TIE = "tie"
    IMPOSTOR_CAUGHT = "impostor_caught"
    WRONG_ACCUSATION = "wrong_accusation"
    CANCELLED = "cancelled"  # round was resolved by the host while voting


class WordProvenance(str, Enum):
    GEMINI = "gemini"
    CSV = "csv"
    FALLBACK = "fallback"
    MANUAL = "manual"


class Room(BaseModel):
    id: str = Field(default_factory=_short_id)
    name: Optional[str] = None
    host_id: str
    status: RoomStatus = RoomStatus.WAITING
    current_round_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Player(BaseModel):
    id: str = Field(default_factory=_uuid)
    username: str
    score: int = Field(default=0, ge=0)
    is_host: bool = False
    connected: bool = True
    disabled: bool = False  # barred from voting and accusation until the next round
    joined_at: datetime = Field(default_factory=utcnow)

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "score": self.score,
            "is_host": self.is_host,
            "connected": self.connected,
            "disabled": self.disabled,
        }


class WordPair(BaseModel):
    word_a: str  # formal variant, handed to the impostor
    word_b: str  # colloquial variant, handed to everyone else


class Round(BaseModel):
    id: str = Field(default_factory=_uuid)
    round_number: int
    impostor_id: str = PENDING_IMPOSTOR
    word_a: str
    word_b: str
    generated_by: WordProvenance = WordProvenance.MANUAL
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    winner_ids: Optional[List[str]] = None
    winner_marked_by: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.impostor_id == PENDING_IMPOSTOR

    @property
    def is_resolved(self) -> bool:
        return self.winner_ids is not None

    @property
    def is_live(self) -> bool:
        """Started and not yet resolved."""
        return self.started_at is not None and not self.is_resolved

    def word_for(self, player_id: str) -> Optional[str]:
        if self.is_pending:
            return None
        return self.word_a if player_id == self.impostor_id else self.word_b


class Vote(BaseModel):
    voter_id: str
    voted_for_id: str
    created_at: datetime = Field(default_factory=utcnow)


class VotingSession(BaseModel):
    id: str = Field(default_factory=_uuid)
    round_id: str
    status: SessionStatus = SessionStatus.ACTIVE
    votes: List[Vote] = []
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    # Resolution, filled in when the session completes
    winner_id: Optional[str] = None
    is_impostor: Optional[bool] = None
    is_tie: bool = False
    tied_ids: List[str] = []
    vote_counts: Dict[str, int] = {}
    outcome: Optional[VoteResolution] = None

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def has_voted(self, voter_id: str) -> bool:
        return any(v.voter_id == voter_id for v in self.votes)


class VoteOutcome(BaseModel):
    session_id: Optional[str] = None
    outcome: VoteResolution
    winner_id: Optional[str] = None
    is_impostor: bool = False
    is_tie: bool = False
    tied_ids: List[str] = []
    vote_counts: Dict[str, int] = {}
    max_votes: int = 0


class GameSnapshot(BaseModel):
    """Full read-only room state as delivered to the presentation layer."""
    room: Optional[Room] = None
    players: List[Player] = []
    current_round: Optional[Round] = None
    rounds: List[Round] = []
    voting_session: Optional[VotingSession] = None
    last_vote: Optional[VotingSession] = None

    @property
    def ready(self) -> bool:
        return self.room is not None

    def player(self, player_id: str) -> Optional[Player]:
        return next((p for p in self.players if p.id == player_id), None)

    def view_for(self, player_id: str) -> Dict[str, Any]:
        """
        Per-player view. Words and the impostor of an unresolved round are
        hidden; the player only sees their own word once the round starts.
        """
        data = self.model_dump(mode="json")
        current = self.current_round
        me = self.player(player_id)
        data["your_word"] = None
        data["is_impostor"] = False
        if current is not None and me is not None:
            data["your_word"] = current.word_for(player_id)
            data["is_impostor"] = not current.is_pending and current.impostor_id == player_id
        hidden = {r.id for r in self.rounds if not r.is_resolved}
        if current is not None and not current.is_resolved:
            hidden.add(current.id)
        for entry in [data["current_round"], *data["rounds"]]:
            if entry and entry["id"] in hidden:
                entry["word_a"] = None
                entry["word_b"] = None
                entry["impostor_id"] = None
        data["is_host"] = bool(me and me.is_host)
        return data


class PlayerRemoval(BaseModel):
    room_id: str
    player_id: str
    new_host_id: Optional[str] = None
    room_finished: bool = False
    cancelled_session_id: Optional[str] = None  # vote closed because the room finished
    vote_outcome: Optional[VoteOutcome] = None  # vote resolved because everyone left had voted


class RoomSummary(BaseModel):
    """One entry of the open-room listing."""
    id: str
    name: Optional[str] = None
    host_id: str
    status: RoomStatus
    player_count: int
    created_at: datetime


def to_document(model: BaseModel) -> Dict[str, Any]:
    """JSON-mode dump used for every stored document (datetimes as ISO strings)."""
    return model.model_dump(mode="json")


def document_fields(model: BaseModel, *names: str) -> Dict[str, Any]:
    """Partial update payload serialised exactly like to_document()."""
    return model.model_dump(mode="json", include=set(names))


# ── WebSocket message shapes ──────────────────────────────────────────────────

class WSMessage(BaseModel):
    type: str
    data: Dict[str, Any] = {}


# ── HTTP request/response models ──────────────────────────────────────────────

class CreateRoomRequest(BaseModel):
    host_name: str
    room_name: Optional[str] = None


class CreateRoomResponse(BaseModel):
    room_id: str
    host_player_id: str


class JoinRoomRequest(BaseModel):
    username: str


class JoinRoomResponse(BaseModel):
    player_id: str
    room_id: str
    rejoined: bool = False


class UsernameCheckResponse(BaseModel):
    available: bool
    can_rejoin: bool = False
    player_id: Optional[str] = None
    suggestions: List[str] = []


class CreateRoundRequest(BaseModel):
    # Both set = manual pair; both omitted = ask the configured word source
    word_a: Optional[str] = None
    word_b: Optional[str] = None

    @model_validator(mode="after")
    def _both_or_neither(self):
        if (self.word_a is None) != (self.word_b is None):
            raise ValueError("word_a and word_b must be given together")
        return self

    def manual_pair(self) -> Optional[WordPair]:
        if self.word_a is None or self.word_b is None:
            return None
        return WordPair(word_a=self.word_a.strip(), word_b=self.word_b.strip())


class MarkWinnersRequest(BaseModel):
    winner_ids: List[str]
    point_value: Optional[int] = Field(default=None, ge=0)


class CastVoteRequest(BaseModel):
    voter_id: str
    voted_for_id: str


class ConnectionRequest(BaseModel):
    connected: bool
