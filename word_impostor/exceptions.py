"""
Typed failures raised by the round/voting core.

Every command either commits one consistent state or raises one of these.
The HTTP layer maps them through a single exception handler using
``status_code`` and ``code``; the WebSocket hub forwards ``code``/``message``.
"""
from typing import List, Optional


class GameError(Exception):
    code = "GAME_ERROR"
    status_code = 400
    retriable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self):
        return {"detail": self.message, "code": self.code}


# ── Not found ─────────────────────────────────────────────────────────────────

class NotFoundError(GameError):
    code = "NOT_FOUND"
    status_code = 404


class RoomNotFound(NotFoundError):
    code = "ROOM_NOT_FOUND"

    def __init__(self, room_id: str):
        super().__init__(f"Room {room_id} not found")


class PlayerNotFound(NotFoundError):
    code = "PLAYER_NOT_FOUND"

    def __init__(self, player_id: str):
        super().__init__(f"Player {player_id} not found")


class RoundNotFound(NotFoundError):
    code = "ROUND_NOT_FOUND"

    def __init__(self, round_id: str):
        super().__init__(f"Round {round_id} not found")


class SessionNotFound(NotFoundError):
    code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str):
        super().__init__(f"Voting session {session_id} not found")


# ── Validation (caller-visible, never retried) ───────────────────────────────

class InvalidState(GameError):
    """Command issued in the wrong room/round/session state."""
    code = "INVALID_STATE"
    status_code = 409


class NotHost(GameError):
    code = "NOT_HOST"
    status_code = 403


class InsufficientPlayers(GameError):
    code = "INSUFFICIENT_PLAYERS"

    def __init__(self, required: int, actual: int):
        super().__init__(f"Need at least {required} connected players; got {actual}")
        self.required = required
        self.actual = actual


class DuplicateVote(GameError):
    code = "VOTE_ALREADY_CAST"
    status_code = 409

    def __init__(self, voter_id: str):
        super().__init__(f"Player {voter_id} has already voted in this session")


class SelfVote(GameError):
    code = "SELF_VOTE"

    def __init__(self):
        super().__init__("Players cannot vote for themselves")


class InvalidTarget(GameError):
    code = "INVALID_TARGET"


class VoterDisabled(GameError):
    code = "PLAYER_DISABLED"
    status_code = 403

    def __init__(self, voter_id: str):
        super().__init__(f"Player {voter_id} is disabled until the next round")


class InvalidUsername(GameError):
    code = "INVALID_USERNAME"


class UsernameTaken(GameError):
    code = "USERNAME_TAKEN"
    status_code = 409

    def __init__(self, username: str, suggestions: Optional[List[str]] = None):
        super().__init__(f"Username '{username}' is already taken in this room")
        self.suggestions = suggestions or []

    def to_dict(self):
        data = super().to_dict()
        data["suggestions"] = self.suggestions
        return data


class NoWordsAvailable(GameError):
    code = "NO_WORDS_AVAILABLE"
    status_code = 503


# ── Store / collaborator failures ────────────────────────────────────────────

class StoreConflict(GameError):
    """The store gave up on a contended transaction; safe to retry the command."""
    code = "STORE_CONFLICT"
    status_code = 409
    retriable = True


class StoreUnavailable(GameError):
    code = "STORE_UNAVAILABLE"
    status_code = 503
    retriable = True


class SourceUnavailable(GameError):
    code = "WORD_SOURCE_UNAVAILABLE"
    status_code = 503
    retriable = True
