"""
Room HTTP endpoints.

Routes:
  GET    /api/rooms                                         — Open rooms, newest first
  POST   /api/rooms                                         — Create room + host player
  POST   /api/rooms/{room_id}/join                          — Join (or rejoin by name)
  GET    /api/rooms/{room_id}                               — Snapshot view (?player_id= for your word)
  GET    /api/rooms/{room_id}/username-check                — Is a name free / rejoinable
  POST   /api/rooms/{room_id}/rounds                        — Host creates the next round
  POST   /api/rooms/{room_id}/rounds/{round_id}/start       — Host starts it (impostor assigned)
  POST   /api/rooms/{room_id}/rounds/{round_id}/winners     — Host marks winners, scores added
  POST   /api/rooms/{room_id}/votes                         — Host opens a voting session
  POST   /api/rooms/{room_id}/votes/{session_id}            — Cast a vote
  POST   /api/rooms/{room_id}/votes/{session_id}/end        — Host ends the vote, outcome applied
  POST   /api/rooms/{room_id}/new-round                     — Host resets the room for the next round
  POST   /api/rooms/{room_id}/players/{player_id}/connection — Connection flag
  DELETE /api/rooms/{room_id}/players/{player_id}           — Leave / host removes a player

Host-only routes take ?requester_id=. Failures are GameError subclasses,
rendered by the handler in main.py as {"detail", "code"}.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from word_impostor.agents.round_manager import RoundManager
from word_impostor.agents.voting_engine import VotingEngine
from word_impostor.agents.word_source import WordSource, get_word_source
from word_impostor.models.game import (
    CastVoteRequest, ConnectionRequest, CreateRoomRequest, CreateRoomResponse,
    CreateRoundRequest, JoinRoomRequest, JoinRoomResponse, MarkWinnersRequest,
    RoomSummary, UsernameCheckResponse, to_document,
)
from word_impostor.services.firestore_service import get_room_store
from word_impostor.services.room_service import RoomService
from word_impostor.services.store import RoomStore

router = APIRouter(tags=["rooms"])


# ── Dependencies ──────────────────────────────────────────────────────────────

def get_room_service(store: RoomStore = Depends(get_room_store)) -> RoomService:
    return RoomService(store)


def get_round_manager(
    store: RoomStore = Depends(get_room_store),
    word_source: WordSource = Depends(get_word_source),
) -> RoundManager:
    return RoundManager(store, word_source=word_source)


def get_voting_engine(store: RoomStore = Depends(get_room_store)) -> VotingEngine:
    return VotingEngine(store)


# ── Rooms & players ───────────────────────────────────────────────────────────

@router.get("/rooms", response_model=List[RoomSummary])
async def list_rooms(rooms: RoomService = Depends(get_room_service)):
    """Rooms that are not finished and still have players, with their player count."""
    return await rooms.list_rooms()


@router.post("/rooms", response_model=CreateRoomResponse, status_code=201)
async def create_room(body: CreateRoomRequest, rooms: RoomService = Depends(get_room_service)):
    """Create a room and register the host as its first player."""
    room, host = await rooms.create_room(body.host_name, body.room_name)
    return CreateRoomResponse(room_id=room.id, host_player_id=host.id)


@router.post("/rooms/{room_id}/join", response_model=JoinRoomResponse)
async def join_room(room_id: str, body: JoinRoomRequest, rooms: RoomService = Depends(get_room_service)):
    """
    Join by username. A connected player already using the name makes this a
    409 with suggestions; a disconnected one is taken over (rejoin).
    """
    player, rejoined = await rooms.join_room(room_id, body.username)
    return JoinRoomResponse(player_id=player.id, room_id=room_id, rejoined=rejoined)


@router.get("/rooms/{room_id}")
async def get_room(
    room_id: str,
    player_id: Optional[str] = Query(None, description="Caller's player id, reveals their own word"),
    rooms: RoomService = Depends(get_room_service),
):
    snapshot = await rooms.get_snapshot(room_id)
    return snapshot.view_for(player_id or "")


@router.get("/rooms/{room_id}/username-check", response_model=UsernameCheckResponse)
async def username_check(room_id: str, username: str, rooms: RoomService = Depends(get_room_service)):
    return await rooms.check_username(room_id, username)


@router.post("/rooms/{room_id}/players/{player_id}/connection")
async def set_connection(
    room_id: str,
    player_id: str,
    body: ConnectionRequest,
    rooms: RoomService = Depends(get_room_service),
):
    player = await rooms.set_connected(room_id, player_id, body.connected)
    return player.to_public()


@router.delete("/rooms/{room_id}/players/{player_id}")
async def remove_player(
    room_id: str,
    player_id: str,
    requester_id: str = Query(..., description="The leaving player, or the host"),
    rounds: RoundManager = Depends(get_round_manager),
):
    result = await rounds.remove_player(room_id, player_id, requester_id)
    return result.model_dump(mode="json")


# ── Rounds ────────────────────────────────────────────────────────────────────

@router.post("/rooms/{room_id}/rounds", status_code=201)
async def create_round(
    room_id: str,
    body: Optional[CreateRoundRequest] = None,
    requester_id: str = Query(...),
    rounds: RoundManager = Depends(get_round_manager),
):
    """Words stay hidden here; each player receives theirs through the room view."""
    pair = body.manual_pair() if body else None
    rnd = await rounds.create_round(room_id, word_pair=pair, requester_id=requester_id)
    return {
        "round_id": rnd.id,
        "round_number": rnd.round_number,
        "generated_by": rnd.generated_by.value,
    }


@router.post("/rooms/{room_id}/rounds/{round_id}/start")
async def start_round(
    room_id: str,
    round_id: str,
    requester_id: str = Query(...),
    rounds: RoundManager = Depends(get_round_manager),
):
    rnd = await rounds.start_round(room_id, round_id, requester_id=requester_id)
    return {
        "round_id": rnd.id,
        "round_number": rnd.round_number,
        "started_at": rnd.started_at.isoformat(),
    }


@router.post("/rooms/{room_id}/rounds/{round_id}/winners")
async def mark_winners(
    room_id: str,
    round_id: str,
    body: MarkWinnersRequest,
    requester_id: str = Query(...),
    rounds: RoundManager = Depends(get_round_manager),
):
    rnd = await rounds.mark_winners(
        room_id, round_id, body.winner_ids,
        point_value=body.point_value,
        requester_id=requester_id,
    )
    return to_document(rnd)


@router.post("/rooms/{room_id}/new-round")
async def start_new_round(
    room_id: str,
    requester_id: str = Query(...),
    voting: VotingEngine = Depends(get_voting_engine),
):
    room = await voting.start_new_round(room_id, requester_id=requester_id)
    return to_document(room)


# ── Voting ────────────────────────────────────────────────────────────────────

@router.post("/rooms/{room_id}/votes", status_code=201)
async def start_voting_session(
    room_id: str,
    requester_id: str = Query(...),
    round_id: Optional[str] = Query(None, description="Defaults to the room's current round"),
    voting: VotingEngine = Depends(get_voting_engine),
):
    session = await voting.start_voting_session(room_id, round_id=round_id, requester_id=requester_id)
    return to_document(session)


@router.post("/rooms/{room_id}/votes/{session_id}")
async def cast_vote(
    room_id: str,
    session_id: str,
    body: CastVoteRequest,
    voting: VotingEngine = Depends(get_voting_engine),
):
    """Returns the session and, when this vote completed it, the outcome."""
    session, outcome = await voting.cast_vote(room_id, session_id, body.voter_id, body.voted_for_id)
    return {
        "session": to_document(session),
        "outcome": to_document(outcome) if outcome else None,
    }


@router.post("/rooms/{room_id}/votes/{session_id}/end")
async def end_voting_session(
    room_id: str,
    session_id: str,
    requester_id: str = Query(...),
    voting: VotingEngine = Depends(get_voting_engine),
):
    outcome = await voting.end_voting_session(room_id, session_id, requester_id=requester_id)
    return to_document(outcome)
