"""
WebSocket Hub — live room views.

URL: /ws/{room_id}?playerId={player_id}

Connection flow:
  1. Validate room + player exist (close 4404 / 4403 otherwise)
  2. Accept, register, and make sure the room has a running RoomFeed
  3. Mark the player connected
  4. Send a private "snapshot" with the player's view to this socket
  5. Message loop (_handle_message dispatcher)
  6. On disconnect: unregister this socket; the player is marked
     disconnected once their last socket is gone, and the last socket of a
     room closes its feed

Every committed change in the room reaches each socket as
  {"type": "snapshot", "data": GameSnapshot.view_for(player_id)}

Client → server message types:
  ping  — keep-alive heartbeat → responds with "pong"
  vote  — {"session_id", "voted_for_id"}; the voter is the socket's player
"""
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from word_impostor.agents.voting_engine import VotingEngine
from word_impostor.exceptions import GameError
from word_impostor.models.game import GameSnapshot, to_document
from word_impostor.routers.room_router import get_room_service, get_voting_engine
from word_impostor.services.firestore_service import get_room_store
from word_impostor.services.room_feed import RoomFeed
from word_impostor.services.room_service import RoomService
from word_impostor.services.store import RoomStore

logger = logging.getLogger(__name__)

router = APIRouter()


class ConnectionManager:
    """
    Tracks active WebSocket connections per room and owns one RoomFeed per
    room with at least one socket. A player may hold several sockets (one per
    tab); they count as connected until the last one closes. Runs on a single
    event loop.
    """

    def __init__(self):
        # {room_id: {player_id: [WebSocket, ...]}}
        self._rooms: Dict[str, Dict[str, List[WebSocket]]] = {}
        self._feeds: Dict[str, RoomFeed] = {}
        self._pumps: Dict[str, asyncio.Task] = {}

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def connect(self, room_id: str, player_id: str, ws: WebSocket, store: RoomStore) -> None:
        await ws.accept()
        self._rooms.setdefault(room_id, {}).setdefault(player_id, []).append(ws)
        if room_id not in self._feeds:
            feed = RoomFeed(store, room_id).open()
            self._feeds[room_id] = feed
            self._pumps[room_id] = asyncio.create_task(self._pump(room_id, feed))
        logger.debug("[%s] %s connected (%d total)", room_id, player_id, self.count(room_id))

    def disconnect(self, room_id: str, player_id: str, ws: Optional[WebSocket] = None) -> None:
        """Drop one socket, or every socket of the player when ws is None."""
        room_conns = self._rooms.get(room_id, {})
        # Identity, not ==: WebSocket is a Mapping and compares by scope
        sockets = [s for s in room_conns.get(player_id, []) if ws is not None and s is not ws]
        if sockets:
            room_conns[player_id] = sockets
        else:
            room_conns.pop(player_id, None)
        if not room_conns:
            self._rooms.pop(room_id, None)
            feed = self._feeds.pop(room_id, None)
            if feed is not None:
                feed.close()
            self._pumps.pop(room_id, None)

    def is_connected(self, room_id: str, player_id: str) -> bool:
        return bool(self._rooms.get(room_id, {}).get(player_id))

    def count(self, room_id: str) -> int:
        return sum(len(sockets) for sockets in self._rooms.get(room_id, {}).values())

    # ── Sending ────────────────────────────────────────────────────────────────

    async def send_socket(self, room_id: str, player_id: str, ws: WebSocket, message: Dict[str, Any]) -> None:
        """Send to one socket; a failed send drops only that socket."""
        try:
            await ws.send_json(message)
        except Exception as exc:
            logger.warning("[%s] send to %s failed: %s", room_id, player_id, exc)
            self.disconnect(room_id, player_id, ws)

    async def send_to(self, room_id: str, player_id: str, message: Dict[str, Any]) -> None:
        """Send a private message to every socket of a single player."""
        for ws in list(self._rooms.get(room_id, {}).get(player_id, [])):
            await self.send_socket(room_id, player_id, ws, message)

    async def send_snapshot(self, room_id: str, player_id: str, snapshot: GameSnapshot) -> None:
        await self.send_to(room_id, player_id, {
            "type": "snapshot",
            "data": snapshot.view_for(player_id),
        })

    async def broadcast_snapshot(self, room_id: str, snapshot: GameSnapshot) -> None:
        """Each player gets their own view; words are never broadcast verbatim."""
        for pid in list(self._rooms.get(room_id, {})):
            await self.send_snapshot(room_id, pid, snapshot)

    async def _pump(self, room_id: str, feed: RoomFeed) -> None:
        try:
            async for snapshot in feed.stream():
                if snapshot.ready:
                    await self.broadcast_snapshot(room_id, snapshot)
        except Exception:
            logger.exception("[%s] Room feed pump crashed", room_id)


# Global singleton shared by all connections
manager = ConnectionManager()


# ── WebSocket endpoint ────────────────────────────────────────────────────────

@router.websocket("/ws/{room_id}")
async def websocket_endpoint(
    ws: WebSocket,
    room_id: str,
    playerId: str = Query(..., description="Player id from the join response"),
    store: RoomStore = Depends(get_room_store),
    rooms: RoomService = Depends(get_room_service),
    voting: VotingEngine = Depends(get_voting_engine),
):
    # ── Validate room and player ───────────────────────────────────────────────
    if await rooms.get_room(room_id) is None:
        await ws.close(code=4404, reason="Room not found")
        return
    if await rooms.get_player(room_id, playerId) is None:
        await ws.close(code=4403, reason="Player not found in this room")
        return

    # ── Accept and register ────────────────────────────────────────────────────
    await manager.connect(room_id, playerId, ws, store)
    try:
        await rooms.set_connected(room_id, playerId, True)
        snapshot = await rooms.get_snapshot(room_id)
        await manager.send_socket(room_id, playerId, ws, {
            "type": "snapshot",
            "data": snapshot.view_for(playerId),
        })

        # ── Message loop ───────────────────────────────────────────────────────
        while True:
            raw = await ws.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await manager.send_socket(room_id, playerId, ws, {
                    "type": "error",
                    "message": "Invalid JSON",
                    "code": "PARSE_ERROR",
                })
                continue
            if not isinstance(data, dict):
                data = {}
            msg_type = data.get("type", "")
            # Client sends { type, data: { ... } }; unwrap inner payload for handlers
            inner = data.get("data") if isinstance(data.get("data"), dict) else {}
            try:
                await _handle_message(room_id, playerId, ws, msg_type, inner, voting)
            except GameError as exc:
                await manager.send_socket(room_id, playerId, ws, {
                    "type": "error",
                    "message": exc.message,
                    "code": exc.code,
                })
            except Exception:
                logger.exception("[%s] Error handling %r from %s", room_id, msg_type, playerId)
                await manager.send_socket(room_id, playerId, ws, {
                    "type": "error",
                    "message": "Internal error",
                    "code": "INTERNAL_ERROR",
                })

    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(room_id, playerId, ws)
        # Another tab of the same player may still be open
        if not manager.is_connected(room_id, playerId):
            try:
                await rooms.set_connected(room_id, playerId, False)
            except GameError as exc:
                # Player already removed from the room
                logger.debug("[%s] Skipped disconnect flag for %s: %s", room_id, playerId, exc)


async def _handle_message(
    room_id: str,
    player_id: str,
    ws: WebSocket,
    msg_type: str,
    data: Dict[str, Any],
    voting: VotingEngine,
) -> None:
    if msg_type == "ping":
        await manager.send_socket(room_id, player_id, ws, {"type": "pong"})

    elif msg_type == "vote":
        session_id = data.get("session_id")
        voted_for_id = data.get("voted_for_id")
        if not session_id or not voted_for_id:
            await manager.send_socket(room_id, player_id, ws, {
                "type": "error",
                "message": "vote requires session_id and voted_for_id",
                "code": "BAD_MESSAGE",
            })
            return
        _, outcome = await voting.cast_vote(room_id, session_id, player_id, voted_for_id)
        await manager.send_socket(room_id, player_id, ws, {
            "type": "vote_recorded",
            "session_id": session_id,
            "outcome": to_document(outcome) if outcome else None,
        })

    else:
        await manager.send_socket(room_id, player_id, ws, {
            "type": "error",
            "message": f"Unknown message type: {msg_type}",
            "code": "UNKNOWN_TYPE",
        })
