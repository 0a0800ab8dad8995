"""
HTTP and WebSocket surface tests against MemoryRoomStore.
"""
import asyncio

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from word_impostor.routers.ws_router import ConnectionManager
from word_impostor.services.store import round_path


async def _room_with_players(c, *names):
    resp = await c.post("/api/rooms", json={"host_name": names[0]})
    assert resp.status_code == 201
    body = resp.json()
    room_id, ids = body["room_id"], [body["host_player_id"]]
    for name in names[1:]:
        resp = await c.post(f"/api/rooms/{room_id}/join", json={"username": name})
        assert resp.status_code == 200
        ids.append(resp.json()["player_id"])
    return room_id, ids


async def _started_round(c, room_id, host_id):
    resp = await c.post(f"/api/rooms/{room_id}/rounds", params={"requester_id": host_id})
    assert resp.status_code == 201
    round_id = resp.json()["round_id"]
    resp = await c.post(f"/api/rooms/{room_id}/rounds/{round_id}/start", params={"requester_id": host_id})
    assert resp.status_code == 200
    return round_id


class TestRoomsApi:

    @pytest.mark.asyncio
    async def test_health(self, client):
        async with client as c:
            resp = await c.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_create_join_and_view(self, client):
        async with client as c:
            room_id, (host_id, bob_id) = await _room_with_players(c, "alice", "bob")
            resp = await c.get(f"/api/rooms/{room_id}", params={"player_id": host_id})
        assert resp.status_code == 200
        view = resp.json()
        assert view["room"]["host_id"] == host_id
        assert view["is_host"] is True
        assert {p["id"] for p in view["players"]} == {host_id, bob_id}

    @pytest.mark.asyncio
    async def test_list_open_rooms(self, client):
        async with client as c:
            room_id, _ = await _room_with_players(c, "alice", "bob")
            resp = await c.get("/api/rooms")
        assert resp.status_code == 200
        listed = {r["id"]: r for r in resp.json()}
        assert listed[room_id]["player_count"] == 2
        assert listed[room_id]["status"] == "waiting"

    @pytest.mark.asyncio
    async def test_unknown_room_is_404(self, client):
        async with client as c:
            resp = await c.get("/api/rooms/NOPE1234")
        assert resp.status_code == 404
        assert resp.json()["code"] == "ROOM_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_username_taken(self, client):
        async with client as c:
            room_id, _ = await _room_with_players(c, "alice")
            resp = await c.post(f"/api/rooms/{room_id}/join", json={"username": "alice"})
            check = await c.get(f"/api/rooms/{room_id}/username-check", params={"username": "alice"})
        assert resp.status_code == 409
        assert resp.json()["code"] == "USERNAME_TAKEN"
        assert resp.json()["suggestions"]
        assert check.json()["available"] is False

    @pytest.mark.asyncio
    async def test_invalid_username_is_400(self, client):
        async with client as c:
            resp = await c.post("/api/rooms", json={"host_name": "a b"})
        assert resp.status_code == 400
        assert resp.json()["code"] == "INVALID_USERNAME"

    @pytest.mark.asyncio
    async def test_connection_flag_and_leave(self, client):
        async with client as c:
            room_id, (host_id, bob_id) = await _room_with_players(c, "alice", "bob")
            resp = await c.post(
                f"/api/rooms/{room_id}/players/{bob_id}/connection", json={"connected": False}
            )
            assert resp.json()["connected"] is False
            resp = await c.delete(
                f"/api/rooms/{room_id}/players/{host_id}", params={"requester_id": host_id}
            )
        assert resp.status_code == 200
        assert resp.json()["room_finished"] is True


class TestRoundsApi:

    @pytest.mark.asyncio
    async def test_non_host_is_403(self, client):
        async with client as c:
            room_id, (_, bob_id) = await _room_with_players(c, "alice", "bob")
            resp = await c.post(f"/api/rooms/{room_id}/rounds", params={"requester_id": bob_id})
        assert resp.status_code == 403
        assert resp.json()["code"] == "NOT_HOST"

    @pytest.mark.asyncio
    async def test_half_manual_pair_is_422(self, client):
        async with client as c:
            room_id, (host_id,) = await _room_with_players(c, "alice")
            resp = await c.post(
                f"/api/rooms/{room_id}/rounds",
                params={"requester_id": host_id},
                json={"word_a": "lợn"},
            )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_start_needs_players(self, client):
        async with client as c:
            room_id, (host_id,) = await _room_with_players(c, "alice")
            resp = await c.post(f"/api/rooms/{room_id}/rounds", params={"requester_id": host_id})
            round_id = resp.json()["round_id"]
            resp = await c.post(
                f"/api/rooms/{room_id}/rounds/{round_id}/start", params={"requester_id": host_id}
            )
        assert resp.status_code == 400
        assert resp.json()["code"] == "INSUFFICIENT_PLAYERS"

    @pytest.mark.asyncio
    async def test_words_only_in_own_view(self, client, store):
        async with client as c:
            room_id, (host_id, bob_id) = await _room_with_players(c, "alice", "bob")
            round_id = await _started_round(c, room_id, host_id)
            impostor_id = (await store.get(round_path(room_id, round_id)))["impostor_id"]
            views = {
                pid: (await c.get(f"/api/rooms/{room_id}", params={"player_id": pid})).json()
                for pid in (host_id, bob_id)
            }
            public = (await c.get(f"/api/rooms/{room_id}")).json()

        for pid, view in views.items():
            assert view["your_word"] == ("lợn" if pid == impostor_id else "heo")
            assert view["is_impostor"] == (pid == impostor_id)
            assert view["current_round"]["impostor_id"] is None
        assert public["your_word"] is None

    @pytest.mark.asyncio
    async def test_mark_winners_then_new_round(self, client):
        async with client as c:
            room_id, (host_id, bob_id) = await _room_with_players(c, "alice", "bob")
            round_id = await _started_round(c, room_id, host_id)
            resp = await c.post(
                f"/api/rooms/{room_id}/rounds/{round_id}/winners",
                params={"requester_id": host_id},
                json={"winner_ids": [bob_id], "point_value": 20},
            )
            assert resp.status_code == 200
            again = await c.post(
                f"/api/rooms/{room_id}/rounds/{round_id}/winners",
                params={"requester_id": host_id},
                json={"winner_ids": [bob_id]},
            )
            reset = await c.post(f"/api/rooms/{room_id}/new-round", params={"requester_id": host_id})
            view = (await c.get(f"/api/rooms/{room_id}")).json()

        assert resp.json()["winner_ids"] == [bob_id]
        assert again.status_code == 409
        assert reset.json()["status"] == "waiting"
        scores = {p["id"]: p["score"] for p in view["players"]}
        assert scores[bob_id] == 20


class TestVotingApi:

    @pytest.mark.asyncio
    async def test_vote_flow_catches_impostor(self, client, store):
        async with client as c:
            room_id, ids = await _room_with_players(c, "alice", "bob", "cara")
            round_id = await _started_round(c, room_id, ids[0])
            impostor_id = (await store.get(round_path(room_id, round_id)))["impostor_id"]
            others = [pid for pid in ids if pid != impostor_id]

            resp = await c.post(f"/api/rooms/{room_id}/votes", params={"requester_id": ids[0]})
            assert resp.status_code == 201
            session_id = resp.json()["id"]

            first = await c.post(
                f"/api/rooms/{room_id}/votes/{session_id}",
                json={"voter_id": others[0], "voted_for_id": impostor_id},
            )
            duplicate = await c.post(
                f"/api/rooms/{room_id}/votes/{session_id}",
                json={"voter_id": others[0], "voted_for_id": others[1]},
            )
            end = await c.post(
                f"/api/rooms/{room_id}/votes/{session_id}/end", params={"requester_id": ids[0]}
            )
            view = (await c.get(f"/api/rooms/{room_id}")).json()

        assert first.status_code == 200
        assert first.json()["outcome"] is None
        assert duplicate.status_code == 409
        assert duplicate.json()["code"] == "VOTE_ALREADY_CAST"
        outcome = end.json()
        assert outcome["winner_id"] == impostor_id
        assert outcome["is_impostor"] is True
        assert view["room"]["status"] == "waiting"
        assert view["last_vote"]["outcome"] == "impostor_caught"
        # resolved round is revealed to everyone
        assert view["current_round"]["impostor_id"] == impostor_id

    @pytest.mark.asyncio
    async def test_self_vote_is_400(self, client):
        async with client as c:
            room_id, (host_id, bob_id) = await _room_with_players(c, "alice", "bob")
            await _started_round(c, room_id, host_id)
            session_id = (await c.post(
                f"/api/rooms/{room_id}/votes", params={"requester_id": host_id}
            )).json()["id"]
            resp = await c.post(
                f"/api/rooms/{room_id}/votes/{session_id}",
                json={"voter_id": bob_id, "voted_for_id": bob_id},
            )
        assert resp.status_code == 400
        assert resp.json()["code"] == "SELF_VOTE"


class TestWebSocket:

    def test_snapshot_and_ping(self, api_app):
        with TestClient(api_app) as c:
            body = c.post("/api/rooms", json={"host_name": "alice"}).json()
            room_id, host_id = body["room_id"], body["host_player_id"]

            with c.websocket_connect(f"/ws/{room_id}?playerId={host_id}") as ws:
                first = ws.receive_json()
                assert first["type"] == "snapshot"
                assert first["data"]["room"]["id"] == room_id
                assert first["data"]["is_host"] is True

                ws.send_json({"type": "ping"})
                for _ in range(20):
                    msg = ws.receive_json()
                    if msg["type"] == "pong":
                        break
                else:
                    pytest.fail("no pong received")

                ws.send_json({"type": "vote", "data": {}})
                for _ in range(20):
                    msg = ws.receive_json()
                    if msg["type"] == "error":
                        assert msg["code"] == "BAD_MESSAGE"
                        break
                else:
                    pytest.fail("no error received")

    def test_unknown_room_is_rejected(self, api_app):
        with TestClient(api_app) as c:
            with pytest.raises(WebSocketDisconnect):
                with c.websocket_connect("/ws/NOPE1234?playerId=nobody") as ws:
                    ws.receive_json()


class _RecordingSocket:
    """Stands in for a starlette WebSocket in ConnectionManager tests."""

    def __init__(self):
        self.sent = []

    async def accept(self):
        pass

    async def send_json(self, message):
        self.sent.append(message)


class TestConnectionManager:

    @pytest.mark.asyncio
    async def test_second_tab_keeps_player_connected(self, store, rooms):
        room, host = await rooms.create_room("alice")
        hub = ConnectionManager()
        first, second = _RecordingSocket(), _RecordingSocket()
        await hub.connect(room.id, host.id, first, store)
        await hub.connect(room.id, host.id, second, store)
        pump = hub._pumps[room.id]

        hub.disconnect(room.id, host.id, first)
        assert hub.is_connected(room.id, host.id)
        assert hub.count(room.id) == 1

        await hub.send_to(room.id, host.id, {"type": "pong"})
        assert {"type": "pong"} in second.sent
        assert {"type": "pong"} not in first.sent

        hub.disconnect(room.id, host.id, second)
        assert not hub.is_connected(room.id, host.id)
        await asyncio.wait_for(pump, timeout=2)

    @pytest.mark.asyncio
    async def test_failed_send_drops_only_that_socket(self, store, rooms):
        room, host = await rooms.create_room("alice")
        hub = ConnectionManager()
        broken, healthy = _RecordingSocket(), _RecordingSocket()

        async def _fail(message):
            raise RuntimeError("socket closed")

        broken.send_json = _fail
        await hub.connect(room.id, host.id, broken, store)
        await hub.connect(room.id, host.id, healthy, store)
        pump = hub._pumps[room.id]

        await hub.send_to(room.id, host.id, {"type": "pong"})

        assert hub.count(room.id) == 1
        assert {"type": "pong"} in healthy.sent
        hub.disconnect(room.id, host.id)
        await asyncio.wait_for(pump, timeout=2)
