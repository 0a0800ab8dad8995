"""
Pytest configuration and fixtures.

Everything runs against MemoryRoomStore; word pairs come from the static
fallback list unless a test passes its own source.
"""
import random
from typing import List, Tuple

import pytest
from httpx import ASGITransport, AsyncClient

from word_impostor.agents.round_manager import RoundManager
from word_impostor.agents.voting_engine import VotingEngine
from word_impostor.agents.word_source import WordSource, get_word_source
from word_impostor.main import app
from word_impostor.models.game import Player, Room, Round, WordPair, WordProvenance
from word_impostor.services.firestore_service import get_room_store
from word_impostor.services.room_service import RoomService
from word_impostor.services.store import MemoryRoomStore, round_path

MANUAL_PAIR = WordPair(word_a="lợn", word_b="heo")


@pytest.fixture
def store() -> MemoryRoomStore:
    return MemoryRoomStore()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def rooms(store, rng) -> RoomService:
    return RoomService(store, rng=rng)


@pytest.fixture
def rounds(store, rng) -> RoundManager:
    return RoundManager(store, rng=rng)


@pytest.fixture
def voting(store) -> VotingEngine:
    return VotingEngine(store)


@pytest.fixture
def make_room(rooms):
    """async make_room(*names) -> (room, [host, *players]); first name is the host."""

    async def _make(*names: str) -> Tuple[Room, List[Player]]:
        host_name, *others = names or ("host",)
        room, host = await rooms.create_room(host_name)
        players = [host]
        for name in others:
            player, _ = await rooms.join_room(room.id, name)
            players.append(player)
        return room, players

    return _make


@pytest.fixture
def live_round(make_room, rounds, store):
    """
    async live_round(*names, impostor=index) -> (room, players, round)

    Creates the room, a manual-pair round, starts it, then pins the impostor
    to players[impostor] so outcomes are deterministic.
    """

    async def _live(*names: str, impostor: int = 0) -> Tuple[Room, List[Player], Round]:
        room, players = await make_room(*names)
        rnd = await rounds.create_round(room.id, word_pair=MANUAL_PAIR)
        rnd = await rounds.start_round(room.id, rnd.id)
        impostor_id = players[impostor].id
        await store.update(round_path(room.id, rnd.id), {"impostor_id": impostor_id})
        return room, players, rnd.model_copy(update={"impostor_id": impostor_id})

    return _live


class StaticWordSource(WordSource):
    """Word source returning a fixed pair, for API tests."""

    provenance = WordProvenance.CSV

    def __init__(self, pair: WordPair = MANUAL_PAIR):
        self.pair = pair

    async def generate_pair(self, room_id: str):
        return self.pair


@pytest.fixture
def api_app(store):
    app.dependency_overrides[get_room_store] = lambda: store
    app.dependency_overrides[get_word_source] = lambda: StaticWordSource()
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(api_app):
    """httpx AsyncClient bound to the app; use as `async with client as c:`."""
    return AsyncClient(transport=ASGITransport(app=api_app), base_url="http://test")
