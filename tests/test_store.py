"""
MemoryRoomStore tests: transaction atomicity, the reads-before-writes rule,
queries and listener delivery.
"""
import pytest

from word_impostor.exceptions import InvalidState
from word_impostor.services.store import MemoryRoomStore, parent_collection


class TestTransactions:

    @pytest.mark.asyncio
    async def test_commit_applies_all_writes(self, store):
        def _fn(txn):
            txn.set("rooms/R1", {"id": "R1", "status": "waiting"})
            txn.set("rooms/R1/players/p1", {"id": "p1", "score": 0})
            return "done"

        assert await store.run_transaction(_fn) == "done"
        assert (await store.get("rooms/R1"))["status"] == "waiting"
        assert (await store.get("rooms/R1/players/p1"))["score"] == 0

    @pytest.mark.asyncio
    async def test_exception_discards_writes(self, store):
        await store.set("rooms/R1", {"id": "R1", "status": "waiting"})

        def _fn(txn):
            txn.update("rooms/R1", {"status": "in_round"})
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await store.run_transaction(_fn)
        assert (await store.get("rooms/R1"))["status"] == "waiting"

    @pytest.mark.asyncio
    async def test_update_of_missing_doc_aborts_whole_commit(self, store):
        def _fn(txn):
            txn.set("rooms/R1", {"id": "R1"})
            txn.update("rooms/R2", {"status": "x"})

        with pytest.raises(InvalidState):
            await store.run_transaction(_fn)
        assert await store.get("rooms/R1") is None

    @pytest.mark.asyncio
    async def test_read_after_write_rejected(self, store):
        def _fn(txn):
            txn.set("rooms/R1", {"id": "R1"})
            txn.get("rooms/R1")

        with pytest.raises(RuntimeError):
            await store.run_transaction(_fn)
        assert await store.get("rooms/R1") is None

    @pytest.mark.asyncio
    async def test_reads_are_copies(self, store):
        await store.set("rooms/R1", {"id": "R1", "tags": ["a"]})
        doc = await store.get("rooms/R1")
        doc["tags"].append("b")
        assert (await store.get("rooms/R1"))["tags"] == ["a"]

    @pytest.mark.asyncio
    async def test_dotted_update(self, store):
        await store.set("rooms/R1", {"id": "R1", "counts": {"a": 1}})
        await store.update("rooms/R1", {"counts.b": 2})
        assert (await store.get("rooms/R1"))["counts"] == {"a": 1, "b": 2}


class TestQueries:

    @pytest.mark.asyncio
    async def test_filter_order_limit(self, store):
        for i, status in enumerate(["active", "completed", "active"]):
            await store.set(f"rooms/R1/votingSessions/s{i}", {"id": f"s{i}", "n": i, "status": status})
        await store.set("rooms/R2/votingSessions/other", {"id": "other", "n": 9, "status": "active"})

        active = await store.query("rooms/R1/votingSessions", where=[("status", "==", "active")])
        assert sorted(d["id"] for d in active) == ["s0", "s2"]

        latest = await store.query("rooms/R1/votingSessions", order_by="n", descending=True, limit=1)
        assert [d["id"] for d in latest] == ["s2"]

    @pytest.mark.asyncio
    async def test_order_by_skips_docs_without_field(self, store):
        await store.set("rooms/R1/rounds/a", {"id": "a", "round_number": 1})
        await store.set("rooms/R1/rounds/b", {"id": "b"})
        docs = await store.query("rooms/R1/rounds", order_by="round_number")
        assert [d["id"] for d in docs] == ["a"]

    def test_parent_collection(self):
        assert parent_collection("rooms/R1/players/p1") == "rooms/R1/players"


class TestListeners:

    @pytest.mark.asyncio
    async def test_document_watch_gets_initial_and_committed_state(self, store):
        seen = []
        unsubscribe = store.watch_document("rooms/R1", seen.append)
        await store.set("rooms/R1", {"id": "R1", "status": "waiting"})
        await store.update("rooms/R1", {"status": "in_round"})
        await store.delete("rooms/R1")
        unsubscribe()
        await store.set("rooms/R1", {"id": "R1", "status": "waiting"})

        assert seen == [
            None,
            {"id": "R1", "status": "waiting"},
            {"id": "R1", "status": "in_round"},
            None,
        ]

    @pytest.mark.asyncio
    async def test_collection_watch_sees_whole_transaction_at_once(self, store):
        seen = []
        store.watch_collection("rooms/R1/players", seen.append, order_by="n")

        def _fn(txn):
            txn.set("rooms/R1/players/a", {"id": "a", "n": 1})
            txn.set("rooms/R1/players/b", {"id": "b", "n": 2})

        await store.run_transaction(_fn)

        assert seen[0] == []
        assert [d["id"] for d in seen[1]] == ["a", "b"]
        assert len(seen) == 2

    @pytest.mark.asyncio
    async def test_unrelated_commit_does_not_notify(self, store):
        seen = []
        store.watch_collection("rooms/R1/players", seen.append)
        await store.set("rooms/R2/players/x", {"id": "x"})
        assert seen == [[]]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_commit(self):
        store = MemoryRoomStore()

        def _boom(_):
            raise RuntimeError("listener bug")

        store.watch_document("rooms/R1", _boom)
        await store.set("rooms/R1", {"id": "R1"})
        assert await store.get("rooms/R1") == {"id": "R1"}
