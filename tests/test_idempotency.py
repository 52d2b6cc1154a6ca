"""Tests for idempotent insertion, including the lost-race path."""
import asyncio

import pytest

from conftest import expense_doc
from services import expense_store, idempotency
from services.errors import DuplicateKeyConflict


def lose_first_lookup(monkeypatch):
    """Makes the first key lookup miss, as if a concurrent insert had not landed yet."""
    real_lookup = expense_store.find_by_idempotency_key
    calls = {"count": 0}

    async def lookup(collection, key):
        calls["count"] += 1
        if calls["count"] == 1:
            return None
        return await real_lookup(collection, key)

    monkeypatch.setattr(expense_store, "find_by_idempotency_key", lookup)
    return calls


class TestInsertOnce:

    @pytest.mark.asyncio
    async def test_first_insert_is_not_replay(self, collection):
        result = await idempotency.insert_once(collection, expense_doc("a", idempotency_key="k1"))
        assert result.replayed is False
        assert result.document["_id"] == "a"

    @pytest.mark.asyncio
    async def test_repeat_returns_stored_document(self, collection):
        await idempotency.insert_once(collection, expense_doc("a", idempotency_key="k1"))
        result = await idempotency.insert_once(collection, expense_doc("b", idempotency_key="k1", amount=99.0))
        assert result.replayed is True
        assert result.document["_id"] == "a"
        assert result.document["amount"] == 10.0
        assert await collection.count_documents({}) == 1

    @pytest.mark.asyncio
    async def test_no_key_never_deduplicated(self, collection):
        first = await idempotency.insert_once(collection, expense_doc("a"))
        second = await idempotency.insert_once(collection, expense_doc("b"))
        assert not first.replayed and not second.replayed
        assert await collection.count_documents({}) == 2


class TestLostRace:

    @pytest.mark.asyncio
    async def test_lost_race_echoes_winner(self, collection, monkeypatch):
        await collection.insert_one(expense_doc("winner", idempotency_key="k1"))
        lose_first_lookup(monkeypatch)

        result = await idempotency.insert_once(collection, expense_doc("loser", idempotency_key="k1"))

        assert result.replayed is True
        assert result.document["_id"] == "winner"
        assert await collection.count_documents({"idempotency_key": "k1"}) == 1

    @pytest.mark.asyncio
    async def test_lost_race_conflict_when_echo_disabled(self, collection, monkeypatch):
        await collection.insert_one(expense_doc("winner", idempotency_key="k1"))
        lose_first_lookup(monkeypatch)

        with pytest.raises(DuplicateKeyConflict) as exc_info:
            await idempotency.insert_once(
                collection, expense_doc("loser", idempotency_key="k1"), echo_on_conflict=False
            )
        assert exc_info.value.kind == "duplicate_key_conflict"
        assert await collection.count_documents({"idempotency_key": "k1"}) == 1

    @pytest.mark.asyncio
    async def test_conflict_when_winner_vanished(self, collection, monkeypatch):
        await collection.insert_one(expense_doc("winner", idempotency_key="k1"))

        async def lookup(collection, key):
            return None

        monkeypatch.setattr(expense_store, "find_by_idempotency_key", lookup)
        with pytest.raises(DuplicateKeyConflict):
            await idempotency.insert_once(collection, expense_doc("loser", idempotency_key="k1"))

    @pytest.mark.asyncio
    async def test_back_to_back_same_key_stores_one_record(self, collection):
        """mongomock-motor never yields, so these run one after the other; the race itself is covered above."""
        results = await asyncio.gather(
            idempotency.insert_once(collection, expense_doc("a", idempotency_key="k1")),
            idempotency.insert_once(collection, expense_doc("b", idempotency_key="k1")),
        )
        assert await collection.count_documents({"idempotency_key": "k1"}) == 1
        assert results[0].document["_id"] == results[1].document["_id"]
        assert sorted(r.replayed for r in results) == [False, True]
