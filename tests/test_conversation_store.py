# Copyright (c) Microsoft. All rights reserved.

from __future__ import annotations

import asyncio
import json

import pytest

from skill_relay.storage import (
    ConversationRelayRecord,
    MemoryConversationStore,
    PostgresConversationStore,
)

from tests.fakes import FakePool, make_record


@pytest.fixture(params=["memory", "postgres"])
def any_store(request):
    if request.param == "memory":
        return MemoryConversationStore()
    return PostgresConversationStore("postgresql://unused", pool=FakePool())


class TestConversationStore:
    @pytest.mark.asyncio
    async def test_put_then_get(self, any_store) -> None:
        record = make_record()
        await any_store.put(record.local_conversation_id, record)

        assert await any_store.get(record.local_conversation_id) == record

    @pytest.mark.asyncio
    async def test_missing_key(self, any_store) -> None:
        assert await any_store.get("nope") is None
        assert await any_store.delete("nope") is False

    @pytest.mark.asyncio
    async def test_delete(self, any_store) -> None:
        record = make_record()
        await any_store.put(record.local_conversation_id, record)

        assert await any_store.delete(record.local_conversation_id) is True
        assert await any_store.get(record.local_conversation_id) is None

    @pytest.mark.asyncio
    async def test_concurrent_keys_do_not_interfere(self, any_store) -> None:
        records = [make_record(f"skill-{n}", f"user-conv-{n}") for n in range(50)]
        await asyncio.gather(*(any_store.put(r.local_conversation_id, r) for r in records))

        found = await asyncio.gather(*(any_store.get(r.local_conversation_id) for r in records))

        assert [f.conversation["id"] for f in found] == [f"user-conv-{n}" for n in range(50)]


class TestConversationRelayRecord:
    def test_json_round_trip_keeps_wire_reference(self) -> None:
        record = make_record()
        payload = json.loads(record.to_json())

        assert payload["conversation_reference"]["conversation"]["id"] == "user-conv-1"
        assert ConversationRelayRecord.from_json(record.to_json()) == record
        assert ConversationRelayRecord.from_json(payload) == record

    def test_conversation_is_a_copy(self) -> None:
        record = make_record()
        record.conversation["id"] = "changed"

        assert record.conversation["id"] == "user-conv-1"
        assert record.channel_id == "msteams"


class TestPostgresConversationStore:
    @pytest.mark.asyncio
    async def test_connect_with_existing_pool_creates_table(self) -> None:
        pool = FakePool()
        store = PostgresConversationStore("postgresql://unused", pool=pool)

        await store.connect()

        statements = pool.connection.statements
        assert statements[0] == "CREATE SCHEMA IF NOT EXISTS agent_storage"
        assert statements[1].startswith("CREATE TABLE IF NOT EXISTS agent_storage.skill_conversations")

    @pytest.mark.asyncio
    async def test_put_upserts_jsonb(self) -> None:
        pool = FakePool()
        store = PostgresConversationStore("postgresql://unused", pool=pool)
        record = make_record()

        await store.put(record.local_conversation_id, record)
        await store.put(record.local_conversation_id, record)

        assert "ON CONFLICT (conversation_id) DO UPDATE" in pool.connection.statements[-1]
        assert list(pool.rows) == [record.local_conversation_id]

    @pytest.mark.asyncio
    async def test_close_releases_pool(self) -> None:
        pool = FakePool()
        store = PostgresConversationStore("postgresql://unused", pool=pool)

        await store.close()

        assert pool.closed
