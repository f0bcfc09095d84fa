# Copyright (c) Microsoft. All rights reserved.

from __future__ import annotations

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestServer

from skill_relay.config import RelayConfiguration, reset_settings
from skill_relay.conversation_ids import SkillConversationIdFactory
from skill_relay.handler import TokenExchangeSkillHandler
from skill_relay.skills import SkillDescriptor, SkillRegistry
from skill_relay.storage import MemoryConversationStore

from tests.fakes import (
    HOST_APP_ID,
    SKILL_APP_ID,
    SKILL_ENDPOINT,
    SKILL_HOST_ENDPOINT,
    FakeSkillClient,
    FakeTokenExchange,
    RecordingChannelHandler,
    SkillEndpoint,
    make_record,
)


@pytest.fixture(autouse=True)
def clean_settings():
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def skill() -> SkillDescriptor:
    return SkillDescriptor(
        app_id=SKILL_APP_ID,
        skill_id="calendar",
        endpoint=SKILL_ENDPOINT,
        host_endpoint=SKILL_HOST_ENDPOINT,
    )


@pytest.fixture
def registry(skill: SkillDescriptor) -> SkillRegistry:
    return SkillRegistry([skill])


@pytest.fixture
def relay_config() -> RelayConfiguration:
    return RelayConfiguration(bot_id=HOST_APP_ID, skill_host_endpoint=SKILL_HOST_ENDPOINT)


@pytest.fixture
def store() -> MemoryConversationStore:
    return MemoryConversationStore()


@pytest.fixture
def id_factory(store: MemoryConversationStore) -> SkillConversationIdFactory:
    return SkillConversationIdFactory(store)


@pytest_asyncio.fixture
async def stored_record(store: MemoryConversationStore):
    record = make_record()
    await store.put(record.local_conversation_id, record)
    return record


@pytest.fixture
def inner() -> RecordingChannelHandler:
    return RecordingChannelHandler()


@pytest.fixture
def token_exchange() -> FakeTokenExchange:
    return FakeTokenExchange()


@pytest.fixture
def skill_client() -> FakeSkillClient:
    return FakeSkillClient()


@pytest.fixture
def make_handler(inner, relay_config, registry, id_factory, token_exchange, skill_client):
    def _make(**overrides) -> TokenExchangeSkillHandler:
        parts = {
            "inner": inner,
            "config": relay_config,
            "skills": registry,
            "conversation_id_factory": id_factory,
            "token_exchange": token_exchange,
            "skill_client": skill_client,
        }
        parts.update(overrides)
        return TokenExchangeSkillHandler(**parts)

    return _make


@pytest_asyncio.fixture
async def skill_endpoint():
    endpoint = SkillEndpoint()
    server = TestServer(endpoint.app())
    await server.start_server()
    endpoint.url = str(server.make_url("/api/messages"))
    yield endpoint
    await server.close()


@pytest.fixture
def remote_skill(skill_endpoint) -> SkillDescriptor:
    return SkillDescriptor(
        app_id=SKILL_APP_ID,
        skill_id="calendar",
        endpoint=skill_endpoint.url,
        host_endpoint=SKILL_HOST_ENDPOINT,
    )
