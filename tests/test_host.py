# Copyright (c) Microsoft. All rights reserved.

from __future__ import annotations

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from skill_relay.config import AgentAuthSettings, Settings
from skill_relay import host as host_module
from skill_relay.host import SkillRelayHost
from skill_relay.storage import MemoryConversationStore, PostgresConversationStore

from tests.fakes import make_activity


@pytest.fixture
def settings(skill) -> Settings:
    return Settings(skills=[skill], pg_dsn=None)


@pytest_asyncio.fixture
async def host_client(settings):
    host = SkillRelayHost(settings)
    client = TestClient(TestServer(host.create_app(host.create_auth_configuration())))
    await client.start_server()
    yield host, client
    await client.close()


class TestSkillRelayHost:
    def test_store_selection(self, settings) -> None:
        assert isinstance(SkillRelayHost(settings).store, MemoryConversationStore)

        settings.pg_dsn = "postgresql://relay@localhost/relay"
        assert isinstance(SkillRelayHost(settings).store, PostgresConversationStore)

    def test_anonymous_without_credentials(self, settings) -> None:
        host = SkillRelayHost(settings)

        assert host.create_auth_configuration() is None
        assert host.credentials.is_anonymous

    @pytest.mark.asyncio
    async def test_auth_configuration_with_credentials(self, skill) -> None:
        settings = Settings(
            agent_auth=AgentAuthSettings("host-app", "secret", "tenant-1"),
            skills=[skill],
        )

        host = SkillRelayHost(settings)
        auth = host.create_auth_configuration()
        await host.credentials.close()

        assert auth.CLIENT_ID == "host-app"
        assert auth.TENANT_ID == "tenant-1"

    @pytest.mark.asyncio
    async def test_health(self, host_client) -> None:
        _, client = host_client

        resp = await client.get("/api/health")

        assert resp.status == 200
        assert await resp.json() == {"status": "ok", "skills": 1, "auth": "anonymous"}

    @pytest.mark.asyncio
    async def test_unknown_skill_conversation_is_not_found(self, host_client) -> None:
        _, client = host_client
        payload = make_activity(text="hi").model_dump(by_alias=True, exclude_none=True, mode="json")

        resp = await client.post("/api/skills/v3/conversations/missing/activities", json=payload)

        assert resp.status == 404
        assert (await resp.json())["error"]["code"] == "ConversationNotFound"


class TestMessagesRoute:
    @pytest_asyncio.fixture
    async def forwarding_client(self, remote_skill):
        host = SkillRelayHost(Settings(skills=[remote_skill], pg_dsn=None))
        client = TestClient(TestServer(host.create_app(host.create_auth_configuration())))
        await client.start_server()
        yield host, client
        await client.close()

    @pytest.mark.asyncio
    async def test_message_is_forwarded_to_skill(self, forwarding_client, skill_endpoint) -> None:
        host, client = forwarding_client

        resp = await client.post("/api/messages", json=_user_payload())

        assert resp.status == 202
        sent = skill_endpoint.received[0]
        assert sent["text"] == "hi"
        assert sent["relatesTo"]["conversation"]["id"] == "user-conv-1"
        assert await host.forwarder.active_skill("user-conv-1") is not None

    @pytest.mark.asyncio
    async def test_invoke_returns_skill_answer(self, forwarding_client, skill_endpoint) -> None:
        _, client = forwarding_client
        skill_endpoint.body = {"answer": 42}
        payload = _user_payload()
        payload.update(type="invoke", name="application/search")

        resp = await client.post("/api/messages", json=payload)

        assert resp.status == 200
        assert await resp.json() == {"answer": 42}

    @pytest.mark.asyncio
    async def test_skill_failure_ends_the_skill_conversation(
        self, forwarding_client, skill_endpoint
    ) -> None:
        host, client = forwarding_client
        await client.post("/api/messages", json=_user_payload())
        skill_endpoint.status = 503

        resp = await client.post("/api/messages", json=_user_payload())

        assert resp.status == 502
        assert skill_endpoint.received[-1]["type"] == "endOfConversation"
        assert len(host.store) == 0

    @pytest.mark.asyncio
    async def test_no_skill_configured(self) -> None:
        host = SkillRelayHost(Settings(pg_dsn=None))
        client = TestClient(TestServer(host.create_app()))
        await client.start_server()
        try:
            resp = await client.post("/api/messages", json=_user_payload())
        finally:
            await client.close()

        assert resp.status == 503

    @pytest.mark.asyncio
    async def test_invalid_payload(self, host_client) -> None:
        _, client = host_client

        resp = await client.post(
            "/api/messages", data="nope", headers={"Content-Type": "application/json"}
        )

        assert resp.status == 400


class TestEntryPoint:
    def test_script_delegates_to_host_main(self, monkeypatch) -> None:
        import main as script

        monkeypatch.setattr(host_module, "main", lambda: 7)

        assert script.main() == 7

    def test_host_main_reports_startup_failure(self, monkeypatch) -> None:
        def fail(settings=None):
            raise RuntimeError("port in use")

        monkeypatch.setattr(host_module, "configure_logging", lambda: None)
        monkeypatch.setattr(host_module, "create_and_run_host", fail)

        assert host_module.main() == 1


def _user_payload() -> dict:
    activity = make_activity(conversation_id="user-conv-1", text="hi")
    return activity.model_dump(by_alias=True, exclude_none=True, mode="json")
