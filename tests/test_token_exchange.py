# Copyright (c) Microsoft. All rights reserved.

from __future__ import annotations

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from skill_relay.auth import AppCredentials
from skill_relay.errors import TokenProviderFailure
from skill_relay.token_exchange import (
    Exchanged,
    ExchangeFailed,
    NotExchangeable,
    TokenExchangeClient,
    UserTokenClient,
)

from tests.fakes import skill_identity


class TokenService:
    """Minimal Bot Framework token service."""

    def __init__(self) -> None:
        self.requests: list[dict] = []
        self.exchange_status = 200
        self.exchange_body: object = {"token": "user-token", "connectionName": "graph"}

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/api/usertoken/exchange", self.exchange)
        return app

    async def _record(self, request: web.Request) -> None:
        body = await request.json() if request.can_read_body else None
        self.requests.append(
            {"method": request.method, "path": request.path, "query": dict(request.query), "body": body}
        )

    async def exchange(self, request: web.Request) -> web.Response:
        await self._record(request)
        if self.exchange_status >= 300:
            return web.json_response(
                {"error": {"code": "TokenExpired", "message": "The session expired"}},
                status=self.exchange_status,
            )
        return web.json_response(self.exchange_body)


@pytest_asyncio.fixture
async def token_service():
    service = TokenService()
    server = TestServer(service.app())
    await server.start_server()
    service.url = str(server.make_url("")).rstrip("/")
    yield service
    await server.close()


@pytest_asyncio.fixture
async def user_token_client(token_service):
    client = UserTokenClient(AppCredentials(), token_service.url, timeout=5)
    yield client
    await client.close()


class TestUserTokenClient:
    @pytest.mark.asyncio
    async def test_exchange_posts_uri_with_user_and_connection(self, token_service, user_token_client) -> None:
        result = await user_token_client.exchange_token("user-1", "graph", "msteams", uri="api://skill")

        assert result["token"] == "user-token"
        request = token_service.requests[0]
        assert request["query"] == {"userId": "user-1", "connectionName": "graph", "channelId": "msteams"}
        assert request["body"] == {"uri": "api://skill"}

    @pytest.mark.asyncio
    async def test_exchange_requires_uri_or_token(self, user_token_client) -> None:
        with pytest.raises(ValueError):
            await user_token_client.exchange_token("user-1", "graph", "msteams")
        with pytest.raises(ValueError):
            await user_token_client.exchange_token("", "graph", "msteams", uri="api://skill")

    @pytest.mark.asyncio
    async def test_service_error_is_parsed(self, token_service, user_token_client) -> None:
        token_service.exchange_status = 401

        with pytest.raises(TokenProviderFailure) as excinfo:
            await user_token_client.exchange_token("user-1", "graph", "msteams", uri="api://skill")

        assert excinfo.value.status == 401
        assert excinfo.value.code == "TokenExpired"

    @pytest.mark.asyncio
    async def test_unreachable_service_is_a_provider_failure(self) -> None:
        client = UserTokenClient(AppCredentials(), "http://127.0.0.1:1", timeout=2)
        try:
            with pytest.raises(TokenProviderFailure):
                await client.exchange_token("user-1", "graph", "msteams", uri="api://skill")
        finally:
            await client.close()


class TestTokenExchangeClient:
    @pytest.mark.asyncio
    async def test_token_is_exchanged(self, user_token_client) -> None:
        outcome = await TokenExchangeClient(user_token_client).exchange(
            skill_identity(), "user-1", "graph", "msteams", "api://skill"
        )

        assert outcome == Exchanged("user-token")
        assert "user-token" not in repr(outcome)

    @pytest.mark.asyncio
    async def test_empty_token_is_not_exchangeable(self, token_service, user_token_client) -> None:
        token_service.exchange_body = {"connectionName": "graph"}

        outcome = await TokenExchangeClient(user_token_client).exchange(
            skill_identity(), "user-1", "graph", "msteams", "api://skill"
        )

        assert outcome == NotExchangeable()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 500])
    async def test_provider_errors_are_failures(self, token_service, user_token_client, status) -> None:
        token_service.exchange_status = status

        outcome = await TokenExchangeClient(user_token_client).exchange(
            skill_identity(), "user-1", "graph", "msteams", "api://skill"
        )

        assert isinstance(outcome, ExchangeFailed)
        assert isinstance(outcome.cause, TokenProviderFailure)
        assert len(token_service.requests) == 1

    @pytest.mark.asyncio
    async def test_not_found_is_not_exchangeable(self, token_service, user_token_client) -> None:
        token_service.exchange_status = 404

        outcome = await TokenExchangeClient(user_token_client).exchange(
            skill_identity(), "user-1", "graph", "msteams", "api://skill"
        )

        assert outcome == NotExchangeable()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [["unexpected"], "token", {"token": 42}, {"token": {"value": "user-token"}}],
    )
    async def test_unexpected_response_shape_is_a_failure(
        self, token_service, user_token_client, body
    ) -> None:
        token_service.exchange_body = body

        outcome = await TokenExchangeClient(user_token_client).exchange(
            skill_identity(), "user-1", "graph", "msteams", "api://skill"
        )

        assert isinstance(outcome, ExchangeFailed)
        assert isinstance(outcome.cause, TokenProviderFailure)
