# Copyright (c) Microsoft. All rights reserved.

"""
Token Exchange

Client for the Bot Framework token service and the exchange step the skill
handler runs when it intercepts an OAuth card.

``UserTokenClient`` is the raw REST client; it raises ``TokenProviderFailure``
on any provider-side problem. ``TokenExchangeClient`` turns a single exchange
attempt into a ``TokenExchangeOutcome`` and never raises for provider errors.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

import aiohttp

from skill_relay.auth import BOT_FRAMEWORK_SCOPE, AppCredentials, get_app_id
from skill_relay.config import DEFAULT_OAUTH_API_ENDPOINT
from skill_relay.errors import TokenProviderFailure

logger = logging.getLogger(__name__)


# =============================================================================
# OUTCOMES
# =============================================================================

@dataclass(frozen=True)
class Exchanged:
    token: str

    def __repr__(self) -> str:
        return "Exchanged(token=***)"


@dataclass(frozen=True)
class NotExchangeable:
    """The provider answered but had no token to give for this resource."""


@dataclass(frozen=True)
class ExchangeFailed:
    cause: BaseException


TokenExchangeOutcome = Union[Exchanged, NotExchangeable, ExchangeFailed]


# =============================================================================
# TOKEN SERVICE CLIENT
# =============================================================================

class UserTokenClient:
    """
    REST client for the user token endpoints of the Bot Framework token service.

    Args:
        credentials: App credentials used to authenticate to the token service
        endpoint: Token service base URL
        timeout: Total request timeout in seconds
        session: Optional shared aiohttp session (owned by the caller)
    """

    def __init__(
        self,
        credentials: AppCredentials,
        endpoint: str = DEFAULT_OAUTH_API_ENDPOINT,
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.credentials = credentials
        self.endpoint = endpoint.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Optional[str]],
        json_body: Optional[dict] = None,
    ) -> Optional[Any]:
        headers = {}
        token = await self.credentials.get_access_token(BOT_FRAMEWORK_SCOPE)
        if token:
            headers["Authorization"] = f"Bearer {token}"

        session = await self._get_session()
        url = f"{self.endpoint}{path}"
        query = {k: v for k, v in params.items() if v}
        try:
            async with session.request(
                method, url, params=query, json=json_body, headers=headers
            ) as resp:
                if resp.status == 404:
                    return None
                if resp.status >= 300:
                    await self._raise_for_error(resp, path)
                if resp.status == 204 or resp.content_length == 0:
                    return None
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise TokenProviderFailure(f"Token service call {path} failed: {e!r}") from e

    @staticmethod
    async def _raise_for_error(resp: aiohttp.ClientResponse, path: str) -> None:
        code, message = None, resp.reason or ""
        try:
            body = await resp.json(content_type=None)
            error = (body or {}).get("error") or {}
            code = error.get("code")
            message = error.get("message") or message
        except (ValueError, aiohttp.ContentTypeError, AttributeError):
            pass
        raise TokenProviderFailure(
            f"Token service call {path} returned {resp.status}: ({code}) {message}",
            status=resp.status,
            code=code,
        )

    async def exchange_token(
        self,
        user_id: str,
        connection_name: str,
        channel_id: str,
        uri: Optional[str] = None,
        token: Optional[str] = None,
    ) -> Optional[dict]:
        """
        Exchange a resource URI (or a token) for a user token.

        Returns:
            The token response (``token``, ``connectionName``, ``expiration``), or None
            when the service has nothing to exchange

        Raises:
            ValueError: if required arguments are missing
            TokenProviderFailure: on any provider-side failure
        """
        if not user_id or not connection_name:
            raise ValueError("user_id and connection_name are required")
        if not uri and not token:
            raise ValueError("Either a token or a uri is required for a token exchange")
        body = {k: v for k, v in {"uri": uri, "token": token}.items() if v}
        return await self._request(
            "POST",
            "/api/usertoken/exchange",
            {"userId": user_id, "connectionName": connection_name, "channelId": channel_id},
            json_body=body,
        )


# =============================================================================
# EXCHANGE STEP
# =============================================================================

class TokenExchangeClient:
    """Single-attempt SSO exchange used by the skill handler."""

    def __init__(self, user_token_client: UserTokenClient):
        self._client = user_token_client

    async def exchange(
        self,
        claims_identity: Any,
        recipient_id: str,
        connection_name: str,
        channel_id: str,
        resource_uri: str,
    ) -> TokenExchangeOutcome:
        """
        Exchange ``resource_uri`` for a token on behalf of ``recipient_id``.

        Provider failures (network, rejected credentials, expired session) come back
        as ``ExchangeFailed``; they are not distinguished from each other.
        """
        caller = get_app_id(claims_identity) or "anonymous"
        try:
            result = await self._client.exchange_token(
                recipient_id, connection_name, channel_id, uri=resource_uri
            )
        except (TokenProviderFailure, ValueError) as e:
            logger.warning(f"⚠️ Unable to exchange token for skill {caller}: {e}")
            return ExchangeFailed(e)

        if result is not None and not isinstance(result, dict):
            failure = TokenProviderFailure(
                f"Unexpected token response of type {type(result).__name__}"
            )
            logger.warning(f"⚠️ Unable to exchange token for skill {caller}: {failure}")
            return ExchangeFailed(failure)

        token = (result or {}).get("token")
        if token is not None and not isinstance(token, str):
            failure = TokenProviderFailure(
                f"Unexpected token of type {type(token).__name__} in token response"
            )
            logger.warning(f"⚠️ Unable to exchange token for skill {caller}: {failure}")
            return ExchangeFailed(failure)
        if not token:
            logger.info(f"🔐 No token available to exchange for skill {caller}")
            return NotExchangeable()

        logger.info(f"✅ Token exchange successful for skill {caller} (connection={connection_name})")
        return Exchanged(token)
