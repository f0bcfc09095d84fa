# Copyright (c) Microsoft. All rights reserved.

"""
Authentication Module

App credentials for outbound calls and claim helpers for inbound skill calls.
"""

import logging
from typing import Any, Mapping, Optional

from azure.core.exceptions import AzureError
from azure.identity.aio import ClientSecretCredential
from microsoft_agents.hosting.core import AuthenticationConstants

from skill_relay.config import DEFAULT_TENANT_ID
from skill_relay.errors import TokenProviderFailure

logger = logging.getLogger(__name__)

VERSION_CLAIM = "ver"
AUTHORIZED_PARTY_CLAIM = "azp"

BOT_FRAMEWORK_SCOPE = "https://api.botframework.com/.default"


# =============================================================================
# CLAIMS
# =============================================================================

def get_app_id_from_claims(claims: Optional[Mapping[str, Any]]) -> str:
    """
    Resolve the calling app id from a set of token claims.

    v1 tokens carry it in ``appid``, v2 tokens in ``azp``. A token without a
    version claim is treated as v1.

    Returns:
        The app id, or an empty string when it cannot be determined
    """
    if not claims:
        return ""
    version = claims.get(VERSION_CLAIM)
    if version == "2.0":
        app_id = claims.get(AUTHORIZED_PARTY_CLAIM)
    else:
        app_id = claims.get(AuthenticationConstants.APP_ID_CLAIM)
    return str(app_id) if app_id else ""


def get_app_id(claims_identity: Any) -> str:
    """App id of the caller behind a ``ClaimsIdentity`` (empty when unknown)."""
    if claims_identity is None:
        return ""
    return get_app_id_from_claims(getattr(claims_identity, "claims", None))


# =============================================================================
# APP CREDENTIALS
# =============================================================================

class AppCredentials:
    """
    Client-credential tokens for this host bot.

    Wraps an async ``ClientSecretCredential``. With no app id or secret the
    credentials are anonymous and ``get_access_token`` returns None, which
    callers treat as "send without an Authorization header" (local dev).
    """

    def __init__(
        self,
        app_id: str = "",
        app_password: str = "",
        tenant_id: str = DEFAULT_TENANT_ID,
    ):
        self.app_id = app_id
        self._credential: Optional[ClientSecretCredential] = None
        if app_id and app_password:
            self._credential = ClientSecretCredential(
                tenant_id=tenant_id or DEFAULT_TENANT_ID,
                client_id=app_id,
                client_secret=app_password,
            )

    @property
    def is_anonymous(self) -> bool:
        return self._credential is None

    async def get_access_token(self, scope: str) -> Optional[str]:
        """
        Acquire a token for ``scope``.

        Raises:
            TokenProviderFailure: if the identity platform rejects the request
        """
        if self._credential is None:
            return None
        try:
            token = await self._credential.get_token(scope)
        except AzureError as e:
            raise TokenProviderFailure(f"Unable to acquire app token for {scope}: {e}") from e
        return token.token

    async def close(self) -> None:
        if self._credential is not None:
            await self._credential.close()
