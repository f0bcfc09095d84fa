# Copyright (c) Microsoft. All rights reserved.

"""
OAuth Card Scanning

Finds an OAuth card attachment on an outbound activity and parses the part
of it the relay cares about. Pure functions; no I/O and no state.
"""

from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel

from skill_relay.errors import MalformedActivityError

OAUTH_CARD_CONTENT_TYPE = "application/vnd.microsoft.card.oauth"


@dataclass(frozen=True)
class TokenExchangeResource:
    id: str = ""
    uri: str = ""
    provider_id: str = ""


@dataclass(frozen=True)
class OAuthCardAttachment:
    """The relevant fields of an OAuth card attachment."""

    connection_name: str = ""
    token_exchange_resource: Optional[TokenExchangeResource] = None
    content_type: str = OAUTH_CARD_CONTENT_TYPE

    @property
    def is_exchangeable(self) -> bool:
        """True when the card carries a non-blank token exchange URI."""
        resource = self.token_exchange_resource
        return bool(resource and resource.uri and resource.uri.strip())


def _content_as_dict(content: Any) -> dict:
    if isinstance(content, BaseModel):
        return content.model_dump(by_alias=True, exclude_none=True)
    if isinstance(content, dict):
        return content
    raise MalformedActivityError(
        f"OAuth card content must be an object, got {type(content).__name__}"
    )


def parse_oauth_card(content: Any) -> OAuthCardAttachment:
    """
    Parse OAuth card content (JSON object or SDK model).

    Raises:
        MalformedActivityError: if the content or its exchange resource is not an object
    """
    data = _content_as_dict(content)

    resource = data.get("tokenExchangeResource")
    if resource is not None and not isinstance(resource, dict):
        raise MalformedActivityError("tokenExchangeResource must be an object")

    return OAuthCardAttachment(
        connection_name=data.get("connectionName") or "",
        token_exchange_resource=(
            TokenExchangeResource(
                id=resource.get("id") or "",
                uri=resource.get("uri") or "",
                provider_id=resource.get("providerId") or "",
            )
            if resource is not None
            else None
        ),
    )


def find_oauth_card(activity: Any) -> Optional[OAuthCardAttachment]:
    """
    Return the first OAuth card attached to ``activity``, or None.

    The activity is never modified.
    """
    for attachment in getattr(activity, "attachments", None) or ():
        if attachment is not None and attachment.content_type == OAUTH_CARD_CONTENT_TYPE:
            return parse_oauth_card(attachment.content)
    return None
