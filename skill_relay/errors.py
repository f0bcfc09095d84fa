# Copyright (c) Microsoft. All rights reserved.

"""
Relay Errors

Exception types raised by the relay components.

Only ``MalformedActivityError`` and ``ConversationNotFoundError`` ever leave
the skill handler; provider and transport failures are caught by the
interceptor and turned into a pass-through.
"""

from typing import Optional


class SkillRelayError(Exception):
    """Base class for all relay errors."""


class MalformedActivityError(SkillRelayError, ValueError):
    """The activity payload cannot be processed (corrupt card, missing fields)."""


class ConversationNotFoundError(SkillRelayError, KeyError):
    """No relay record exists for the given conversation id."""

    def __init__(self, conversation_id: str):
        super().__init__(conversation_id)
        self.conversation_id = conversation_id

    def __str__(self) -> str:
        return f"No conversation reference found for {self.conversation_id}"


class TokenProviderFailure(SkillRelayError):
    """The token service rejected a request or could not be reached."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.status = status
        self.code = code


class TransportFailure(SkillRelayError):
    """A POST to a skill or channel endpoint failed before producing a response."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class SkillNotConfiguredError(SkillRelayError, LookupError):
    """No registered skill is available to forward a user activity to."""
