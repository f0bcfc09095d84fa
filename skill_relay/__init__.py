# Copyright (c) Microsoft. All rights reserved.

"""
Skill Relay Package

Silent single-sign-on for skills called from a host bot: OAuth cards sent
back by a skill are intercepted, the token is exchanged on the user's
behalf, and the skill receives it as a ``signin/tokenExchange`` invoke.

Modules:
    - config: Configuration and environment management
    - auth: App credentials and claim helpers
    - skills: Registry of known skills
    - storage: Relay record stores (memory, PostgreSQL)
    - conversation_ids: Skill conversation id factory
    - cards: OAuth card scanning
    - token_exchange: Token service client and exchange outcomes
    - transport: HTTP client for posting to skills
    - handler: The token exchange skill handler
    - connector: Normal delivery to the channel
    - forwarding: Forwarding user activities to a skill
    - routes: aiohttp channel service and messages routes
    - host: Server bootstrap

Usage:
    from skill_relay import SkillRelayHost, create_and_run_host
    from skill_relay.config import Settings
"""

from skill_relay.handler import (
    ChannelServiceHandler,
    InterceptDecision,
    TokenExchangeSkillHandler,
)
from skill_relay.forwarding import SkillForwarder
from skill_relay.host import SkillRelayHost, create_and_run_host

__all__ = [
    "ChannelServiceHandler",
    "InterceptDecision",
    "TokenExchangeSkillHandler",
    "SkillForwarder",
    "SkillRelayHost",
    "create_and_run_host",
]

__version__ = "0.1.0"
