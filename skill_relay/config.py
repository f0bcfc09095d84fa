# Copyright (c) Microsoft. All rights reserved.

"""
Configuration Module

Environment-driven settings for the skill relay host.

Values are read from the process environment (after loading ``.env`` with
python-dotenv) into plain dataclasses. Components never read the environment
themselves: the host builds them from a ``Settings`` instance, and the skill
handler only ever sees a ``RelayConfiguration``.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Mapping, Optional

from dotenv import load_dotenv

from skill_relay.skills import SkillDescriptor

logger = logging.getLogger(__name__)

DEFAULT_OAUTH_API_ENDPOINT = "https://api.botframework.com"
DEFAULT_SKILL_HOST_ENDPOINT = "http://localhost:3978/api/skills"
DEFAULT_TENANT_ID = "botframework.com"

_SKILL_KEY = re.compile(r"^SKILLS__(\d+)__(ID|APPID|ENDPOINT)$", re.IGNORECASE)


def _first_env(environ: Mapping[str, str], *names: str, default: str = "") -> str:
    """Return the first non-empty value among ``names``."""
    for name in names:
        value = environ.get(name)
        if value:
            return value
    return default


# =============================================================================
# AUTH SETTINGS
# =============================================================================

@dataclass
class AgentAuthSettings:
    """Service connection credentials of this host bot."""

    client_id: str = ""
    client_secret: str = ""
    tenant_id: str = DEFAULT_TENANT_ID

    @property
    def is_valid(self) -> bool:
        """Check if client credentials are configured."""
        return bool(self.client_id and self.client_secret)

    @classmethod
    def from_environment(cls, environ: Mapping[str, str]) -> "AgentAuthSettings":
        # Consolidated CONNECTIONS__SERVICE_CONNECTION vars first, then the legacy names
        return cls(
            client_id=_first_env(
                environ, "CONNECTIONS__SERVICE_CONNECTION__SETTINGS__CLIENTID", "CLIENT_ID"
            ),
            client_secret=_first_env(
                environ, "CONNECTIONS__SERVICE_CONNECTION__SETTINGS__CLIENTSECRET", "CLIENT_SECRET"
            ),
            tenant_id=_first_env(
                environ,
                "CONNECTIONS__SERVICE_CONNECTION__SETTINGS__TENANTID",
                "TENANT_ID",
                default=DEFAULT_TENANT_ID,
            ),
        )


# =============================================================================
# RELAY CONFIGURATION (passed to the skill handler)
# =============================================================================

@dataclass(frozen=True)
class RelayConfiguration:
    """
    What the token-exchange skill handler needs to know about its host.

    Attributes:
        bot_id: App id of this host bot (sender of relayed invokes)
        skill_host_endpoint: Callback URL skills use to reach this host
        connection_name: OAuth connection used for the exchange; when empty
            the connection name on the intercepted card is used instead
    """

    bot_id: str = ""
    skill_host_endpoint: str = DEFAULT_SKILL_HOST_ENDPOINT
    connection_name: str = ""


# =============================================================================
# SETTINGS
# =============================================================================

def load_skills_from_env(
    environ: Mapping[str, str], host_endpoint: str = ""
) -> list[SkillDescriptor]:
    """
    Build the skill list from ``SKILLS__<n>__ID/APPID/ENDPOINT`` variables.

    Entries are returned in index order. Incomplete entries are skipped.
    """
    entries: dict[int, dict[str, str]] = {}
    for key, value in environ.items():
        match = _SKILL_KEY.match(key)
        if match:
            index, attr = int(match.group(1)), match.group(2).upper()
            entries.setdefault(index, {})[attr] = value.strip()

    skills: list[SkillDescriptor] = []
    for index in sorted(entries):
        entry = entries[index]
        if not all(entry.get(k) for k in ("ID", "APPID", "ENDPOINT")):
            logger.warning(f"⚠️ Skipping incomplete skill entry SKILLS__{index} ({sorted(entry)})")
            continue
        skills.append(
            SkillDescriptor(
                app_id=entry["APPID"],
                skill_id=entry["ID"],
                endpoint=entry["ENDPOINT"],
                host_endpoint=host_endpoint,
            )
        )
    return skills


@dataclass
class Settings:
    """Top-level host settings."""

    agent_auth: AgentAuthSettings = field(default_factory=AgentAuthSettings)
    skills: list[SkillDescriptor] = field(default_factory=list)
    skill_host_endpoint: str = DEFAULT_SKILL_HOST_ENDPOINT
    default_skill_id: str = ""
    token_exchange_connection_name: str = ""
    oauth_api_endpoint: str = DEFAULT_OAUTH_API_ENDPOINT
    pg_dsn: Optional[str] = None
    request_timeout: float = 30.0
    port: int = 3978

    @classmethod
    def from_environment(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        environ = os.environ if environ is None else environ
        skill_host_endpoint = environ.get("SKILL_HOST_ENDPOINT") or DEFAULT_SKILL_HOST_ENDPOINT
        return cls(
            agent_auth=AgentAuthSettings.from_environment(environ),
            skills=load_skills_from_env(environ, skill_host_endpoint),
            skill_host_endpoint=skill_host_endpoint,
            default_skill_id=environ.get("DEFAULT_SKILL_ID", "").strip(),
            token_exchange_connection_name=environ.get("TOKEN_EXCHANGE_CONNECTION_NAME", ""),
            oauth_api_endpoint=(
                environ.get("OAUTH_API_ENDPOINT") or DEFAULT_OAUTH_API_ENDPOINT
            ).rstrip("/"),
            pg_dsn=environ.get("PG_DSN") or None,
            request_timeout=float(environ.get("REQUEST_TIMEOUT_SECONDS", "30")),
            port=int(environ.get("PORT", "3978")),
        )

    def relay_configuration(self) -> RelayConfiguration:
        return RelayConfiguration(
            bot_id=self.agent_auth.client_id,
            skill_host_endpoint=self.skill_host_endpoint,
            connection_name=self.token_exchange_connection_name,
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the process-wide settings (loads ``.env`` on first call)."""
    global _settings
    if _settings is None:
        load_dotenv()
        _settings = Settings.from_environment()
        logger.debug(f"Settings loaded ({len(_settings.skills)} skill(s))")
    return _settings


def reset_settings() -> None:
    """Forget cached settings so the next ``get_settings()`` re-reads the environment."""
    global _settings
    _settings = None
