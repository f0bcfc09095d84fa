# Copyright (c) Microsoft. All rights reserved.

"""
Skill Registry

Static, process-lifetime set of the skills this host can talk to.
Loaded once from configuration and never mutated afterwards.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SkillDescriptor:
    """
    Connection metadata for one downstream skill.

    Attributes:
        app_id: The skill's app registration id (the ``appid``/``azp`` claim it calls back with)
        skill_id: Friendly identifier used in configuration and logs
        endpoint: The skill's messaging endpoint
        host_endpoint: The callback URL the skill uses to reach this host
    """

    app_id: str
    skill_id: str
    endpoint: str
    host_endpoint: str = ""


class SkillRegistry:
    """Immutable lookup over the configured skills."""

    def __init__(self, skills: Iterable[SkillDescriptor] = ()):
        self._skills: tuple[SkillDescriptor, ...] = tuple(skills)
        logger.debug(f"Skill registry loaded with {len(self._skills)} skill(s)")

    def __len__(self) -> int:
        return len(self._skills)

    def __iter__(self) -> Iterator[SkillDescriptor]:
        return iter(self._skills)

    @property
    def app_ids(self) -> frozenset[str]:
        """Lower-cased app ids of every registered skill."""
        return frozenset(s.app_id.lower() for s in self._skills if s.app_id)

    def lookup_by_app_id(self, app_id: Optional[str]) -> Optional[SkillDescriptor]:
        """
        Find the skill registered under ``app_id`` (case-insensitive).

        Returns None for a blank app id or when no skill matches; callers
        treat that as "unknown caller", not as an error.
        """
        if not app_id or not app_id.strip():
            return None
        wanted = app_id.strip().lower()
        for skill in self._skills:
            if skill.app_id.lower() == wanted:
                return skill
        return None

    def get(self, skill_id: str) -> Optional[SkillDescriptor]:
        """Find a skill by its configured id."""
        for skill in self._skills:
            if skill.skill_id == skill_id:
                return skill
        return None
