"""
registry.py — Specialty definitions and their competency ladders
=================================================================
CRUD over ``Specialty`` rows, validated by ``SpecialtyGuardrails``.

Deleting a specialty is two-phase and runs under the locks of every
dependent session, so it can never interleave with an orchestrator run:

  phase 1  re-baseline every dependent session (status ``reset``) with a
           versioned write, so no caller can advance it any further
  phase 2  remove each session's tests, attempts and knowledge entries,
           then the session rows, and finally the specialty itself
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional

from .database import TrainingStore
from .errors import NotFoundError, ValidationFailure
from .guardrails import SpecialtyGuardrails
from .models import DEFAULT_COMPETENCY_LEVELS, Specialty, new_id
from .orchestrator import SessionLocks, rebaseline_session

logger = logging.getLogger(__name__)

_UNSET = object()

DEFAULT_SPECIALTIES: list[dict] = [
    {
        "id":                 "analytical-thinking",
        "name":               "Analytical Thinking",
        "domain":             "Cognitive Skills",
        "description":        "Ability to analyze complex problems and make data-driven decisions",
        "required_knowledge": ["Problem solving", "Critical thinking", "Data analysis"],
    },
    {
        "id":                 "creative-problem-solving",
        "name":               "Creative Problem Solving",
        "domain":             "Innovation Skills",
        "description":        "Generate innovative solutions to complex challenges",
        "required_knowledge": ["Creative thinking", "Brainstorming", "Innovation methods"],
    },
    {
        "id":                 "emotional-intelligence",
        "name":               "Emotional Intelligence",
        "domain":             "Interpersonal Skills",
        "description":        "Understanding and managing emotions in communication",
        "required_knowledge": ["Empathy", "Communication", "Social awareness"],
    },
    {
        "id":                 "strategic-planning",
        "name":               "Strategic Planning",
        "domain":             "Leadership Skills",
        "description":        "Long-term thinking and strategic decision making",
        "required_knowledge": ["Strategy", "Planning", "Decision making"],
    },
    {
        "id":                 "technical-expertise",
        "name":               "Technical Expertise",
        "domain":             "Domain Knowledge",
        "description":        "Deep technical knowledge in specific fields",
        "required_knowledge": ["Technical skills", "Domain expertise", "Problem solving"],
    },
]


class SpecialtyRegistry:
    def __init__(self, store: TrainingStore, locks: Optional[SessionLocks] = None) -> None:
        self.store = store
        self.locks = locks or SessionLocks()
        self._guard = SpecialtyGuardrails()

    def _validate(self, specialty: Specialty) -> None:
        result = self._guard.check_specialty(specialty)
        if result.blocked:
            raise ValidationFailure.from_result(result)

    def create(
        self,
        name: str,
        domain: str,
        competency_levels: Optional[list[str]] = None,
        required_knowledge: Optional[list[str]] = None,
        description: str = "",
        specialty_id: Optional[str] = None,
    ) -> Specialty:
        """Create a specialty.  ``competency_levels`` defaults to the standard four-rung ladder."""
        levels = list(DEFAULT_COMPETENCY_LEVELS) if competency_levels is None else list(competency_levels)
        specialty = Specialty(
            id=specialty_id or new_id(),
            name=(name or "").strip(),
            domain=(domain or "").strip(),
            competency_levels=levels,
            required_knowledge=list(required_knowledge or []),
            description=description,
        )
        self._validate(specialty)
        if self.store.get_specialty(specialty.id) is not None:
            raise ValidationFailure(f"Specialty '{specialty.id}' already exists")
        self.store.insert_specialty(specialty)
        logger.info("Created specialty %s (%s) with ladder %s", specialty.name, specialty.id, levels)
        return specialty

    def get(self, specialty_id: str) -> Specialty:
        specialty = self.store.get_specialty(specialty_id)
        if specialty is None:
            raise NotFoundError("specialty", specialty_id)
        return specialty

    def list(self, include_archived: bool = False) -> list[Specialty]:
        return self.store.list_specialties(include_archived=include_archived)

    def update(
        self,
        specialty_id: str,
        *,
        name=_UNSET,
        domain=_UNSET,
        competency_levels=_UNSET,
        required_knowledge=_UNSET,
        description=_UNSET,
        is_archived=_UNSET,
    ) -> Specialty:
        """
        Update selected fields.

        Rungs that a live session currently sits on (or targets) cannot be
        removed from the ladder.
        """
        current = self.get(specialty_id)
        changes = {
            k: v for k, v in {
                "name": name, "domain": domain, "competency_levels": competency_levels,
                "required_knowledge": required_knowledge, "description": description,
                "is_archived": is_archived,
            }.items() if v is not _UNSET
        }
        if "competency_levels" in changes and changes["competency_levels"] is not None:
            changes["competency_levels"] = list(changes["competency_levels"])
        updated = replace(current, **changes)
        self._validate(updated)

        if "competency_levels" in changes:
            in_use = {
                lvl
                for s in self.store.list_sessions(specialty_id=specialty_id)
                if not s.is_terminal
                for lvl in (s.current_competency_level, s.target_competency_level)
            }
            dropped = in_use - set(updated.competency_levels)
            if dropped:
                raise ValidationFailure(
                    f"Cannot remove levels still used by active sessions: {sorted(dropped)}"
                )

        self.store.update_specialty(updated)
        logger.info("Updated specialty %s: %s", specialty_id, sorted(changes))
        return updated

    def delete(self, specialty_id: str) -> int:
        """Two-phase delete.  Returns the number of dependent sessions removed."""
        specialty = self.get(specialty_id)
        first_level = specialty.competency_levels[0]
        sessions = self.store.list_sessions(specialty_id=specialty_id)
        ids = [s.id for s in sessions]

        with self.locks.hold_all(ids):
            # phase 1: neutralise
            for sid in ids:
                session = self.store.get_session(sid)
                if session is None:
                    continue
                rebaseline_session(session, first_level)
                self.store.save_session(session)

            # phase 2: remove dependents, then the specialty
            for sid in ids:
                self.store.delete_session_records(sid)
            self.store.delete_specialty(specialty_id)

        # sessions started between the listing above and the specialty delete
        late = [s.id for s in self.store.list_sessions(specialty_id=specialty_id)]
        with self.locks.hold_all(late):
            for sid in late:
                self.store.delete_session_records(sid)
        ids.extend(late)

        for sid in ids:
            self.locks.discard(sid)
        logger.info("Deleted specialty %s and %d dependent session(s)", specialty_id, len(ids))
        return len(ids)


def seed_default_specialties(registry: SpecialtyRegistry) -> list[Specialty]:
    """Create the built-in specialties that do not exist yet; returns the ones created."""
    created = []
    for spec in DEFAULT_SPECIALTIES:
        if registry.store.get_specialty(spec["id"]) is not None:
            continue
        created.append(registry.create(
            name=spec["name"],
            domain=spec["domain"],
            required_knowledge=spec["required_knowledge"],
            description=spec["description"],
            specialty_id=spec["id"],
        ))
    return created
