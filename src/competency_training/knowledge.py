"""
knowledge.py — Per-agent knowledge store
=========================================
Study artefacts recorded by the orchestrator (failed-test reviews,
achievement notes) live in the ``knowledge_entries`` table and are ranked
for retrieval by simple keyword relevance.

Relevance of one entry for a query
----------------------------------
  keywords   = query words longer than two characters (lower-cased)
  match      = matched keywords / keywords
  quality    = min(1.5, len(content) / 200)
  relevance  = min(1.0, match × quality)

Only the agent's ten most confident entries are considered; entries with
relevance ≤ 0.1 are dropped and the rest ordered by relevance × confidence.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from .database import TrainingStore
from .models import KnowledgeEntry, RankedEntry, new_id

logger = logging.getLogger(__name__)

_CATEGORY_KEYWORDS: dict[str, set[str]] = {
    "technical":  {"code", "programming", "software", "system", "api"},
    "business":   {"strategy", "marketing", "finance", "management"},
    "creative":   {"design", "art", "writing", "creative"},
    "analytical": {"data", "analysis", "statistics", "research"},
}

_CANDIDATE_LIMIT   = 10
_MIN_RELEVANCE     = 0.1
_MAX_QUALITY_BOOST = 1.5


class KnowledgeStore(Protocol):
    def store_knowledge(
        self,
        agent_id: str,
        content: str,
        source: str,
        confidence: int,
        tags: list[str],
        specialty_id: Optional[str] = None,
    ) -> KnowledgeEntry: ...

    def retrieve_knowledge(self, agent_id: str, query: str) -> list[RankedEntry]: ...


def infer_category(tags: list[str]) -> str:
    lowered = {t.lower() for t in tags}
    for category, keywords in _CATEGORY_KEYWORDS.items():
        if lowered & keywords:
            return category
    return "general"


def relevance(content: str, keywords: list[str]) -> float:
    if not keywords:
        return 0.0
    text = content.lower()
    matched = sum(1 for k in keywords if k in text)
    quality = min(_MAX_QUALITY_BOOST, len(content) / 200)
    return min(1.0, matched / len(keywords) * quality)


def make_entry(
    agent_id: str,
    content: str,
    source: str,
    confidence: int,
    tags: list[str],
    specialty_id: Optional[str] = None,
) -> KnowledgeEntry:
    return KnowledgeEntry(
        id=new_id(),
        agent_id=agent_id,
        content=content,
        source=source,
        confidence=max(0, min(100, int(confidence))),
        tags=list(tags),
        category=infer_category(tags),
        specialty_id=specialty_id,
    )


class StoreKnowledgeStore:
    """KnowledgeStore backed by the TrainingStore's knowledge_entries table."""

    def __init__(self, store: TrainingStore) -> None:
        self.store = store

    def store_knowledge(
        self,
        agent_id: str,
        content: str,
        source: str,
        confidence: int,
        tags: list[str],
        specialty_id: Optional[str] = None,
    ) -> KnowledgeEntry:
        entry = make_entry(agent_id, content, source, confidence, tags, specialty_id)
        self.store.insert_knowledge(entry)
        logger.debug("Stored %s knowledge for agent %s from %s", entry.category, agent_id, source)
        return entry

    def retrieve_knowledge(self, agent_id: str, query: str) -> list[RankedEntry]:
        keywords = [w for w in query.lower().split() if len(w) > 2]
        candidates = sorted(
            self.store.list_knowledge(agent_id), key=lambda e: e.confidence, reverse=True
        )[:_CANDIDATE_LIMIT]
        ranked = [
            RankedEntry(content=e.content, relevance=relevance(e.content, keywords), confidence=e.confidence)
            for e in candidates
        ]
        ranked = [r for r in ranked if r.relevance > _MIN_RELEVANCE]
        ranked.sort(key=lambda r: r.relevance * r.confidence, reverse=True)
        return ranked
