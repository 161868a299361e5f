"""
factory.py — Wires the training engine from Settings
=====================================================
``build_training_service`` assembles one object graph:

  store ─┬─ registry
         ├─ agent directory (TTL-cached)
         ├─ knowledge store
         └─ orchestrator ── provider, grader, event bus, answer source
                         └─ scheduler (shares the orchestrator's SessionLocks)

Pass ``store`` / ``provider`` / ``answer_source`` to override the defaults.
"""

from __future__ import annotations

import logging
import random
from typing import Optional

from .answers import AnswerSource, build_answer_source
from .config import Settings, get_settings
from .database import SqliteTrainingStore, TrainingStore
from .directory import CachedAgentDirectory, StoreAgentDirectory, TTLCache
from .events import EventBus, KnowledgeTrackingSink, LoggingEventSink
from .grading import TestGradingEngine
from .knowledge import StoreKnowledgeStore
from .orchestrator import SessionLocks, TrainingOrchestrator
from .providers import TextGenerationProvider, build_provider
from .registry import SpecialtyRegistry
from .scheduler import BackgroundProgressionScheduler, LegitimacyFilter
from .service import TrainingService

logger = logging.getLogger(__name__)


def build_training_service(
    settings: Optional[Settings] = None,
    store: Optional[TrainingStore] = None,
    provider: Optional[TextGenerationProvider] = None,
    rng: Optional[random.Random] = None,
    answer_source: Optional[AnswerSource] = None,
    agent_cache_ttl: float = 60.0,
) -> TrainingService:
    settings = settings or get_settings()
    store = store or SqliteTrainingStore(settings.training.db_path)
    provider = provider or build_provider(settings)
    locks = SessionLocks()

    directory = CachedAgentDirectory(StoreAgentDirectory(store), TTLCache(agent_cache_ttl))
    knowledge = StoreKnowledgeStore(store)
    events = EventBus([LoggingEventSink(), KnowledgeTrackingSink(knowledge)])
    answer_source = answer_source or build_answer_source(settings, provider, rng)

    orchestrator = TrainingOrchestrator(
        store=store,
        directory=directory,
        provider=provider,
        grader=TestGradingEngine(provider),
        events=events,
        answer_source=answer_source,
        locks=locks,
        knowledge_confidence=settings.training.knowledge_confidence,
        default_max_iterations=settings.training.default_max_iterations,
    )
    scheduler = BackgroundProgressionScheduler(
        store=store,
        orchestrator=orchestrator,
        legitimacy=LegitimacyFilter(directory, check_names=settings.scheduler.filter_placeholders),
        answer_source=answer_source,
        ticks_per_phase=settings.scheduler.ticks_per_phase,
        max_workers=settings.scheduler.max_workers,
        interval_seconds=settings.scheduler.interval_seconds,
    )
    logger.debug(
        "Training service wired: provider=%s answers=%s",
        getattr(provider, "name", type(provider).__name__), settings.training.answer_source,
    )
    return TrainingService(
        store=store,
        registry=SpecialtyRegistry(store, locks),
        directory=directory,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )
