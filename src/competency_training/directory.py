"""
directory.py — Agent directory with an injectable TTL cache
============================================================
The training engine only needs to look agents up.  ``StoreAgentDirectory``
reads them from the TrainingStore; ``CachedAgentDirectory`` wraps any
directory with a ``TTLCache`` instance that the caller owns and can
invalidate explicitly (e.g. after registering a new agent).
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional, Protocol

from .database import TrainingStore
from .errors import NotFoundError
from .models import Agent

logger = logging.getLogger(__name__)

_ALL_AGENTS_KEY = "__all__"


class AgentDirectory(Protocol):
    def get_agent(self, agent_id: str) -> Agent: ...
    def get_all_agents(self) -> list[Agent]: ...


class TTLCache:
    """
    Small thread-safe key/value cache whose entries expire after ``ttl_seconds``.

    ``clock`` defaults to ``time.monotonic`` and is injectable so tests can
    expire entries without sleeping.
    """

    def __init__(
        self,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                self._misses += 1
                return None
            expires_at, value = item
            if self._clock() >= expires_at:
                del self._entries[key]
                self._misses += 1
                return None
            self._hits += 1
            return value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl_seconds, value)

    def invalidate(self, key: Optional[str] = None) -> None:
        """Drop one key, or everything when *key* is None."""
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            return {"hits": self._hits, "misses": self._misses, "size": len(self._entries)}


class StoreAgentDirectory:
    """Agents as registered in the TrainingStore."""

    def __init__(self, store: TrainingStore) -> None:
        self.store = store

    def get_agent(self, agent_id: str) -> Agent:
        agent = self.store.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("agent", agent_id)
        return agent

    def get_all_agents(self) -> list[Agent]:
        return self.store.list_agents()

    def register(self, agent: Agent) -> Agent:
        self.store.save_agent(agent)
        return agent


class CachedAgentDirectory:
    """Read-through cache in front of another AgentDirectory."""

    def __init__(self, inner: AgentDirectory, cache: TTLCache) -> None:
        self.inner = inner
        self.cache = cache

    def get_agent(self, agent_id: str) -> Agent:
        agent = self.cache.get(agent_id)
        if agent is None:
            agent = self.inner.get_agent(agent_id)
            self.cache.set(agent_id, agent)
        return agent

    def get_all_agents(self) -> list[Agent]:
        agents = self.cache.get(_ALL_AGENTS_KEY)
        if agents is None:
            agents = self.inner.get_all_agents()
            self.cache.set(_ALL_AGENTS_KEY, agents)
        return list(agents)

    def register(self, agent: Agent) -> Agent:
        """Register through the inner directory and invalidate stale entries."""
        registered = self.inner.register(agent)  # type: ignore[attr-defined]
        self.cache.invalidate(agent.id)
        self.cache.invalidate(_ALL_AGENTS_KEY)
        logger.debug("Agent cache invalidated after registering %s", agent.id)
        return registered
