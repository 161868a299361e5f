"""
Tests for the agent directory and its TTL cache.
The cache clock is injected, so expiry is tested without sleeping.
"""
import pytest

from competency_training.database import InMemoryTrainingStore
from competency_training.directory import CachedAgentDirectory, StoreAgentDirectory, TTLCache
from competency_training.errors import NotFoundError
from competency_training.models import Agent


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class CountingDirectory(StoreAgentDirectory):
    def __init__(self, store):
        super().__init__(store)
        self.lookups = 0

    def get_agent(self, agent_id):
        self.lookups += 1
        return super().get_agent(agent_id)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def inner():
    return CountingDirectory(InMemoryTrainingStore())


@pytest.fixture
def directory(inner, clock):
    return CachedAgentDirectory(inner, TTLCache(ttl_seconds=60, clock=clock))


class TestTTLCache:
    def test_hit_and_miss_counts(self, clock):
        cache = TTLCache(ttl_seconds=10, clock=clock)
        assert cache.get("k") is None
        cache.set("k", 1)
        assert cache.get("k") == 1
        assert cache.get_stats() == {"hits": 1, "misses": 1, "size": 1}

    def test_entry_expires(self, clock):
        cache = TTLCache(ttl_seconds=10, clock=clock)
        cache.set("k", "v")
        clock.now = 9.9
        assert cache.get("k") == "v"
        clock.now = 10.0
        assert cache.get("k") is None
        assert cache.get_stats()["size"] == 0

    def test_invalidate_one_and_all(self, clock):
        cache = TTLCache(clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.invalidate("a")
        assert cache.get("a") is None
        assert cache.get("b") == 2
        cache.invalidate()
        assert cache.get("b") is None


class TestCachedAgentDirectory:
    def test_unknown_agent_raises(self, directory):
        with pytest.raises(NotFoundError, match="Agent 'ghost' not found"):
            directory.get_agent("ghost")

    def test_lookups_are_cached(self, directory, inner):
        directory.register(Agent("a1", "Sage"))
        for _ in range(3):
            assert directory.get_agent("a1").name == "Sage"
        assert inner.lookups == 1

    def test_cache_refreshes_after_ttl(self, directory, inner, clock):
        directory.register(Agent("a1", "Sage"))
        directory.get_agent("a1")
        clock.now = 61
        directory.get_agent("a1")
        assert inner.lookups == 2

    def test_register_invalidates(self, directory):
        directory.register(Agent("a1", "Sage"))
        assert [a.id for a in directory.get_all_agents()] == ["a1"]
        assert directory.get_agent("a1").name == "Sage"

        directory.register(Agent("a1", "Sage Prime"))
        directory.register(Agent("a2", "Orion"))
        assert directory.get_agent("a1").name == "Sage Prime"
        assert {a.id for a in directory.get_all_agents()} == {"a1", "a2"}

    def test_get_all_agents_returns_copy(self, directory):
        directory.register(Agent("a1", "Sage"))
        agents = directory.get_all_agents()
        agents.clear()
        assert len(directory.get_all_agents()) == 1
