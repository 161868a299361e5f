"""
Shared pytest fixtures for the Competency Training Engine test suite.
All fixtures use mock mode — no Azure credentials required.
Factory helpers live in tests/factories.py so they can be imported
directly by test modules as well as being used here.
"""
import sys
import os

_tests_dir = os.path.dirname(__file__)
_src_dir   = os.path.join(_tests_dir, "..", "src")
for _p in (_tests_dir, _src_dir):
    if _p not in sys.path:
        sys.path.insert(0, _p)

# Force mock mode — never call Azure during tests
os.environ["FORCE_MOCK_MODE"] = "true"
os.environ.setdefault("AZURE_OPENAI_ENDPOINT", "<placeholder>")
os.environ.setdefault("AZURE_OPENAI_API_KEY",  "<placeholder>")


import pytest

from factories import make_service, make_specialty

from competency_training.database import InMemoryTrainingStore


# ─── pytest fixtures ──────────────────────────────────────────────────────────

@pytest.fixture
def store():
    return InMemoryTrainingStore()


@pytest.fixture
def service(store):
    svc = make_service(store=store)
    yield svc
    svc.scheduler.shutdown()


@pytest.fixture
def agent(service):
    return service.register_agent("agent-sage", "Sage", "Systems analyst persona")


@pytest.fixture
def specialty(service):
    return make_specialty(service)
