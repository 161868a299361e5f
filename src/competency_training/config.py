"""
config.py — Central settings for the Competency Training Engine
================================================================
All configuration is loaded from environment variables / .env file.

Live mode activates automatically when AZURE_OPENAI_ENDPOINT and
AZURE_OPENAI_API_KEY contain real (non-placeholder) values and
FORCE_MOCK_MODE is not set.  Otherwise every provider call is served by
the deterministic mock tier.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Load .env into os.environ (no-op if already set, safe to call multiple times)
load_dotenv(override=False)

ANSWER_SOURCES = ("llm", "simulated", "reference")

_DEFAULT_DB_PATH = Path.cwd() / "competency_training.db"


# ─── Helpers ────────────────────────────────────────────────────────────────

def _is_placeholder(value: str) -> bool:
    """Return True if the value looks like an unfilled template placeholder."""
    return not value or "<" in value or value.startswith("your-") or value == "PLACEHOLDER"


# ─── Azure OpenAI ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class OpenAIConfig:
    endpoint:    str
    api_key:     str
    deployment:  str
    api_version: str

    @property
    def is_configured(self) -> bool:
        """True when both endpoint and key are real (non-placeholder) values."""
        return not _is_placeholder(self.endpoint) and not _is_placeholder(self.api_key)


# ─── Training engine ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TrainingConfig:
    default_max_iterations: int
    knowledge_confidence:   int     # baseline confidence of stored study artefacts
    answer_source:          str     # llm | simulated | reference
    simulated_accuracy:     float   # probability of a correct simulated answer
    db_path:                str


# ─── Background scheduler ────────────────────────────────────────────────────

@dataclass(frozen=True)
class SchedulerConfig:
    interval_seconds:    float
    ticks_per_phase:     int
    max_workers:         int
    filter_placeholders: bool   # advisory legitimacy filter; disable in production


# ─── App-level settings ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class AppConfig:
    force_mock_mode: bool
    log_level:       str


# ─── Master settings object ──────────────────────────────────────────────────

@dataclass(frozen=True)
class Settings:
    openai:    OpenAIConfig
    training:  TrainingConfig
    scheduler: SchedulerConfig
    app:       AppConfig

    @property
    def live_mode(self) -> bool:
        """True when Azure OpenAI creds are real and FORCE_MOCK_MODE is false."""
        return self.openai.is_configured and not self.app.force_mock_mode

    def status_summary(self) -> dict[str, str]:
        """Return a dict of service → status badge for the CLI."""
        def badge(ok: bool) -> str:
            return "🟢 Live" if ok else "⚪ Mock"

        return {
            "Azure OpenAI":     badge(self.live_mode),
            "Answer source":    self.training.answer_source,
            "Database":         self.training.db_path,
            "Placeholder filter": "on" if self.scheduler.filter_placeholders else "off",
        }


def get_settings() -> Settings:
    """Load all configuration from environment variables."""
    _str   = lambda k, d="": os.getenv(k, d).strip()
    _int   = lambda k, d=0: int(os.getenv(k, str(d)) or d)
    _float = lambda k, d=0.0: float(os.getenv(k, str(d)) or d)
    _bool  = lambda k, d=False: os.getenv(k, str(d)).lower() in ("1", "true", "yes")

    answer_source = _str("TRAINING_ANSWER_SOURCE", "simulated").lower()
    if answer_source not in ANSWER_SOURCES:
        raise ValueError(
            f"TRAINING_ANSWER_SOURCE must be one of {ANSWER_SOURCES}, got '{answer_source}'"
        )

    return Settings(
        openai=OpenAIConfig(
            endpoint    = _str("AZURE_OPENAI_ENDPOINT").rstrip("/"),
            api_key     = _str("AZURE_OPENAI_API_KEY"),
            deployment  = _str("AZURE_OPENAI_DEPLOYMENT", "gpt-4o"),
            api_version = _str("AZURE_OPENAI_API_VERSION", "2024-12-01-preview"),
        ),
        training=TrainingConfig(
            default_max_iterations = max(1, _int("TRAINING_DEFAULT_MAX_ITERATIONS", 10)),
            knowledge_confidence   = min(100, max(0, _int("TRAINING_KNOWLEDGE_CONFIDENCE", 75))),
            answer_source          = answer_source,
            simulated_accuracy     = min(1.0, max(0.0, _float("TRAINING_SIMULATED_ACCURACY", 0.7))),
            db_path                = _str("TRAINING_DB_PATH", str(_DEFAULT_DB_PATH)),
        ),
        scheduler=SchedulerConfig(
            interval_seconds    = _float("SCHEDULER_INTERVAL_SECONDS", 30.0),
            ticks_per_phase     = max(1, _int("SCHEDULER_TICKS_PER_PHASE", 2)),
            max_workers         = max(1, _int("SCHEDULER_MAX_WORKERS", 4)),
            filter_placeholders = _bool("SCHEDULER_FILTER_PLACEHOLDERS", True),
        ),
        app=AppConfig(
            force_mock_mode = _bool("FORCE_MOCK_MODE", False),
            log_level       = _str("LOG_LEVEL", "INFO").upper(),
        ),
    )
