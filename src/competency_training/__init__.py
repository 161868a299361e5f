"""
competency_training — Competency Training Engine for LLM agents
================================================================
Trains agents through a specialty's competency ladder with a test-first
loop: generate a test for the current level, grade the answers, advance or
study, repeat until the target level is reached or the iteration budget
runs out.  A background scheduler drives sessions unattended.

Module map
----------
  models.py         Dataclasses, Pydantic Question model, enums and the
                    level → score / question-count / difficulty tables.
  config.py         Settings loaded from .env; live vs mock detection.
  errors.py         NotFound / ValidationFailure / UpstreamGeneration /
                    ConcurrencyConflict.
  guardrails.py     BLOCK / WARN / INFO validation rules T-01 … T-09.
  database.py       TrainingStore: SQLite backing store + in-memory double.
  directory.py      Agent directory with an injectable TTL cache.
  providers.py      Azure OpenAI / mock question generation and rubric scoring.
  grading.py        TestGradingEngine.
  knowledge.py      Per-agent knowledge entries and keyword retrieval.
  events.py         EventBus and the logging / knowledge-tracking observers.
  answers.py        Answer sources for unattended iterations.
  registry.py       SpecialtyRegistry (two-phase delete) + built-in seeds.
  orchestrator.py   TrainingOrchestrator: the progression state machine.
  scheduler.py      BackgroundProgressionScheduler on a logical clock.
  service.py        TrainingService facade + progress summaries.
  factory.py        build_training_service(settings).
  cli.py            `competency-training` command.

Call order
----------
  TrainingService → TrainingOrchestrator → provider / grader → TrainingStore
  BackgroundProgressionScheduler ─(tick)→ TrainingOrchestrator.run_iteration
"""
__version__ = "0.1.0"
