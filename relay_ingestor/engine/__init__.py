"""Ingestion engine: dedup, filtering, poll and realtime drivers."""

from .dedup import DedupLedger, LedgerBook
from .filters import apply_filter, resolve_filter, validate_filter
from .materializer import (
    DryRunMaterializer,
    InMemoryTaskMaterializer,
    KafkaTaskMaterializer,
    TaskMaterializer,
)
from .pipeline import BatchOutcome, IngestPipeline
from .poller import PollInvoker, PollOutcome
from .realtime import RealtimeSessionManager, SessionStatus
from .service import IngestionEngine
from .state import InMemoryStateStore, PollLogEntry, StateStore

__all__ = [
    "BatchOutcome",
    "DedupLedger",
    "DryRunMaterializer",
    "InMemoryStateStore",
    "InMemoryTaskMaterializer",
    "IngestPipeline",
    "IngestionEngine",
    "KafkaTaskMaterializer",
    "LedgerBook",
    "PollInvoker",
    "PollLogEntry",
    "PollOutcome",
    "RealtimeSessionManager",
    "SessionStatus",
    "StateStore",
    "TaskMaterializer",
    "apply_filter",
    "resolve_filter",
    "validate_filter",
]
