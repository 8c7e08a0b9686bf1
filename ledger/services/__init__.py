"""
Services module for TripLedger business logic.

The continuity engine and anomaly detector are pure functions over trip
sequences; the store and orchestrator add persistence, locking and logging
around them for the Flask route handlers.
"""

from services.continuity_engine import (
    CascadeResult,
    CascadeRow,
    apply,
    preview,
    sequence_key,
    sequence_version,
    sort_trips,
)
from services.anomaly_detector import (
    AnomalyContext,
    AnomalyFlag,
    AnomalyKind,
    build_context,
    evaluate,
)
from services.continuity_analysis import (
    analyze_continuity,
    find_gaps,
    validate_chain,
)
from services.trip_store import TripSequenceStore
from services.correction_orchestrator import CorrectionOrchestrator

__all__ = [
    # Continuity engine
    'CascadeResult',
    'CascadeRow',
    'preview',
    'apply',
    'sequence_key',
    'sequence_version',
    'sort_trips',
    # Anomaly detector
    'AnomalyContext',
    'AnomalyFlag',
    'AnomalyKind',
    'build_context',
    'evaluate',
    # Continuity analysis
    'analyze_continuity',
    'find_gaps',
    'validate_chain',
    # Orchestration
    'TripSequenceStore',
    'CorrectionOrchestrator',
]
