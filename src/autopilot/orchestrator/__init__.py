from autopilot.orchestrator.engine import MAX_GAP_VERIFICATIONS, Orchestrator
from autopilot.orchestrator.gaps import (
    PhaseRange,
    check_for_gaps,
    find_phase_dir,
    parse_phase_range,
)
from autopilot.orchestrator.retry import (
    EscalationDecision,
    FatalAbort,
    QuestionEscalation,
    RetryExecutor,
    RetryPolicy,
    ShutdownAbort,
)
from autopilot.orchestrator.roadmap import RoadmapPhase, extract_phases_from_content, merge_phases
from autopilot.orchestrator.shutdown import ShutdownController

__all__ = [
    "MAX_GAP_VERIFICATIONS",
    "EscalationDecision",
    "FatalAbort",
    "Orchestrator",
    "PhaseRange",
    "QuestionEscalation",
    "RetryExecutor",
    "RetryPolicy",
    "RoadmapPhase",
    "ShutdownAbort",
    "ShutdownController",
    "check_for_gaps",
    "extract_phases_from_content",
    "find_phase_dir",
    "merge_phases",
    "parse_phase_range",
]
