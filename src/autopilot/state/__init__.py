from autopilot.state.models import (
    ErrorRecord,
    PendingQuestion,
    PhaseState,
    QuestionItem,
    QuestionOption,
    RunState,
)
from autopilot.state.store import StateStore, StateStoreError

__all__ = [
    "ErrorRecord",
    "PendingQuestion",
    "PhaseState",
    "QuestionItem",
    "QuestionOption",
    "RunState",
    "StateStore",
    "StateStoreError",
]
