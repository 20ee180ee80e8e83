from autopilot.backends.base import (
    QUESTION_MESSAGE,
    QUESTION_TOOL,
    AgentBackend,
    AgentMessage,
    BackendExecutionError,
    BackendProcessError,
)
from autopilot.backends.claude import ClaudeCodeBackend

__all__ = [
    "QUESTION_MESSAGE",
    "QUESTION_TOOL",
    "AgentBackend",
    "AgentMessage",
    "BackendExecutionError",
    "BackendProcessError",
    "ClaudeCodeBackend",
]
