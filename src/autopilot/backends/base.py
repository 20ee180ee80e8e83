from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

AgentMessage = dict[str, Any]

# Message type a backend yields when the agent wants a human decision. The
# consumer answers by sending ``{question text: chosen label}`` back through
# ``asend``; every other message expects ``None``.
QUESTION_MESSAGE = "question_request"
QUESTION_TOOL = "AskUserQuestion"


class BackendExecutionError(RuntimeError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


class AgentBackend(ABC):
    @abstractmethod
    def stream(
        self,
        prompt: str,
        *,
        cwd: Path | None = None,
    ) -> AsyncGenerator[AgentMessage, dict[str, str] | None]:
        """Run one agent invocation and stream its structured messages.

        The stream ends after a message with ``type == "result"``.
        """
