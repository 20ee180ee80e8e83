from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from autopilot.backends.base import (
    QUESTION_MESSAGE,
    AgentBackend,
    AgentMessage,
    BackendExecutionError,
)
from autopilot.questions import QuestionBroker, QuestionCancelledError
from autopilot.state.models import QuestionItem

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 600.0

MessageHook = Callable[[AgentMessage], None]


@dataclass(slots=True)
class CommandResult:
    success: bool
    session_id: str = ""
    duration_ms: int = 0
    cost_usd: float = 0.0
    num_turns: int = 0
    result: str | None = None
    error: str | None = None
    timed_out: bool = False
    skipped: bool = False
    retriable: bool = True

    @classmethod
    def failure(
        cls,
        error: str,
        *,
        session_id: str = "",
        started: float | None = None,
        timed_out: bool = False,
        retriable: bool = True,
    ) -> CommandResult:
        duration_ms = int((time.monotonic() - started) * 1000) if started is not None else 0
        return cls(
            success=False,
            error=error,
            session_id=session_id,
            duration_ms=duration_ms,
            timed_out=timed_out,
            retriable=retriable,
        )

    @classmethod
    def skipped_result(cls, reason: str = "skipped") -> CommandResult:
        return cls(success=True, result=reason, skipped=True)


def parse_result(message: dict[str, Any], session_id: str, started: float) -> CommandResult:
    """Convert the agent's terminal ``result`` message into a CommandResult."""
    duration_ms = int((time.monotonic() - started) * 1000)
    cost_usd = float(message.get("total_cost_usd") or 0.0)
    num_turns = int(message.get("num_turns") or 0)
    session_id = str(message.get("session_id") or session_id)
    subtype = str(message.get("subtype") or "")
    is_error = bool(message.get("is_error"))
    text = message.get("result")
    text = text if isinstance(text, str) else None

    if subtype == "success" and not is_error:
        return CommandResult(
            success=True,
            result=text,
            session_id=session_id,
            duration_ms=duration_ms,
            cost_usd=cost_usd,
            num_turns=num_turns,
        )

    if subtype == "success":
        # is_error with a success subtype still carries the agent's explanation.
        return CommandResult(
            success=False,
            result=text,
            error=(text or "Command reported an error")[:2000],
            session_id=session_id,
            duration_ms=duration_ms,
            cost_usd=cost_usd,
            num_turns=num_turns,
        )

    errors = message.get("errors")
    if isinstance(errors, list) and errors:
        error = "; ".join(str(item) for item in errors)
    else:
        error = f"Command failed: {subtype or 'unknown'}"
    return CommandResult(
        success=False,
        error=error,
        session_id=session_id,
        duration_ms=duration_ms,
        cost_usd=cost_usd,
        num_turns=num_turns,
    )


def parse_question_items(tool_input: dict[str, Any]) -> list[QuestionItem]:
    raw_questions = tool_input.get("questions")
    if not isinstance(raw_questions, list):
        return []
    return [QuestionItem.from_dict(item) for item in raw_questions if isinstance(item, dict)]


def first_option_answers(questions: list[QuestionItem]) -> dict[str, str]:
    return {item.question: item.options[0].label for item in questions if item.options}


class CommandRunner:
    """Facade over one agent invocation.

    Applies the timeout, classifies the terminal result, and turns the agent's
    human-input requests into ``QuestionBroker.ask`` calls. Only time spent
    waiting on the agent counts against the timeout.
    """

    def __init__(
        self,
        backend: AgentBackend,
        broker: QuestionBroker,
        *,
        default_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        cwd: Path | None = None,
        auto_answer: bool = False,
        message_hook: MessageHook | None = None,
    ) -> None:
        self.backend = backend
        self.broker = broker
        self.default_timeout_seconds = default_timeout_seconds
        self.cwd = cwd
        self.auto_answer = auto_answer
        self.message_hook = message_hook
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_command(
        self,
        prompt: str,
        *,
        phase: float = 0,
        step: str = "idle",
        timeout_seconds: float | None = None,
    ) -> CommandResult:
        if self._running:
            raise RuntimeError(
                "A command is already running. CommandRunner does not support concurrent execution."
            )
        self._running = True
        budget = timeout_seconds if timeout_seconds is not None else self.default_timeout_seconds
        started = time.monotonic()
        agent_seconds = 0.0
        session_id = ""
        reply: dict[str, str] | None = None
        stream = self.backend.stream(prompt, cwd=self.cwd)
        logger.debug("Agent command started: %s", prompt, extra={"phase": phase, "step": step})

        try:
            while True:
                remaining = budget - agent_seconds
                if remaining <= 0:
                    return self._timed_out(budget, session_id, started)
                waited_from = time.monotonic()
                try:
                    message = await asyncio.wait_for(stream.asend(reply), timeout=remaining)
                except StopAsyncIteration:
                    break
                except TimeoutError:
                    return self._timed_out(budget, session_id, started)
                finally:
                    agent_seconds += time.monotonic() - waited_from
                reply = None

                if self.message_hook is not None:
                    self.message_hook(message)

                message_type = message.get("type")
                if message_type == "system" and message.get("subtype") == "init":
                    session_id = str(message.get("session_id") or session_id)
                elif message_type == QUESTION_MESSAGE:
                    reply = await self._handle_question(message, phase=phase, step=step)
                elif message_type == "result":
                    return parse_result(message, session_id, started)

            return CommandResult.failure(
                "No result message received from agent",
                session_id=session_id,
                started=started,
            )
        except BackendExecutionError as exc:
            logger.warning(
                "Agent backend failed: %s", exc, extra={"phase": phase, "step": step}
            )
            return CommandResult.failure(
                str(exc), session_id=session_id, started=started, retriable=exc.retriable
            )
        except QuestionCancelledError as exc:
            return CommandResult.failure(str(exc), session_id=session_id, started=started)
        finally:
            await stream.aclose()
            self._running = False

    def _timed_out(self, budget: float, session_id: str, started: float) -> CommandResult:
        return CommandResult.failure(
            f"Command timed out after {budget:.0f}s",
            session_id=session_id,
            started=started,
            timed_out=True,
        )

    async def _handle_question(
        self, message: AgentMessage, *, phase: float, step: str
    ) -> dict[str, str]:
        tool_input = message.get("input")
        questions = parse_question_items(tool_input if isinstance(tool_input, dict) else {})
        if not questions:
            return {}
        if self.auto_answer:
            answers = first_option_answers(questions)
            logger.info(
                "Auto-answered %d question(s)",
                len(answers),
                extra={"phase": phase, "step": step},
            )
            return answers
        return await self.broker.ask(questions, phase=phase, step=step)
