from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal

from autopilot.commands import CommandResult
from autopilot.events import ERROR_ESCALATION, EventBus
from autopilot.questions import QuestionBroker, QuestionCancelledError
from autopilot.state.models import (
    ErrorRecord,
    QuestionItem,
    QuestionOption,
    format_phase_number,
)

logger = logging.getLogger(__name__)

EscalationDecision = Literal["retry", "skip", "abort"]
ESCALATION_OPTIONS: tuple[EscalationDecision, ...] = ("retry", "skip", "abort")

Invocation = Callable[[], Awaitable[CommandResult]]
EscalationHandler = Callable[[dict[str, Any]], Awaitable[EscalationDecision]]
ErrorRecorder = Callable[[ErrorRecord], None]


class ShutdownAbort(RuntimeError):
    """A command failed while shutdown was in progress; not retried or escalated."""


class FatalAbort(RuntimeError):
    """The run cannot continue: the human aborted or escalation was impossible."""

    def __init__(
        self, message: str, *, phase: float | None = None, step: str | None = None
    ) -> None:
        super().__init__(message)
        self.phase = phase
        self.step = step


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.0


class RetryExecutor:
    """Runs one step invocation with automatic retries, then human escalation.

    The executor never writes run state itself; failures are handed to
    ``record_error`` so the orchestrator stays the single state mutator.
    """

    def __init__(
        self,
        events: EventBus,
        *,
        policy: RetryPolicy | None = None,
        is_shutting_down: Callable[[], bool] = lambda: False,
        record_error: ErrorRecorder | None = None,
    ) -> None:
        self.events = events
        self.policy = policy or RetryPolicy()
        self.is_shutting_down = is_shutting_down
        self.record_error = record_error

    async def _attempt(self, invocation: Invocation, *, phase: float, step: str) -> CommandResult:
        try:
            result = await invocation()
        except Exception as exc:
            if self.is_shutting_down():
                raise ShutdownAbort(f"Shutdown during {step} of phase {phase}: {exc}") from exc
            logger.warning(
                "Invocation raised: %s", exc, extra={"phase": phase, "step": step}
            )
            return CommandResult.failure(str(exc))
        if not result.success and self.is_shutting_down():
            raise ShutdownAbort(
                f"Shutdown during {step} of phase {phase}: {result.error or 'command failed'}"
            )
        return result

    async def execute_with_retry(
        self,
        invocation: Invocation,
        on_escalate: EscalationHandler | None,
        *,
        phase: float,
        step: str,
    ) -> CommandResult:
        result = await self._attempt(invocation, phase=phase, step=step)
        attempt = 0
        while not result.success and result.retriable and attempt < self.policy.max_retries:
            attempt += 1
            delay = self.policy.backoff_seconds * (2 ** (attempt - 1))
            logger.info(
                "Retrying after failure (attempt %d): %s",
                attempt,
                result.error,
                extra={"phase": phase, "step": step},
            )
            if delay > 0:
                await asyncio.sleep(delay)
            result = await self._attempt(invocation, phase=phase, step=step)
        if result.success:
            return result
        if not result.retriable:
            logger.warning(
                "Not retrying: %s", result.error, extra={"phase": phase, "step": step}
            )

        error = result.error or "Command failed"
        if self.record_error is not None:
            self.record_error(
                ErrorRecord.create(phase=phase, step=step, message=error, output=result.result)
            )
        payload = {
            "phase": phase,
            "step": step,
            "error": error,
            "options": list(ESCALATION_OPTIONS),
        }
        self.events.emit(ERROR_ESCALATION, payload)

        if on_escalate is None:
            raise FatalAbort(
                f"Step {step} of phase {phase} failed and no escalation handler is set: {error}",
                phase=phase,
                step=step,
            )
        try:
            decision = await on_escalate(payload)
        except QuestionCancelledError as exc:
            if self.is_shutting_down():
                raise ShutdownAbort(f"Shutdown while escalating {step} of phase {phase}") from exc
            raise FatalAbort(
                f"Escalation for {step} of phase {phase} was cancelled: {exc}",
                phase=phase,
                step=step,
            ) from exc
        logger.info("Escalation decision: %s", decision, extra={"phase": phase, "step": step})
        if decision == "retry":
            return await self._attempt(invocation, phase=phase, step=step)
        if decision == "skip":
            return CommandResult.skipped_result(f"Skipped after failure: {error}")
        raise FatalAbort(f"Aborted at {step} of phase {phase}: {error}", phase=phase, step=step)


class QuestionEscalation:
    """Escalation handler that asks a human to retry, skip or abort."""

    HEADER = "Step failed"

    def __init__(self, broker: QuestionBroker) -> None:
        self.broker = broker

    @staticmethod
    def build_question(payload: dict[str, Any]) -> QuestionItem:
        # The error text stays out of the question so a restart can re-link it.
        error = str(payload.get("error") or "")
        return QuestionItem(
            question=(
                f"Phase {format_phase_number(float(payload.get('phase') or 0))} "
                f"step '{payload.get('step')}' keeps failing. "
                "How should the run continue?"
            ),
            header=(
                f"{QuestionEscalation.HEADER}: {error[:200]}" if error else QuestionEscalation.HEADER
            ),
            options=[
                QuestionOption("retry", "Run the step one more time"),
                QuestionOption("skip", "Mark the step done and move on"),
                QuestionOption("abort", "Stop the run"),
            ],
        )

    async def __call__(self, payload: dict[str, Any]) -> EscalationDecision:
        question = self.build_question(payload)
        answers = await self.broker.ask(
            [question],
            phase=float(payload.get("phase") or 0),
            step=str(payload.get("step") or "idle"),
        )
        choice = answers.get(question.question, "abort").strip().lower()
        if choice in ESCALATION_OPTIONS:
            return choice  # type: ignore[return-value]
        return "abort"
