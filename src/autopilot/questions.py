"""Suspend/resume primitive for human-in-the-loop decisions.

``QuestionBroker.ask`` parks the caller on a future keyed by question id and
publishes the question on the event bus; ``QuestionBroker.answer`` resolves it.
The broker never writes run state. It only reads it to re-link a question that
was still waiting when the previous process stopped.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from uuid import uuid4

from autopilot.events import QUESTION_ANSWERED, QUESTION_PENDING, EventBus
from autopilot.state.models import (
    PendingQuestion,
    QuestionItem,
    RunState,
    normalize_phase_number,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

Answers = dict[str, str]


class QuestionCancelledError(RuntimeError):
    """Raised inside a waiting ``ask`` when its question is cancelled."""


@dataclass(slots=True)
class _Waiter:
    record: PendingQuestion
    future: asyncio.Future[Answers]


class QuestionBroker:
    def __init__(
        self,
        events: EventBus,
        *,
        state_reader: Callable[[], RunState] | None = None,
    ) -> None:
        self.events = events
        self._state_reader = state_reader
        self._waiters: dict[str, _Waiter] = {}
        self._early_answers: dict[str, Answers] = {}

    def _persisted_questions(self) -> list[PendingQuestion]:
        if self._state_reader is None:
            return []
        return self._state_reader().pending_questions

    def _relink(
        self, phase: float, step: str, questions: list[QuestionItem]
    ) -> PendingQuestion | None:
        signature = (
            normalize_phase_number(phase),
            step,
            tuple(item.question for item in questions),
        )
        for record in self._persisted_questions():
            if record.id in self._waiters:
                continue
            if record.is_answered and record.id not in self._early_answers:
                continue
            if record.signature() == signature:
                return record
        return None

    async def ask(
        self,
        questions: list[QuestionItem],
        *,
        phase: float,
        step: str,
    ) -> Answers:
        """Publish ``questions`` and wait, without a time limit, for the answer."""
        record = self._relink(phase, step, questions)
        if record is not None:
            logger.info(
                "Re-linked pending question %s",
                record.id,
                extra={"phase": phase, "step": step},
            )
            record.questions = list(questions)
        else:
            record = PendingQuestion(
                id=uuid4().hex,
                phase=normalize_phase_number(phase),
                step=step,
                questions=list(questions),
                created_at=utcnow_iso(),
            )

        future: asyncio.Future[Answers] = asyncio.get_running_loop().create_future()
        self._waiters[record.id] = _Waiter(record=record, future=future)
        try:
            self.events.emit(QUESTION_PENDING, record.to_dict())
            early = self._early_answers.pop(record.id, None)
            if early is not None:
                self._resolve(record.id, early)
            return await future
        finally:
            self._waiters.pop(record.id, None)

    def answer(self, question_id: str, answers: Answers) -> bool:
        """Resolve a waiting question. Returns ``False`` when nothing was resolved."""
        waiter = self._waiters.get(question_id)
        if waiter is not None:
            if waiter.future.done():
                return False
            self._resolve(question_id, answers)
            return True

        for record in self._persisted_questions():
            if record.id == question_id and not record.is_answered:
                # Waiting in the state file but not yet re-asked in this process;
                # hold it until the matching ask re-links.
                self._early_answers[question_id] = dict(answers)
                logger.info("Holding answer for question %s until it is re-asked", question_id)
                return True
        logger.debug("Ignoring answer for unknown question %s", question_id)
        return False

    def _resolve(self, question_id: str, answers: Answers) -> None:
        waiter = self._waiters[question_id]
        waiter.future.set_result(dict(answers))
        self.events.emit(
            QUESTION_ANSWERED,
            {"id": question_id, "answers": dict(answers), "answeredAt": utcnow_iso()},
        )

    def pending(self) -> list[PendingQuestion]:
        return [waiter.record for waiter in self._waiters.values() if not waiter.future.done()]

    def cancel_all(self, reason: str = "Question cancelled") -> None:
        for waiter in list(self._waiters.values()):
            if not waiter.future.done():
                waiter.future.set_exception(QuestionCancelledError(reason))
