import asyncio

import pytest

from autopilot.commands import CommandResult
from autopilot.events import ERROR_ESCALATION, QUESTION_PENDING, EventBus
from autopilot.orchestrator.retry import (
    FatalAbort,
    QuestionEscalation,
    RetryExecutor,
    RetryPolicy,
    ShutdownAbort,
)
from autopilot.questions import QuestionBroker
from autopilot.state.models import ErrorRecord


class FlakyInvocation:
    def __init__(self, outcomes: list[bool]) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self) -> CommandResult:
        self.calls += 1
        ok = self.outcomes.pop(0) if self.outcomes else False
        if ok:
            return CommandResult(success=True, result="ok")
        return CommandResult.failure(f"boom {self.calls}")


def _executor(events: EventBus, recorded: list[ErrorRecord], **kwargs) -> RetryExecutor:
    return RetryExecutor(events, record_error=recorded.append, **kwargs)


def _decide(decision: str):
    async def _handler(payload: dict) -> str:
        _ = payload
        return decision

    return _handler


def test_single_failure_is_retried_without_escalation() -> None:
    events = EventBus()
    escalations: list[dict] = []
    events.on(ERROR_ESCALATION, escalations.append)
    recorded: list[ErrorRecord] = []
    invocation = FlakyInvocation([False, True])

    result = asyncio.run(
        _executor(events, recorded).execute_with_retry(
            invocation, _decide("abort"), phase=1, step="plan"
        )
    )

    assert result.success is True
    assert invocation.calls == 2
    assert escalations == []
    assert recorded == []


def test_persistent_failure_escalates_once_and_records_error() -> None:
    events = EventBus()
    escalations: list[dict] = []
    events.on(ERROR_ESCALATION, escalations.append)
    recorded: list[ErrorRecord] = []
    invocation = FlakyInvocation([False, False])

    with pytest.raises(FatalAbort) as excinfo:
        asyncio.run(
            _executor(events, recorded).execute_with_retry(
                invocation, _decide("abort"), phase=2, step="execute"
            )
        )

    assert invocation.calls == 2
    assert len(escalations) == 1
    assert escalations[0]["error"] == "boom 2"
    assert escalations[0]["options"] == ["retry", "skip", "abort"]
    assert [(record.phase, record.step, record.message) for record in recorded] == [
        (2.0, "execute", "boom 2")
    ]
    assert excinfo.value.phase == 2
    assert excinfo.value.step == "execute"


def test_retry_decision_runs_one_more_attempt() -> None:
    invocation = FlakyInvocation([False, False, True])

    result = asyncio.run(
        _executor(EventBus(), []).execute_with_retry(
            invocation, _decide("retry"), phase=1, step="verify"
        )
    )

    assert result.success is True
    assert invocation.calls == 3


def test_retry_decision_failure_is_returned_not_escalated_again() -> None:
    events = EventBus()
    escalations: list[dict] = []
    events.on(ERROR_ESCALATION, escalations.append)
    invocation = FlakyInvocation([False, False, False])

    result = asyncio.run(
        _executor(events, []).execute_with_retry(
            invocation, _decide("retry"), phase=1, step="verify"
        )
    )

    assert result.success is False
    assert len(escalations) == 1


def test_skip_decision_returns_skipped_result() -> None:
    result = asyncio.run(
        _executor(EventBus(), []).execute_with_retry(
            FlakyInvocation([False, False]), _decide("skip"), phase=3, step="plan"
        )
    )

    assert result.success is True
    assert result.skipped is True


def test_missing_handler_is_fatal() -> None:
    with pytest.raises(FatalAbort, match="no escalation handler"):
        asyncio.run(
            _executor(EventBus(), []).execute_with_retry(
                FlakyInvocation([False, False]), None, phase=1, step="plan"
            )
        )


def test_zero_retries_escalates_after_first_failure() -> None:
    invocation = FlakyInvocation([False])

    asyncio.run(
        _executor(EventBus(), [], policy=RetryPolicy(max_retries=0)).execute_with_retry(
            invocation, _decide("skip"), phase=1, step="plan"
        )
    )

    assert invocation.calls == 1


def test_failure_during_shutdown_is_not_retried() -> None:
    events = EventBus()
    escalations: list[dict] = []
    events.on(ERROR_ESCALATION, escalations.append)
    invocation = FlakyInvocation([False, True])
    executor = _executor(events, [], is_shutting_down=lambda: True)

    with pytest.raises(ShutdownAbort):
        asyncio.run(executor.execute_with_retry(invocation, _decide("retry"), phase=1, step="plan"))

    assert invocation.calls == 1
    assert escalations == []


def test_non_retriable_failure_escalates_without_retry() -> None:
    events = EventBus()
    escalations: list[dict] = []
    events.on(ERROR_ESCALATION, escalations.append)
    recorded: list[ErrorRecord] = []
    calls = 0

    async def _missing_binary() -> CommandResult:
        nonlocal calls
        calls += 1
        return CommandResult.failure("Claude binary not found: claude", retriable=False)

    result = asyncio.run(
        _executor(events, recorded, policy=RetryPolicy(max_retries=3)).execute_with_retry(
            _missing_binary, _decide("skip"), phase=1, step="plan"
        )
    )

    assert calls == 1
    assert result.skipped is True
    assert [payload["error"] for payload in escalations] == ["Claude binary not found: claude"]
    assert [record.message for record in recorded] == ["Claude binary not found: claude"]


def test_raising_invocation_counts_as_failure() -> None:
    calls = 0

    async def _invocation() -> CommandResult:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("socket closed")
        return CommandResult(success=True)

    result = asyncio.run(
        _executor(EventBus(), []).execute_with_retry(_invocation, None, phase=1, step="plan")
    )

    assert result.success is True
    assert calls == 2


def test_question_escalation_asks_and_normalizes_answer() -> None:
    events = EventBus()
    broker = QuestionBroker(events)
    handler = QuestionEscalation(broker)
    asked: list[dict] = []
    events.on(QUESTION_PENDING, asked.append)

    async def _scenario(answer: str) -> str:
        task = asyncio.create_task(
            handler({"phase": 3.1, "step": "execute", "error": "tests failed"})
        )
        await asyncio.sleep(0)
        record = broker.pending()[0]
        broker.answer(record.id, {record.questions[0].question: answer})
        return await task

    assert asyncio.run(_scenario(" Skip ")) == "skip"
    assert asyncio.run(_scenario("something else")) == "abort"

    question = asked[0]["questions"][0]
    assert question["question"] == (
        "Phase 3.1 step 'execute' keeps failing. How should the run continue?"
    )
    assert question["header"] == "Step failed: tests failed"
    assert [option["label"] for option in question["options"]] == ["retry", "skip", "abort"]
    assert asked[0]["phase"] == 3.1
    assert asked[0]["step"] == "execute"
