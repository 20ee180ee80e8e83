import asyncio
import time
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest

from autopilot.backends.base import (
    QUESTION_MESSAGE,
    AgentBackend,
    AgentMessage,
    BackendExecutionError,
    BackendProcessError,
)
from autopilot.commands import CommandRunner, parse_result
from autopilot.events import EventBus
from autopilot.questions import QuestionBroker

QUESTION_INPUT = {
    "questions": [
        {
            "question": "Pick a database",
            "header": "DB",
            "options": [
                {"label": "Postgres", "description": "relational"},
                {"label": "Mongo", "description": "document"},
            ],
            "multiSelect": False,
        }
    ]
}


def _success(text: str = "done") -> AgentMessage:
    return {
        "type": "result",
        "subtype": "success",
        "is_error": False,
        "result": text,
        "session_id": "sess-1",
        "total_cost_usd": 0.25,
        "num_turns": 4,
    }


class ScriptedBackend(AgentBackend):
    def __init__(self, messages: list[AgentMessage], *, delay: float = 0.0) -> None:
        self.messages = messages
        self.delay = delay
        self.replies: list[dict[str, str] | None] = []
        self.closed = False

    async def stream(
        self, prompt: str, *, cwd: Path | None = None
    ) -> AsyncGenerator[AgentMessage, dict[str, str] | None]:
        _ = prompt, cwd
        try:
            for message in self.messages:
                if self.delay:
                    await asyncio.sleep(self.delay)
                reply = yield message
                if message.get("type") == QUESTION_MESSAGE:
                    self.replies.append(reply)
        finally:
            self.closed = True


class ExplodingBackend(AgentBackend):
    async def stream(
        self, prompt: str, *, cwd: Path | None = None
    ) -> AsyncGenerator[AgentMessage, dict[str, str] | None]:
        _ = prompt, cwd
        raise BackendExecutionError("process crashed", backend="fake", exit_code=1)
        yield {}  # pragma: no cover


def _runner(backend: AgentBackend, **kwargs) -> CommandRunner:
    return CommandRunner(backend, QuestionBroker(EventBus()), **kwargs)


def test_run_command_returns_parsed_success() -> None:
    backend = ScriptedBackend(
        [{"type": "system", "subtype": "init", "session_id": "sess-init"}, _success()]
    )
    result = asyncio.run(_runner(backend).run_command("/gsd:plan-phase 1", phase=1, step="plan"))

    assert result.success is True
    assert result.result == "done"
    assert result.session_id == "sess-1"
    assert result.cost_usd == 0.25
    assert result.num_turns == 4
    assert backend.closed is True


def test_parse_result_classifies_errors() -> None:
    started = time.monotonic()

    max_turns = parse_result({"type": "result", "subtype": "error_max_turns"}, "s", started)
    assert max_turns.success is False
    assert max_turns.error == "Command failed: error_max_turns"
    assert max_turns.session_id == "s"

    listed = parse_result(
        {"type": "result", "subtype": "error_during_execution", "errors": ["a", "b"]}, "s", started
    )
    assert listed.error == "a; b"

    flagged = parse_result(
        {"type": "result", "subtype": "success", "is_error": True, "result": "API error"},
        "s",
        started,
    )
    assert flagged.success is False
    assert flagged.result == "API error"
    assert flagged.error == "API error"


def test_stream_without_result_is_failure() -> None:
    backend = ScriptedBackend([{"type": "assistant", "message": {"content": []}}])
    result = asyncio.run(_runner(backend).run_command("x"))

    assert result.success is False
    assert "No result" in (result.error or "")


def test_backend_errors_become_failed_results() -> None:
    result = asyncio.run(_runner(ExplodingBackend()).run_command("x"))

    assert result.success is False
    assert result.error == "process crashed"
    assert result.retriable is True


def test_missing_binary_is_not_retriable() -> None:
    class MissingBinaryBackend(AgentBackend):
        async def stream(
            self, prompt: str, *, cwd: Path | None = None
        ) -> AsyncGenerator[AgentMessage, dict[str, str] | None]:
            _ = prompt, cwd
            raise BackendProcessError(
                "Claude binary not found: claude", backend="claude", retriable=False
            )
            yield {}  # pragma: no cover

    result = asyncio.run(_runner(MissingBinaryBackend()).run_command("x"))

    assert result.success is False
    assert result.retriable is False


def test_timeout_returns_timed_out_result() -> None:
    backend = ScriptedBackend([_success()], delay=1.0)
    result = asyncio.run(_runner(backend).run_command("x", timeout_seconds=0.05))

    assert result.success is False
    assert result.timed_out is True
    assert backend.closed is True


def test_question_is_routed_through_broker_and_answer_sent_back() -> None:
    backend = ScriptedBackend(
        [{"type": QUESTION_MESSAGE, "input": QUESTION_INPUT}, _success()]
    )
    broker = QuestionBroker(EventBus())
    runner = CommandRunner(backend, broker)

    async def _scenario():
        task = asyncio.create_task(runner.run_command("x", phase=2, step="discuss"))
        while not broker.pending():
            await asyncio.sleep(0.001)
        record = broker.pending()[0]
        assert record.phase == 2
        assert record.step == "discuss"
        assert record.questions[0].options[1].label == "Mongo"
        broker.answer(record.id, {"Pick a database": "Mongo"})
        return await task

    result = asyncio.run(_scenario())

    assert result.success is True
    assert backend.replies == [{"Pick a database": "Mongo"}]


def test_human_wait_does_not_count_against_timeout() -> None:
    backend = ScriptedBackend(
        [{"type": QUESTION_MESSAGE, "input": QUESTION_INPUT}, _success()]
    )
    broker = QuestionBroker(EventBus())
    runner = CommandRunner(backend, broker, default_timeout_seconds=0.2)

    async def _scenario():
        task = asyncio.create_task(runner.run_command("x"))
        while not broker.pending():
            await asyncio.sleep(0.001)
        await asyncio.sleep(0.4)
        broker.answer(broker.pending()[0].id, {"Pick a database": "Postgres"})
        return await task

    result = asyncio.run(_scenario())

    assert result.success is True
    assert result.timed_out is False


def test_auto_answer_picks_first_option_without_asking() -> None:
    backend = ScriptedBackend(
        [{"type": QUESTION_MESSAGE, "input": QUESTION_INPUT}, _success()]
    )
    events = EventBus()
    asked: list[dict] = []
    events.on_any(lambda event, data: asked.append(data))
    runner = CommandRunner(backend, QuestionBroker(events), auto_answer=True)

    result = asyncio.run(runner.run_command("x"))

    assert result.success is True
    assert backend.replies == [{"Pick a database": "Postgres"}]
    assert asked == []


def test_cancelled_question_fails_the_command() -> None:
    backend = ScriptedBackend(
        [{"type": QUESTION_MESSAGE, "input": QUESTION_INPUT}, _success()]
    )
    broker = QuestionBroker(EventBus())
    runner = CommandRunner(backend, broker)

    async def _scenario():
        task = asyncio.create_task(runner.run_command("x"))
        while not broker.pending():
            await asyncio.sleep(0.001)
        broker.cancel_all("shutdown")
        return await task

    result = asyncio.run(_scenario())

    assert result.success is False
    assert result.error == "shutdown"
    assert backend.closed is True


def test_concurrent_commands_are_rejected() -> None:
    backend = ScriptedBackend([_success()], delay=0.05)
    runner = _runner(backend)

    async def _scenario() -> None:
        first = asyncio.create_task(runner.run_command("a"))
        await asyncio.sleep(0)
        with pytest.raises(RuntimeError, match="already running"):
            await runner.run_command("b")
        await first

    asyncio.run(_scenario())
    assert runner.is_running is False
