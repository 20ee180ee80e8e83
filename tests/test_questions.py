import asyncio

import pytest

from autopilot.events import QUESTION_ANSWERED, QUESTION_PENDING, EventBus
from autopilot.questions import QuestionBroker, QuestionCancelledError
from autopilot.state.models import PendingQuestion, QuestionItem, QuestionOption, RunState


def _question(text: str = "Which framework?") -> QuestionItem:
    return QuestionItem(
        question=text,
        header="Stack",
        options=[QuestionOption("FastAPI", "async"), QuestionOption("Flask", "sync")],
    )


def test_ask_waits_until_answered_and_emits_events() -> None:
    events = EventBus()
    seen: list[tuple[str, dict]] = []
    events.on_any(lambda event, data: seen.append((event, data)))
    broker = QuestionBroker(events)

    async def _scenario() -> dict[str, str]:
        task = asyncio.create_task(broker.ask([_question()], phase=2, step="discuss"))
        await asyncio.sleep(0)
        pending = broker.pending()
        assert len(pending) == 1
        assert not task.done()
        assert broker.answer(pending[0].id, {"Which framework?": "Flask"}) is True
        return await task

    answers = asyncio.run(_scenario())

    assert answers == {"Which framework?": "Flask"}
    assert [event for event, _ in seen] == [QUESTION_PENDING, QUESTION_ANSWERED]
    assert seen[0][1]["questions"][0]["options"][1]["label"] == "Flask"
    assert seen[1][1]["answers"] == {"Which framework?": "Flask"}
    assert broker.pending() == []


def test_second_and_unknown_answers_are_noops() -> None:
    broker = QuestionBroker(EventBus())

    async def _scenario() -> tuple[bool, bool, bool]:
        task = asyncio.create_task(broker.ask([_question()], phase=1, step="plan"))
        await asyncio.sleep(0)
        question_id = broker.pending()[0].id
        first = broker.answer(question_id, {"Which framework?": "FastAPI"})
        second = broker.answer(question_id, {"Which framework?": "Flask"})
        await task
        third = broker.answer(question_id, {"Which framework?": "Flask"})
        assert task.result() == {"Which framework?": "FastAPI"}
        return first, second, third

    assert asyncio.run(_scenario()) == (True, False, False)
    assert broker.answer("nope", {"x": "y"}) is False


def test_cancel_all_fails_waiting_asks() -> None:
    broker = QuestionBroker(EventBus())

    async def _scenario() -> None:
        task = asyncio.create_task(broker.ask([_question()], phase=1, step="plan"))
        await asyncio.sleep(0)
        broker.cancel_all("stopping")
        with pytest.raises(QuestionCancelledError, match="stopping"):
            await task

    asyncio.run(_scenario())
    assert broker.pending() == []


def test_ask_relinks_persisted_unanswered_question() -> None:
    persisted = PendingQuestion(id="persisted-1", phase=2, step="discuss", questions=[_question()])
    state = RunState(pending_questions=[persisted])
    events = EventBus()
    pending_ids: list[str] = []
    events.on(QUESTION_PENDING, lambda data: pending_ids.append(data["id"]))
    broker = QuestionBroker(events, state_reader=lambda: state)

    async def _scenario() -> dict[str, str]:
        task = asyncio.create_task(broker.ask([_question()], phase=2.0, step="discuss"))
        await asyncio.sleep(0)
        broker.answer("persisted-1", {"Which framework?": "FastAPI"})
        return await task

    assert asyncio.run(_scenario()) == {"Which framework?": "FastAPI"}
    assert pending_ids == ["persisted-1"]


def test_answer_before_relink_is_delivered_on_ask() -> None:
    persisted = PendingQuestion(id="early", phase=4, step="verify", questions=[_question()])
    state = RunState(pending_questions=[persisted])
    broker = QuestionBroker(EventBus(), state_reader=lambda: state)

    assert broker.answer("early", {"Which framework?": "Flask"}) is True

    async def _scenario() -> dict[str, str]:
        return await broker.ask([_question()], phase=4, step="verify")

    assert asyncio.run(_scenario()) == {"Which framework?": "Flask"}


def test_answered_persisted_question_is_not_relinked() -> None:
    persisted = PendingQuestion(
        id="done",
        phase=1,
        step="plan",
        questions=[_question()],
        answered_at="2026-01-01T00:00:00.000Z",
        answers={"Which framework?": "Flask"},
    )
    state = RunState(pending_questions=[persisted])
    broker = QuestionBroker(EventBus(), state_reader=lambda: state)

    async def _scenario() -> str:
        task = asyncio.create_task(broker.ask([_question()], phase=1, step="plan"))
        await asyncio.sleep(0)
        question_id = broker.pending()[0].id
        broker.answer(question_id, {"Which framework?": "FastAPI"})
        await task
        return question_id

    assert asyncio.run(_scenario()) != "done"
