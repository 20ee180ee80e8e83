from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

RunStatus = Literal["idle", "running", "waiting_for_human", "error", "complete"]
PhaseStatus = Literal["pending", "in_progress", "completed", "failed", "skipped"]
CurrentStep = Literal["idle", "discuss", "plan", "execute", "verify", "done"]
StepName = Literal["discuss", "plan", "execute", "verify"]
StepStatus = Literal["idle", "in_progress", "done"]

RUN_STATUSES = ("idle", "running", "waiting_for_human", "error", "complete")
PHASE_STATUSES = ("pending", "in_progress", "completed", "failed", "skipped")
CURRENT_STEPS = ("idle", "discuss", "plan", "execute", "verify", "done")
STEP_NAMES: tuple[StepName, ...] = ("discuss", "plan", "execute", "verify")
STEP_STATUSES = ("idle", "in_progress", "done")

MAX_ERROR_HISTORY = 50
MAX_ERROR_MESSAGE_CHARS = 2000
MAX_TRUNCATED_OUTPUT_CHARS = 500


class StateSchemaError(ValueError):
    """Raised when a persisted payload does not match the run-state schema."""


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _require(payload: dict[str, Any], key: str, context: str) -> Any:
    if key not in payload:
        raise StateSchemaError(f"{context}: missing field '{key}'")
    return payload[key]


def _choice(value: Any, allowed: tuple[str, ...], context: str) -> Any:
    if value not in allowed:
        raise StateSchemaError(f"{context}: {value!r} is not one of {', '.join(allowed)}")
    return value


def _number(value: Any, context: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise StateSchemaError(f"{context}: expected a number, got {value!r}")
    return normalize_phase_number(value)


def normalize_phase_number(value: float) -> float:
    # 3.0 and 3 must compare and serialise the same way.
    number = float(value)
    return round(number, 4)


def format_phase_number(value: float) -> str:
    number = normalize_phase_number(value)
    if number.is_integer():
        return str(int(number))
    return f"{number:.4f}".rstrip("0").rstrip(".")


def _json_number(value: float) -> int | float:
    number = normalize_phase_number(value)
    return int(number) if number.is_integer() else number


@dataclass(slots=True)
class QuestionOption:
    label: str
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"label": self.label, "description": self.description}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QuestionOption:
        return cls(
            label=str(data.get("label", "")),
            description=str(data.get("description", "")),
        )


@dataclass(slots=True)
class QuestionItem:
    question: str
    header: str = ""
    options: list[QuestionOption] = field(default_factory=list)
    multi_select: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "question": self.question,
            "header": self.header,
            "options": [option.to_dict() for option in self.options],
            "multiSelect": self.multi_select,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QuestionItem:
        options = data.get("options", [])
        return cls(
            question=str(data.get("question", "")),
            header=str(data.get("header", "")),
            options=[
                QuestionOption.from_dict(option)
                for option in options
                if isinstance(option, dict)
            ],
            multi_select=bool(data.get("multiSelect", data.get("multi_select", False))),
        )


@dataclass(slots=True)
class PendingQuestion:
    id: str
    phase: float
    step: str
    questions: list[QuestionItem]
    created_at: str = field(default_factory=utcnow_iso)
    answered_at: str | None = None
    answers: dict[str, str] | None = None

    @property
    def is_answered(self) -> bool:
        return self.answered_at is not None

    def signature(self) -> tuple[float, str, tuple[str, ...]]:
        return (
            normalize_phase_number(self.phase),
            self.step,
            tuple(item.question for item in self.questions),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "phase": _json_number(self.phase),
            "step": self.step,
            "questions": [item.to_dict() for item in self.questions],
            "createdAt": self.created_at,
        }
        if self.answered_at is not None:
            payload["answeredAt"] = self.answered_at
        if self.answers is not None:
            payload["answers"] = dict(self.answers)
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingQuestion:
        context = "pendingQuestions[]"
        raw_questions = _require(data, "questions", context)
        if not isinstance(raw_questions, list):
            raise StateSchemaError(f"{context}: 'questions' must be a list")
        questions: list[QuestionItem] = []
        for item in raw_questions:
            if isinstance(item, dict):
                questions.append(QuestionItem.from_dict(item))
            elif isinstance(item, str):
                questions.append(QuestionItem(question=item))
        answers = data.get("answers")
        return cls(
            id=str(_require(data, "id", context)),
            phase=_number(_require(data, "phase", context), context),
            step=str(_require(data, "step", context)),
            questions=questions,
            created_at=str(_require(data, "createdAt", context)),
            answered_at=data.get("answeredAt"),
            answers={str(k): str(v) for k, v in answers.items()}
            if isinstance(answers, dict)
            else None,
        )


@dataclass(slots=True)
class ErrorRecord:
    phase: float
    step: str
    message: str
    truncated_output: str | None = None
    timestamp: str = field(default_factory=utcnow_iso)

    @classmethod
    def create(
        cls,
        *,
        phase: float,
        step: str,
        message: str,
        output: str | None = None,
    ) -> ErrorRecord:
        return cls(
            phase=normalize_phase_number(phase),
            step=step,
            message=message[:MAX_ERROR_MESSAGE_CHARS],
            truncated_output=output[:MAX_TRUNCATED_OUTPUT_CHARS] if output else None,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": self.timestamp,
            "phase": _json_number(self.phase),
            "step": self.step,
            "message": self.message,
        }
        if self.truncated_output is not None:
            payload["truncatedOutput"] = self.truncated_output
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErrorRecord:
        context = "errorHistory[]"
        return cls(
            timestamp=str(_require(data, "timestamp", context)),
            phase=_number(_require(data, "phase", context), context),
            step=str(_require(data, "step", context)),
            message=str(_require(data, "message", context)),
            truncated_output=data.get("truncatedOutput"),
        )


def _default_steps() -> dict[str, StepStatus]:
    return {step: "idle" for step in STEP_NAMES}


@dataclass(slots=True)
class PhaseState:
    number: float
    name: str
    status: PhaseStatus = "pending"
    steps: dict[str, StepStatus] = field(default_factory=_default_steps)
    started_at: str | None = None
    completed_at: str | None = None
    commits: list[str] = field(default_factory=list)
    gap_iterations: int = 0
    inserted: bool = False
    depends_on: str | None = None

    @property
    def is_finished(self) -> bool:
        return self.status in {"completed", "skipped"}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "number": _json_number(self.number),
            "name": self.name,
            "status": self.status,
            "steps": {step: self.steps.get(step, "idle") for step in STEP_NAMES},
            "commits": list(self.commits),
            "gapIterations": self.gap_iterations,
            "inserted": self.inserted,
            "dependsOn": self.depends_on,
        }
        if self.started_at is not None:
            payload["startedAt"] = self.started_at
        if self.completed_at is not None:
            payload["completedAt"] = self.completed_at
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PhaseState:
        context = f"phases[{data.get('number', '?')}]"
        raw_steps = _require(data, "steps", context)
        if not isinstance(raw_steps, dict):
            raise StateSchemaError(f"{context}: 'steps' must be an object")
        steps: dict[str, StepStatus] = {}
        for step in STEP_NAMES:
            value = raw_steps.get(step, "idle")
            # Older state files recorded the running step's own name.
            if value in {"discuss", "plan", "execute", "verify"}:
                value = "in_progress"
            steps[step] = _choice(value, STEP_STATUSES, f"{context}.steps.{step}")
        commits = data.get("commits", [])
        return cls(
            number=_number(_require(data, "number", context), context),
            name=str(_require(data, "name", context)),
            status=_choice(_require(data, "status", context), PHASE_STATUSES, context),
            steps=steps,
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
            commits=[
                str(item.get("hash", "")) if isinstance(item, dict) else str(item)
                for item in commits
            ]
            if isinstance(commits, list)
            else [],
            gap_iterations=int(data.get("gapIterations", 0)),
            inserted=bool(data.get("inserted", False)),
            depends_on=data.get("dependsOn"),
        )


@dataclass(slots=True)
class RunState:
    status: RunStatus = "idle"
    current_phase: float = 0
    current_step: CurrentStep = "idle"
    phases: list[PhaseState] = field(default_factory=list)
    pending_questions: list[PendingQuestion] = field(default_factory=list)
    error_history: list[ErrorRecord] = field(default_factory=list)
    started_at: str = field(default_factory=utcnow_iso)
    last_updated_at: str = field(default_factory=utcnow_iso)

    def find_phase(self, number: float) -> PhaseState | None:
        target = normalize_phase_number(number)
        for phase in self.phases:
            if normalize_phase_number(phase.number) == target:
                return phase
        return None

    def find_question(self, question_id: str) -> PendingQuestion | None:
        for question in self.pending_questions:
            if question.id == question_id:
                return question
        return None

    def unanswered_questions(self) -> list[PendingQuestion]:
        return [question for question in self.pending_questions if not question.is_answered]

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "currentPhase": _json_number(self.current_phase),
            "currentStep": self.current_step,
            "phases": [phase.to_dict() for phase in self.phases],
            "pendingQuestions": [question.to_dict() for question in self.pending_questions],
            "errorHistory": [record.to_dict() for record in self.error_history],
            "startedAt": self.started_at,
            "lastUpdatedAt": self.last_updated_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> RunState:
        if not isinstance(data, dict):
            raise StateSchemaError("run state must be a JSON object")
        context = "state"
        phases = _require(data, "phases", context)
        questions = data.get("pendingQuestions", [])
        errors = data.get("errorHistory", [])
        if not isinstance(phases, list) or not isinstance(questions, list):
            raise StateSchemaError(f"{context}: 'phases' and 'pendingQuestions' must be lists")
        if not isinstance(errors, list):
            raise StateSchemaError(f"{context}: 'errorHistory' must be a list")
        return cls(
            status=_choice(_require(data, "status", context), RUN_STATUSES, f"{context}.status"),
            current_phase=_number(_require(data, "currentPhase", context), context),
            current_step=_choice(
                _require(data, "currentStep", context), CURRENT_STEPS, f"{context}.currentStep"
            ),
            phases=[PhaseState.from_dict(item) for item in phases],
            pending_questions=[PendingQuestion.from_dict(item) for item in questions],
            error_history=[ErrorRecord.from_dict(item) for item in errors],
            started_at=str(_require(data, "startedAt", context)),
            last_updated_at=str(_require(data, "lastUpdatedAt", context)),
        )
