from __future__ import annotations

import asyncio
import json
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from autopilot.backends import AgentBackend, AgentMessage, ClaudeCodeBackend
from autopilot.commands import CommandRunner
from autopilot.config import (
    CONFIG_FILENAME,
    AutopilotConfig,
    ConfigError,
    load_config,
    save_config,
)
from autopilot.events import (
    BUILD_COMPLETE,
    ERROR_ESCALATION,
    GAP_ESCALATED,
    PHASE_COMPLETED,
    PHASE_STARTED,
    QUESTION_PENDING,
    STEP_COMPLETED,
    STEP_STARTED,
    EventBus,
)
from autopilot.ipc import (
    AnswerPoller,
    EventWriter,
    HeartbeatWriter,
    heartbeat_is_fresh,
    log_dir,
    read_heartbeat,
    write_answer,
)
from autopilot.logsetup import RingBufferHandler, configure_logging
from autopilot.orchestrator import (
    FatalAbort,
    Orchestrator,
    PhaseRange,
    QuestionEscalation,
    ShutdownController,
    parse_phase_range,
)
from autopilot.orchestrator.git import GitError
from autopilot.orchestrator.roadmap import roadmap_path
from autopilot.questions import QuestionBroker
from autopilot.state import StateStore, StateStoreError
from autopilot.state.models import format_phase_number
from autopilot.state.store import state_path_for

logger = logging.getLogger(__name__)

CLAUDE_BINARY = "claude"
WORKFLOWS_DIR = Path(".claude") / "get-shit-done"


@dataclass(slots=True)
class Runtime:
    project_dir: Path
    config: AutopilotConfig
    store: StateStore
    events: EventBus
    broker: QuestionBroker
    runner: CommandRunner
    orchestrator: Orchestrator
    log_buffer: RingBufferHandler | None = None


def _resolve_config_path(project_dir: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_dir / config_path
    return config_path.resolve()


def _load_config_or_fail(
    config_path: Path, overrides: dict[str, Any] | None = None
) -> AutopilotConfig:
    try:
        return load_config(config_path, overrides=overrides)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


def _preflight_failures() -> list[str]:
    """Return a message with a fix for every missing prerequisite of a run."""
    failures: list[str] = []
    if shutil.which(CLAUDE_BINARY) is None:
        failures.append(
            f"{CLAUDE_BINARY} CLI not found on PATH. "
            "Install it: npm install -g @anthropic-ai/claude-code"
        )
    workflows = Path.home() / WORKFLOWS_DIR
    if not workflows.is_dir():
        failures.append(
            f"Planning workflows not found at {workflows}. "
            "Install them: npm install -g get-shit-done-cc"
        )
    return failures


def _build_backend(project_dir: Path) -> AgentBackend:
    return ClaudeCodeBackend(working_directory=project_dir)


def _log_agent_message(message: AgentMessage) -> None:
    if message.get("type") == "assistant":
        content = (message.get("message") or {}).get("content") or []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                logger.debug("agent: %s", str(block.get("text", ""))[:500])


def _build_runtime(project_dir: Path, config: AutopilotConfig, *, resume: bool) -> Runtime:
    if resume:
        store = StateStore.restore(state_path_for(project_dir))
    else:
        store = StateStore.create_fresh(project_dir)
    events = EventBus()
    broker = QuestionBroker(events, state_reader=store.get_state)
    runner = CommandRunner(
        _build_backend(project_dir),
        broker,
        default_timeout_seconds=config.execution.timeout_seconds,
        cwd=project_dir,
        auto_answer=config.execution.auto_answer,
        message_hook=_log_agent_message,
    )
    orchestrator = Orchestrator(
        store,
        runner,
        broker,
        events,
        config,
        project_dir,
        escalation_handler=QuestionEscalation(broker),
    )
    return Runtime(
        project_dir=project_dir,
        config=config,
        store=store,
        events=events,
        broker=broker,
        runner=runner,
        orchestrator=orchestrator,
    )


def _echo_event(event: str, data: dict[str, Any]) -> None:
    phase = data.get("phase")
    label = format_phase_number(float(phase)) if isinstance(phase, (int, float)) else ""
    if event == PHASE_STARTED:
        click.echo(f"==> Phase {label}: {data.get('name')}")
    elif event == PHASE_COMPLETED:
        click.echo(f"<== Phase {label} completed")
    elif event == STEP_STARTED:
        click.echo(f"  -> {data.get('step')}")
    elif event == STEP_COMPLETED:
        click.echo(f"  <- {data.get('step')} done")
    elif event == ERROR_ESCALATION:
        click.echo(f"!! Phase {label} {data.get('step')} failed: {data.get('error')}", err=True)
    elif event == GAP_ESCALATED:
        click.echo(
            f"!! Phase {label} still has gaps after {data.get('iterations')} verifications",
            err=True,
        )
    elif event == QUESTION_PENDING:
        click.echo(f"?? Question {data.get('id')} waiting for an answer:")
        for item in data.get("questions", []):
            click.echo(f"   {item.get('question')}")
            for option in item.get("options", []):
                click.echo(f"     - {option.get('label')}: {option.get('description')}")
        click.echo(f"   Answer with: autopilot answer {data.get('id')} --choice \"QUESTION=LABEL\"")
    elif event == BUILD_COMPLETE:
        click.echo("Build complete.")


async def _run_with_ipc(
    runtime: Runtime,
    spec_path: str,
    phase_range: PhaseRange | None,
    *,
    echo_events: bool,
) -> None:
    project_dir = runtime.project_dir
    EventWriter(project_dir).attach(runtime.events)
    if echo_events:
        runtime.events.on_any(_echo_event)

    poller = AnswerPoller(project_dir, runtime.orchestrator.answer_question)
    heartbeat = HeartbeatWriter(project_dir, lambda: runtime.store.get_state().status)
    shutdown = ShutdownController()
    shutdown.register(poller.stop)
    shutdown.install(runtime.orchestrator.request_shutdown)
    poller.start()
    heartbeat.start()
    try:
        await runtime.orchestrator.run(spec_path, phase_range)
    finally:
        shutdown.uninstall()
        await poller.stop()
        await heartbeat.stop()


@click.group()
def cli() -> None:
    """Autopilot CLI."""


@cli.command("init")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def init_command(config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    config_path = _resolve_config_path(project_dir, config_value)
    config = _load_config_or_fail(config_path)
    save_config(config_path, config)
    (project_dir / ".planning").mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized autopilot in {project_dir}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Depth: {config.execution.depth}, model profile: {config.execution.model}")
    click.echo(
        "The [notify] and [server] sections are read by the notification and dashboard "
        "services; autopilot run ignores them."
    )


@cli.command("run")
@click.option("--spec", "spec_value", default=None, help="Specification for a new project.")
@click.option("--resume", is_flag=True, default=False, help="Continue from the saved run state.")
@click.option("--phases", "phases_value", default=None, help="Phase range: N or N-M.")
@click.option("--skip-discuss", is_flag=True, default=False)
@click.option("--skip-verify", is_flag=True, default=False)
@click.option(
    "--timeout", "timeout_seconds", type=float, default=None, help="Per-command timeout in seconds."
)
@click.option(
    "--auto-answer", is_flag=True, default=False, help="Pick the first option for every question."
)
@click.option("--verbose", is_flag=True, default=False)
@click.option("--quiet", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def run_command(
    spec_value: str | None,
    resume: bool,
    phases_value: str | None,
    skip_discuss: bool,
    skip_verify: bool,
    timeout_seconds: float | None,
    auto_answer: bool,
    verbose: bool,
    quiet: bool,
    config_value: str,
) -> None:
    project_dir = Path.cwd().resolve()
    if not resume and not spec_value:
        raise click.UsageError("Provide --spec for a new run or --resume to continue one.")
    spec_path = ""
    if spec_value:
        spec_file = Path(spec_value).resolve()
        if not spec_file.is_file():
            raise click.ClickException(f"Specification not found: {spec_file}")
        spec_path = str(spec_file)
    elif not roadmap_path(project_dir).exists():
        raise click.UsageError(
            "No ROADMAP.md to resume from; provide --spec so the project can be initialized."
        )

    try:
        phase_range = parse_phase_range(phases_value) if phases_value else None
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--phases") from exc

    config = _load_config_or_fail(
        _resolve_config_path(project_dir, config_value),
        overrides={
            "skip_discuss": skip_discuss or None,
            "skip_verify": skip_verify or None,
            "timeout_seconds": timeout_seconds,
            "auto_answer": auto_answer or None,
            "verbose": verbose or None,
            "quiet": quiet or None,
        },
    )
    failures = _preflight_failures()
    if failures:
        raise click.ClickException("Preflight failed:\n  " + "\n  ".join(failures))
    log_buffer = configure_logging(
        log_dir(project_dir), verbose=config.output.verbose, quiet=config.output.quiet
    )

    try:
        runtime = _build_runtime(project_dir, config, resume=resume)
    except StateStoreError as exc:
        raise click.ClickException(
            f"{exc}\nStart a new run with: autopilot run --spec <path-to-spec>"
        ) from exc
    runtime.log_buffer = log_buffer

    try:
        asyncio.run(
            _run_with_ipc(runtime, spec_path, phase_range, echo_events=not config.output.quiet)
        )
    except (FatalAbort, StateStoreError, GitError, ConfigError, OSError) as exc:
        raise click.ClickException(
            f"{exc}\nFix the problem, then continue with: autopilot run --resume"
        ) from exc

    state = runtime.store.get_state()
    finished = sum(1 for phase in state.phases if phase.is_finished)
    click.echo(f"Status: {state.status} ({finished}/{len(state.phases)} phases finished)")


def _restore_or_fail(project_dir: Path) -> StateStore:
    try:
        return StateStore.restore(state_path_for(project_dir))
    except StateStoreError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command("status")
@click.option("--verbose", is_flag=True, default=False)
def status_command(verbose: bool) -> None:
    project_dir = Path.cwd().resolve()
    state = _restore_or_fail(project_dir).get_state()
    heartbeat = read_heartbeat(project_dir)
    if verbose:
        payload = state.to_dict()
    else:
        payload = {
            "status": state.status,
            "currentPhase": state.to_dict()["currentPhase"],
            "currentStep": state.current_step,
            "phases": [
                {
                    "number": phase.to_dict()["number"],
                    "name": phase.name,
                    "status": phase.status,
                    "steps": dict(phase.steps),
                }
                for phase in state.phases
            ],
            "pendingQuestions": len(state.unanswered_questions()),
            "errors": len(state.error_history),
            "lastUpdatedAt": state.last_updated_at,
        }
    payload["processAlive"] = heartbeat is not None and heartbeat_is_fresh(heartbeat)
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("questions")
def questions_command() -> None:
    project_dir = Path.cwd().resolve()
    state = _restore_or_fail(project_dir).get_state()
    pending = state.unanswered_questions()
    if not pending:
        click.echo("No pending questions.")
        return
    for record in pending:
        click.echo(f"{record.id} (phase {format_phase_number(record.phase)}, {record.step})")
        for item in record.questions:
            click.echo(f"  {item.question}")
            for option in item.options:
                click.echo(f"    - {option.label}: {option.description}")


@cli.command("answer")
@click.argument("question_id")
@click.option(
    "--choice",
    "choices",
    multiple=True,
    required=True,
    help='Answer as "QUESTION=LABEL"; repeat for multi-question prompts.',
)
def answer_command(question_id: str, choices: tuple[str, ...]) -> None:
    project_dir = Path.cwd().resolve()
    state = _restore_or_fail(project_dir).get_state()
    record = state.find_question(question_id)
    if record is None:
        raise click.ClickException(f"Question not found: {question_id}")
    if record.is_answered:
        raise click.ClickException(f"Question already answered: {question_id}")

    answers: dict[str, str] = {}
    for choice in choices:
        question, separator, label = choice.rpartition("=")
        if not separator or not label.strip():
            raise click.BadParameter(
                f"Expected QUESTION=LABEL, got {choice!r}", param_hint="--choice"
            )
        if not question.strip() and len(record.questions) == 1:
            question = record.questions[0].question
        answers[question.strip()] = label.strip()

    path = write_answer(project_dir, question_id, answers)
    click.echo(f"Answer recorded for {question_id}: {path}")
