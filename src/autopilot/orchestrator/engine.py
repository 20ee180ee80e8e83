from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from autopilot.commands import CommandResult, CommandRunner
from autopilot.config import AutopilotConfig
from autopilot.events import (
    BUILD_COMPLETE,
    GAP_ESCALATED,
    PHASE_COMPLETED,
    PHASE_STARTED,
    QUESTION_ANSWERED,
    QUESTION_PENDING,
    STEP_COMPLETED,
    STEP_STARTED,
    EventBus,
)
from autopilot.orchestrator.autonomous import write_autonomous_config
from autopilot.orchestrator.discuss import write_skip_discuss_context
from autopilot.orchestrator.gaps import PhaseRange, check_for_gaps
from autopilot.orchestrator.git import GitError, GitRepository
from autopilot.orchestrator.retry import (
    EscalationHandler,
    FatalAbort,
    RetryExecutor,
    RetryPolicy,
    ShutdownAbort,
)
from autopilot.orchestrator.roadmap import RoadmapPhase, read_roadmap, roadmap_path
from autopilot.questions import QuestionBroker
from autopilot.state.models import (
    ErrorRecord,
    PendingQuestion,
    PhaseState,
    StepName,
    format_phase_number,
    normalize_phase_number,
    utcnow_iso,
)
from autopilot.state.store import StateStore

logger = logging.getLogger(__name__)

MAX_GAP_VERIFICATIONS = 3
INIT_STEP = "init"
AGENT_STEPS: tuple[StepName, ...] = ("discuss", "plan", "execute")


class Orchestrator:
    """Drives every selected phase through discuss, plan, execute and verify.

    Run state is persisted before each agent call and after each step resolves,
    so a restarted process continues at the first step not marked done.
    """

    def __init__(
        self,
        state_store: StateStore,
        runner: CommandRunner,
        broker: QuestionBroker,
        events: EventBus,
        config: AutopilotConfig,
        project_dir: Path,
        *,
        escalation_handler: EscalationHandler | None = None,
        git: GitRepository | None = None,
    ) -> None:
        self.store = state_store
        self.runner = runner
        self.broker = broker
        self.events = events
        self.config = config
        self.project_dir = project_dir
        self.escalation_handler = escalation_handler
        self.git = git or GitRepository(project_dir)
        self._shutdown_requested = False
        self.retry = RetryExecutor(
            events,
            policy=RetryPolicy(
                max_retries=config.execution.max_retries,
                backoff_seconds=config.execution.retry_backoff_seconds,
            ),
            is_shutting_down=lambda: self._shutdown_requested,
            record_error=self._record_error,
        )
        events.on(QUESTION_PENDING, self._on_question_pending)
        events.on(QUESTION_ANSWERED, self._on_question_answered)

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    def request_shutdown(self) -> None:
        """Stop after the in-flight step; questions waiting on a human are cancelled."""
        if self._shutdown_requested:
            return
        self._shutdown_requested = True
        logger.info("Shutdown requested; stopping after the current step")
        self.broker.cancel_all("Shutdown requested")

    def answer_question(self, question_id: str, answers: dict[str, str]) -> bool:
        return self.broker.answer(question_id, answers)

    # -- state helpers -----------------------------------------------------

    def _record_error(self, record: ErrorRecord) -> None:
        state = self.store.get_state()
        self.store.set_state(error_history=[*state.error_history, record])

    def _save_phase(self, phase: PhaseState, **patch: Any) -> None:
        state = self.store.get_state()
        target = normalize_phase_number(phase.number)
        phases = [
            phase if normalize_phase_number(item.number) == target else item
            for item in state.phases
        ]
        self.store.set_state(phases=phases, **patch)

    def _on_question_pending(self, payload: dict[str, Any]) -> None:
        record = PendingQuestion.from_dict(payload)
        state = self.store.get_state()
        questions = [item for item in state.pending_questions if item.id != record.id]
        questions.append(record)
        self.store.set_state(pending_questions=questions, status="waiting_for_human")

    def _on_question_answered(self, payload: dict[str, Any]) -> None:
        state = self.store.get_state()
        record = state.find_question(str(payload.get("id")))
        if record is None:
            return
        record.answers = {str(k): str(v) for k, v in (payload.get("answers") or {}).items()}
        record.answered_at = str(payload.get("answeredAt") or utcnow_iso())
        status = "waiting_for_human" if self.broker.pending() else "running"
        self.store.set_state(pending_questions=state.pending_questions, status=status)

    # -- run ---------------------------------------------------------------

    async def run(self, spec_path: Path | str, phase_range: PhaseRange | None = None) -> None:
        logger.info("Starting autopilot run for %s", spec_path)
        execution = self.config.execution
        write_autonomous_config(
            self.project_dir,
            depth=execution.depth,
            model=execution.model,
            skip_verify=execution.skip_verify,
        )
        try:
            self.git.ensure_repo()
        except GitError as exc:
            self.store.set_state(status="error")
            raise FatalAbort(str(exc)) from exc
        self.store.set_state(status="running")

        try:
            await self._ensure_roadmap(spec_path)
            self._sync_phases()
            for number in self._selected_numbers(phase_range):
                if self._shutdown_requested:
                    break
                phase = self.store.get_state().find_phase(number)
                if phase is None or phase.is_finished:
                    continue
                await self._run_phase(phase)
        except ShutdownAbort as exc:
            logger.info("Stopped during shutdown: %s", exc)
        except FatalAbort:
            self.store.set_state(status="error")
            raise
        except Exception:
            logger.exception("Run aborted by an unexpected error")
            self.store.set_state(status="error")
            raise

        if self._shutdown_requested:
            self.store.set_state(status="idle")
            logger.info("Run state saved; resume with --resume")
            return
        self._finish(phase_range)

    def _selected_numbers(self, phase_range: PhaseRange | None) -> list[float]:
        return [
            phase.number
            for phase in self.store.get_state().phases
            if phase_range is None or phase.number in phase_range
        ]

    def _finish(self, phase_range: PhaseRange | None) -> None:
        state = self.store.get_state()
        selected = [
            phase for phase in state.phases if phase_range is None or phase.number in phase_range
        ]
        if all(phase.is_finished for phase in selected):
            self.events.emit(BUILD_COMPLETE, {"phases": len(selected)})
            logger.info("Build complete")
        all_done = all(phase.is_finished for phase in state.phases)
        self.store.set_state(status="complete" if all_done else "idle")

    async def _ensure_roadmap(self, spec_path: Path | str) -> None:
        if roadmap_path(self.project_dir).exists():
            return
        logger.info("No roadmap found; initialising project from %s", spec_path)
        prompt = self.config.commands.render("init", spec_path=str(spec_path))
        result = await self._execute(
            prompt,
            phase=0,
            step=INIT_STEP,
            timeout_seconds=self.config.execution.init_timeout_seconds,
        )
        logger.info(
            "Init finished in %d ms (cost $%.4f, %d turns)",
            result.duration_ms,
            result.cost_usd,
            result.num_turns,
        )
        if not roadmap_path(self.project_dir).exists():
            raise FatalAbort(
                f"Init command completed but ROADMAP.md was not created at "
                f"{roadmap_path(self.project_dir)}. Check that the claude CLI is "
                "authenticated and the planning workflow commands are installed.",
                phase=0,
                step=INIT_STEP,
            )

    @staticmethod
    def _phase_from_roadmap(entry: RoadmapPhase) -> PhaseState:
        phase = PhaseState(
            number=entry.number,
            name=entry.name,
            inserted=entry.inserted,
            depends_on=entry.depends_on,
        )
        if entry.completed:
            phase.status = "completed"
            phase.steps = {step: "done" for step in phase.steps}
        return phase

    def _sync_phases(self) -> None:
        roadmap = read_roadmap(self.project_dir)
        state = self.store.get_state()
        persisted = {normalize_phase_number(phase.number): phase for phase in state.phases}
        phases: list[PhaseState] = []
        for entry in roadmap:
            existing = persisted.pop(entry.number, None)
            if existing is None:
                phases.append(self._phase_from_roadmap(entry))
                continue
            existing.name = entry.name or existing.name
            existing.inserted = entry.inserted
            existing.depends_on = entry.depends_on
            phases.append(existing)
        # Phases no longer in the roadmap keep their recorded history.
        phases.extend(persisted.values())
        phases.sort(key=lambda phase: phase.number)
        patch: dict[str, Any] = {"phases": phases}
        if state.current_phase == 0 and phases:
            patch["current_phase"] = phases[0].number
        self.store.set_state(**patch)

    # -- phases and steps --------------------------------------------------

    async def _run_phase(self, phase: PhaseState) -> None:
        label = format_phase_number(phase.number)
        self.events.emit(PHASE_STARTED, {"phase": phase.number, "name": phase.name})
        phase.status = "in_progress"
        phase.started_at = phase.started_at or utcnow_iso()
        self._save_phase(phase, current_phase=phase.number, status="running")
        logger.info("Phase %s started: %s", label, phase.name, extra={"phase": phase.number})

        try:
            for step in AGENT_STEPS:
                if phase.steps[step] == "done":
                    continue
                if self._shutdown_requested:
                    return
                await self._run_step(phase, step)

            if not self.config.execution.skip_verify and phase.steps["verify"] != "done":
                if self._shutdown_requested:
                    return
                if not await self._verify_with_gap_loop(phase):
                    return
        except ShutdownAbort:
            raise
        except Exception:
            phase.status = "failed"
            self._save_phase(phase, status="error")
            raise

        phase.status = "completed"
        phase.completed_at = utcnow_iso()
        self._save_phase(phase)
        self.events.emit(PHASE_COMPLETED, {"phase": phase.number, "name": phase.name})
        logger.info("Phase %s completed", label, extra={"phase": phase.number})

    async def _run_step(self, phase: PhaseState, step: StepName) -> CommandResult | None:
        phase.steps[step] = "in_progress"
        self._save_phase(phase, current_phase=phase.number, current_step=step)
        self.events.emit(STEP_STARTED, {"phase": phase.number, "step": step})

        result: CommandResult | None = None
        if step == "discuss" and self.config.execution.skip_discuss:
            path = write_skip_discuss_context(self.project_dir, phase.number, phase.name)
            logger.info("Wrote skip-discuss context to %s", path, extra={"phase": phase.number})
        else:
            result = await self._run_agent_step(phase, step, template=step)

        phase.steps[step] = "done"
        self._save_phase(phase, current_step="done")
        self.events.emit(STEP_COMPLETED, {"phase": phase.number, "step": step})
        logger.info(
            "Step %s completed for phase %s",
            step,
            format_phase_number(phase.number),
            extra={"phase": phase.number, "step": step},
        )
        return result

    async def _run_agent_step(
        self, phase: PhaseState, step: StepName, *, template: str
    ) -> CommandResult:
        prompt = self.config.commands.render(template, phase=format_phase_number(phase.number))
        before = self.git.head() if step == "execute" else None
        result = await self._execute(prompt, phase=phase.number, step=step)
        if step == "execute" and not result.skipped:
            commits = [sha for sha in self.git.commits_since(before) if sha not in phase.commits]
            if commits:
                phase.commits.extend(commits)
                self._save_phase(phase)
        return result

    async def _verify_with_gap_loop(self, phase: PhaseState) -> bool:
        """Verify, remediating gaps until verification passes or the cap is reached.

        Returns ``True`` when the phase may be marked completed.
        """
        while True:
            if self._shutdown_requested:
                return False
            result = await self._run_step(phase, "verify")
            if result is not None and result.skipped:
                return True
            if not check_for_gaps(self.project_dir, phase.number):
                return True

            if phase.gap_iterations + 1 >= MAX_GAP_VERIFICATIONS:
                phase.steps["verify"] = "idle"
                self._save_phase(phase)
                logger.warning(
                    "Gaps remain in phase %s after %d verifications; escalating",
                    format_phase_number(phase.number),
                    MAX_GAP_VERIFICATIONS,
                    extra={"phase": phase.number, "step": "verify"},
                )
                self.events.emit(
                    GAP_ESCALATED, {"phase": phase.number, "iterations": MAX_GAP_VERIFICATIONS}
                )
                return False

            phase.gap_iterations += 1
            phase.steps["verify"] = "idle"
            self._save_phase(phase)
            logger.warning(
                "Gaps found in phase %s, remediation %d",
                format_phase_number(phase.number),
                phase.gap_iterations,
                extra={"phase": phase.number, "step": "verify"},
            )

            if self._shutdown_requested:
                return False
            await self._run_agent_step(phase, "plan", template="plan_gaps")
            if self._shutdown_requested:
                return False
            await self._run_agent_step(phase, "execute", template="execute_gaps")

    async def _execute(
        self,
        prompt: str,
        *,
        phase: float,
        step: str,
        timeout_seconds: float | None = None,
    ) -> CommandResult:
        logger.info("Running command: %s", prompt, extra={"phase": phase, "step": step})

        async def invoke() -> CommandResult:
            return await self.runner.run_command(
                prompt, phase=phase, step=step, timeout_seconds=timeout_seconds
            )

        result = await self.retry.execute_with_retry(
            invoke, self.escalation_handler, phase=phase, step=step
        )
        if result.success:
            return result

        error = result.error or "Command failed"
        self._record_error(
            ErrorRecord.create(phase=phase, step=step, message=error, output=result.result)
        )
        raise FatalAbort(
            f"Step {step} of phase {format_phase_number(phase)} failed after retry: {error}",
            phase=phase,
            step=step,
        )
