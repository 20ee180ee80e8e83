import json
import logging
import os
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
from click.testing import CliRunner

from autopilot.backends.base import AgentBackend, AgentMessage
from autopilot import cli as cli_module
from autopilot.cli import cli
from autopilot.config import load_config
from autopilot.ipc import answer_path, events_path, heartbeat_path
from autopilot.state import StateStore
from autopilot.state.models import PendingQuestion, QuestionItem, QuestionOption

ROADMAP = "# Roadmap\n\n- [ ] **Phase 1: Foundation** - skeleton\n"


class FakeBackend(AgentBackend):
    def __init__(self) -> None:
        self.prompts: list[str] = []

    async def stream(
        self, prompt: str, *, cwd: Path | None = None
    ) -> AsyncGenerator[AgentMessage, dict[str, str] | None]:
        _ = cwd
        self.prompts.append(prompt)
        yield {"type": "system", "subtype": "init", "session_id": "fake"}
        yield {"type": "result", "subtype": "success", "result": f"done: {prompt}"}


@pytest.fixture(autouse=True)
def _detach_autopilot_handlers():
    yield
    logger = logging.getLogger("autopilot")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True


@pytest.fixture
def project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    home = tmp_path / "home"
    (home / ".claude" / "get-shit-done").mkdir(parents=True)
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    claude = bin_dir / "claude"
    claude.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    claude.chmod(0o755)
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    (repo / "spec.md").write_text("# Todo app\n", encoding="utf-8")
    monkeypatch.chdir(repo)
    monkeypatch.delenv("AUTOPILOT_VERBOSE", raising=False)
    monkeypatch.delenv("AUTOPILOT_QUIET", raising=False)
    return repo


def _write_roadmap(project: Path) -> None:
    (project / ".planning").mkdir(exist_ok=True)
    (project / ".planning" / "ROADMAP.md").write_text(ROADMAP, encoding="utf-8")


def _seed_question(project: Path) -> PendingQuestion:
    store = StateStore.create_fresh(project)
    question = PendingQuestion(
        id="q-1",
        phase=1,
        step="discuss",
        questions=[QuestionItem("Which database?", "DB", [QuestionOption("Postgres", "sql")])],
    )
    store.set_state(pending_questions=[question], status="waiting_for_human")
    return question


def test_init_writes_config(project: Path) -> None:
    result = CliRunner().invoke(cli, ["init"])

    assert result.exit_code == 0
    assert "Initialized autopilot" in result.output
    assert "[notify] and [server] sections are read by" in result.output
    config = load_config(project / ".autopilot.toml", environ={})
    assert config.execution.depth == "standard"
    assert (project / ".planning").is_dir()


def test_run_then_resume_lifecycle(project: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    backend = FakeBackend()
    monkeypatch.setattr("autopilot.cli._build_backend", lambda project_dir: backend)
    _write_roadmap(project)
    runner = CliRunner()

    run_result = runner.invoke(cli, ["run", "--spec", "spec.md", "--skip-discuss"])

    assert run_result.exit_code == 0, run_result.output
    assert "==> Phase 1: Foundation" in run_result.output
    assert "Build complete." in run_result.output
    assert "Status: complete (1/1 phases finished)" in run_result.output
    assert backend.prompts == [
        "/gsd:plan-phase 1",
        "/gsd:execute-phase 1",
        "/gsd:verify-work 1",
    ]
    assert (project / ".git").is_dir()
    assert not heartbeat_path(project).exists()
    logged = [json.loads(line)["event"] for line in events_path(project).read_text().splitlines()]
    assert logged[0] == "phase:started"
    assert logged[-1] == "build:complete"

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code == 0
    status = json.loads(status_result.output)
    assert status["status"] == "complete"
    assert status["processAlive"] is False
    assert status["phases"][0]["steps"]["verify"] == "done"

    resume_result = runner.invoke(cli, ["run", "--resume"])
    assert resume_result.exit_code == 0, resume_result.output
    assert len(backend.prompts) == 3


def test_run_requires_spec_or_resume(project: Path) -> None:
    result = CliRunner().invoke(cli, ["run"])

    assert result.exit_code == 2
    assert "--spec" in result.output


def test_run_rejects_bad_phase_range(project: Path) -> None:
    result = CliRunner().invoke(cli, ["run", "--spec", "spec.md", "--phases", "5-2"])

    assert result.exit_code == 2
    assert "Invalid phase range" in result.output


def test_resume_without_state_points_to_new_run(project: Path) -> None:
    _write_roadmap(project)

    result = CliRunner().invoke(cli, ["run", "--resume"])

    assert result.exit_code == 1
    assert "autopilot run --spec" in result.output


def test_failed_init_suggests_resume(project: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("autopilot.cli._build_backend", lambda project_dir: FakeBackend())

    result = CliRunner().invoke(cli, ["run", "--spec", "spec.md", "--quiet"])

    assert result.exit_code == 1
    assert "ROADMAP.md was not created" in result.output
    assert "autopilot run --resume" in result.output


def test_questions_lists_pending(project: Path) -> None:
    _seed_question(project)

    result = CliRunner().invoke(cli, ["questions"])

    assert result.exit_code == 0
    assert "q-1 (phase 1, discuss)" in result.output
    assert "Which database?" in result.output
    assert "- Postgres: sql" in result.output


def test_answer_writes_answer_file(project: Path) -> None:
    _seed_question(project)

    result = CliRunner().invoke(cli, ["answer", "q-1", "--choice", "=Postgres"])

    assert result.exit_code == 0, result.output
    payload = json.loads(answer_path(project, "q-1").read_text(encoding="utf-8"))
    assert payload["questionId"] == "q-1"
    assert payload["answers"] == {"Which database?": "Postgres"}


def test_answer_unknown_question_fails(project: Path) -> None:
    _seed_question(project)

    result = CliRunner().invoke(cli, ["answer", "missing", "--choice", "Q=A"])

    assert result.exit_code == 1
    assert "Question not found" in result.output


def test_run_fails_preflight_without_agent_tooling(
    project: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    empty_bin = project.parent / "empty-bin"
    empty_bin.mkdir()
    monkeypatch.setenv("PATH", str(empty_bin))
    (project.parent / "home" / ".claude" / "get-shit-done").rmdir()

    result = CliRunner().invoke(cli, ["run", "--spec", "spec.md"])

    assert result.exit_code == 1
    assert "Preflight failed" in result.output
    assert "claude CLI not found on PATH" in result.output
    assert "Planning workflows not found" in result.output
    assert not (project / ".planning" / "autopilot-state.json").exists()


def test_resume_without_spec_or_roadmap_is_rejected(project: Path) -> None:
    result = CliRunner().invoke(cli, ["run", "--resume"])

    assert result.exit_code == 2
    assert "No ROADMAP.md to resume from" in result.output


def test_run_keeps_log_buffer_on_runtime(project: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("autopilot.cli._build_backend", lambda project_dir: FakeBackend())
    _write_roadmap(project)
    runtimes: list[cli_module.Runtime] = []
    run_with_ipc = cli_module._run_with_ipc

    async def _capture(runtime, *args, **kwargs):
        runtimes.append(runtime)
        await run_with_ipc(runtime, *args, **kwargs)

    monkeypatch.setattr("autopilot.cli._run_with_ipc", _capture)

    result = CliRunner().invoke(cli, ["run", "--spec", "spec.md", "--skip-discuss", "--quiet"])

    assert result.exit_code == 0, result.output
    log_buffer = runtimes[0].log_buffer
    assert log_buffer is not None
    messages = [entry["message"] for entry in log_buffer.entries()]
    assert any(message.startswith("Starting autopilot run") for message in messages)
