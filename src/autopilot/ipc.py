"""File-based IPC with out-of-process collaborators.

The running engine appends every lifecycle event to an NDJSON log and polls a
directory for answer files, so a dashboard or a second ``autopilot`` invocation
can follow progress and answer questions without sharing the process.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from autopilot.events import EventBus
from autopilot.state.models import utcnow_iso

logger = logging.getLogger(__name__)

ANSWER_POLL_INTERVAL_SECONDS = 1.0
HEARTBEAT_INTERVAL_SECONDS = 5.0
HEARTBEAT_STALE_SECONDS = 15.0

SubmitFn = Callable[[str, dict[str, str]], bool]


def log_dir(project_dir: Path) -> Path:
    return project_dir / ".planning" / "autopilot-log"


def events_path(project_dir: Path) -> Path:
    return log_dir(project_dir) / "events.ndjson"


def answers_dir(project_dir: Path) -> Path:
    return project_dir / ".planning" / "autopilot-answers"


def answer_path(project_dir: Path, question_id: str) -> Path:
    return answers_dir(project_dir) / f"{question_id}.json"


def heartbeat_path(project_dir: Path) -> Path:
    return project_dir / ".planning" / "autopilot-heartbeat.json"


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.replace(temp_name, path)
    except OSError:
        Path(temp_name).unlink(missing_ok=True)
        raise


class EventWriter:
    def __init__(self, project_dir: Path) -> None:
        self.path = events_path(project_dir)
        self._seq = 0

    @property
    def current_seq(self) -> int:
        return self._seq

    def write(self, event: str, data: dict[str, Any]) -> None:
        self._seq += 1
        entry = {"seq": self._seq, "timestamp": utcnow_iso(), "event": event, "data": data}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def attach(self, events: EventBus) -> None:
        events.on_any(self.write)


def read_events(project_dir: Path, *, after_seq: int = 0) -> list[dict[str, Any]]:
    path = events_path(project_dir)
    if not path.exists():
        return []
    entries: list[dict[str, Any]] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed event line: %s", line[:200])
            continue
        if isinstance(entry, dict) and int(entry.get("seq", 0)) > after_seq:
            entries.append(entry)
    return entries


def write_answer(project_dir: Path, question_id: str, answers: dict[str, str]) -> Path:
    payload = {"questionId": question_id, "answers": dict(answers), "answeredAt": utcnow_iso()}
    path = answer_path(project_dir, question_id)
    _atomic_write(path, json.dumps(payload, ensure_ascii=False, indent=2) + "\n")
    return path


class AnswerPoller:
    """Feeds answer files into ``submit`` and deletes each file once picked up."""

    def __init__(
        self,
        project_dir: Path,
        submit: SubmitFn,
        *,
        interval_seconds: float = ANSWER_POLL_INTERVAL_SECONDS,
    ) -> None:
        self.directory = answers_dir(project_dir)
        self.submit = submit
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None

    def poll(self) -> int:
        """Process every pending answer file once. Returns the number accepted."""
        if not self.directory.is_dir():
            return 0
        accepted = 0
        for path in sorted(self.directory.glob("*.json")):
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
                question_id = str(payload["questionId"])
                answers = {str(k): str(v) for k, v in dict(payload["answers"]).items()}
            except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Discarding unreadable answer file %s: %s", path.name, exc)
                path.unlink(missing_ok=True)
                continue
            try:
                if self.submit(question_id, answers):
                    accepted += 1
                else:
                    logger.info("Answer file %s did not match a waiting question", path.name)
            except Exception:
                logger.exception("Failed to deliver answer file %s", path.name)
            finally:
                path.unlink(missing_ok=True)
        return accepted

    async def _loop(self) -> None:
        while True:
            self.poll()
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


@dataclass(slots=True)
class Heartbeat:
    pid: int
    timestamp: str
    status: str

    def to_dict(self) -> dict[str, Any]:
        return {"pid": self.pid, "timestamp": self.timestamp, "status": self.status}


class HeartbeatWriter:
    """Periodically records that the engine process is alive."""

    def __init__(
        self,
        project_dir: Path,
        status_fn: Callable[[], str],
        *,
        interval_seconds: float = HEARTBEAT_INTERVAL_SECONDS,
    ) -> None:
        self.path = heartbeat_path(project_dir)
        self.status_fn = status_fn
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None

    def beat(self) -> Heartbeat:
        heartbeat = Heartbeat(pid=os.getpid(), timestamp=utcnow_iso(), status=self.status_fn())
        _atomic_write(self.path, json.dumps(heartbeat.to_dict()) + "\n")
        return heartbeat

    async def _loop(self) -> None:
        while True:
            self.beat()
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.path.unlink(missing_ok=True)


def read_heartbeat(project_dir: Path) -> Heartbeat | None:
    try:
        payload = json.loads(heartbeat_path(project_dir).read_text(encoding="utf-8"))
        return Heartbeat(
            pid=int(payload["pid"]),
            timestamp=str(payload["timestamp"]),
            status=str(payload["status"]),
        )
    except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError):
        return None


def heartbeat_is_fresh(heartbeat: Heartbeat, *, now: datetime | None = None) -> bool:
    current = now or datetime.now(UTC)
    try:
        recorded = datetime.fromisoformat(heartbeat.timestamp.replace("Z", "+00:00"))
    except ValueError:
        return False
    return (current - recorded).total_seconds() <= HEARTBEAT_STALE_SECONDS
