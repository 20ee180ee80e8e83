from __future__ import annotations

import copy
import json
import os
import tempfile
from dataclasses import fields
from pathlib import Path
from typing import Any

from autopilot.state.models import (
    MAX_ERROR_HISTORY,
    RunState,
    StateSchemaError,
    utcnow_iso,
)

STATE_FILENAME = "autopilot-state.json"
PATCHABLE_FIELDS = frozenset(item.name for item in fields(RunState)) - {"last_updated_at"}


class StateStoreError(RuntimeError):
    """Raised when run state cannot be read or written."""


def state_path_for(project_dir: Path) -> Path:
    return project_dir / ".planning" / STATE_FILENAME


class StateStore:
    """Owns the single RunState record and its on-disk copy.

    Every ``set_state`` call merges the patch, refreshes ``last_updated_at`` and
    rewrites the file through a temp file + ``os.replace`` so readers never see a
    partially written document.
    """

    SCHEMA_VERSION = 1

    def __init__(self, state: RunState, file_path: Path, *, revision: int = 0) -> None:
        self._state = state
        self._file_path = file_path
        self._revision = revision

    @property
    def file_path(self) -> Path:
        return self._file_path

    @property
    def revision(self) -> int:
        return self._revision

    @classmethod
    def create_fresh(cls, project_dir: Path) -> StateStore:
        now = utcnow_iso()
        state = RunState(started_at=now, last_updated_at=now)
        return cls(state, state_path_for(project_dir))

    @classmethod
    def restore(cls, file_path: Path) -> StateStore:
        try:
            raw = file_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StateStoreError(
                f"State file not found or unreadable: {file_path} -- {exc}"
            ) from exc

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StateStoreError(f"State file contains invalid JSON: {file_path}") from exc

        data, revision = cls._unwrap_envelope(payload)
        try:
            state = RunState.from_dict(data)
        except (StateSchemaError, TypeError, ValueError) as exc:
            raise StateStoreError(f"State file has invalid schema: {file_path} -- {exc}") from exc
        return cls(state, file_path, revision=revision)

    @classmethod
    def open(cls, project_dir: Path) -> StateStore:
        """Restore the project's state file, or start fresh when none exists."""
        path = state_path_for(project_dir)
        if path.exists():
            return cls.restore(path)
        return cls.create_fresh(project_dir)

    @staticmethod
    def _unwrap_envelope(payload: Any) -> tuple[Any, int]:
        if (
            isinstance(payload, dict)
            and "schema_version" in payload
            and "data" in payload
            and "revision" in payload
        ):
            return payload.get("data"), int(payload.get("revision") or 0)
        # Bare payloads written before the envelope existed.
        return payload, 0

    def get_state(self) -> RunState:
        """Return a detached snapshot; mutating it does not change the store."""
        return copy.deepcopy(self._state)

    def set_state(self, **patch: Any) -> RunState:
        unknown = set(patch) - PATCHABLE_FIELDS
        if unknown:
            raise StateStoreError(f"Unknown run-state fields: {', '.join(sorted(unknown))}")

        for key, value in patch.items():
            setattr(self._state, key, copy.deepcopy(value))
        if len(self._state.error_history) > MAX_ERROR_HISTORY:
            self._state.error_history = self._state.error_history[-MAX_ERROR_HISTORY:]
        self._state.last_updated_at = utcnow_iso()
        self._persist()
        return self.get_state()

    def _persist(self) -> None:
        self._revision += 1
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": self._revision,
            "updated_at": self._state.last_updated_at,
            "data": self._state.to_dict(),
        }
        serialized = json.dumps(envelope, ensure_ascii=False, indent=2) + "\n"

        directory = self._file_path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(
            prefix=f".{self._file_path.name}.", suffix=".tmp", dir=directory
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, self._file_path)
        except OSError as exc:
            try:
                os.unlink(temp_name)
            except OSError:
                pass
            raise StateStoreError(f"Failed to write state file {self._file_path}: {exc}") from exc
