from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

AGENT_CONFIG_RELATIVE_PATH = Path(".planning") / "config.json"


def autonomous_settings(*, depth: str, model: str, skip_verify: bool) -> dict[str, Any]:
    return {
        "mode": "yolo",
        "depth": depth,
        "model_profile": model,
        "research": True,
        "plan_check": True,
        "verifier": not skip_verify,
        "parallelization": True,
    }


def write_autonomous_config(
    project_dir: Path, *, depth: str, model: str, skip_verify: bool
) -> Path:
    """Switch the agent's workflow config to non-interactive mode.

    Keys the user set that are not part of the autonomous settings are kept.
    An unreadable existing file is replaced.
    """
    path = project_dir / AGENT_CONFIG_RELATIVE_PATH
    existing: dict[str, Any] = {}
    if path.exists():
        try:
            loaded = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Replacing unparseable agent config at %s", path)
        else:
            if isinstance(loaded, dict):
                existing = loaded
    existing.update(autonomous_settings(depth=depth, model=model, skip_verify=skip_verify))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(existing, indent=2) + "\n", encoding="utf-8")
    return path
