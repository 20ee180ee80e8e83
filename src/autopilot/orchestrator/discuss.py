from __future__ import annotations

import re
from datetime import UTC, datetime
from pathlib import Path

from autopilot.orchestrator.gaps import find_phase_dir, pad_phase, phases_root
from autopilot.state.models import format_phase_number


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def generate_skip_discuss_context(number: float, name: str, *, today: str | None = None) -> str:
    """Context document that leaves every implementation decision to the agent."""
    gathered = today or datetime.now(UTC).date().isoformat()
    label = format_phase_number(number)
    return f"""# Phase {label}: {name} - Context

**Gathered:** {gathered}
**Status:** Ready for planning (auto-generated, --skip-discuss)

<domain>
## Phase Boundary

Phase {label} as defined in ROADMAP.md. All implementation decisions deferred to the agent's discretion.

</domain>

<decisions>
## Implementation Decisions

### Agent's Discretion
All areas deferred to the agent's discretion via --skip-discuss. Make reasonable implementation choices based on research findings and standard practices.

</decisions>

<specifics>
## Specific Ideas

No specific requirements -- open to standard approaches (auto-generated via --skip-discuss)

</specifics>

<deferred>
## Deferred Ideas

None -- discussion skipped

</deferred>

---

*Phase: {pad_phase(number)}-{slugify(name)}*
*Context gathered: {gathered} (auto-generated)*
"""


def write_skip_discuss_context(project_dir: Path, number: float, name: str) -> Path:
    padded = pad_phase(number)
    phase_dir = find_phase_dir(project_dir, number) or (
        phases_root(project_dir) / f"{padded}-{slugify(name)}"
    )
    phase_dir.mkdir(parents=True, exist_ok=True)
    file_path = phase_dir / f"{padded}-CONTEXT.md"
    file_path.write_text(generate_skip_discuss_context(number, name), encoding="utf-8")
    return file_path
