from __future__ import annotations

import re
from dataclasses import dataclass, replace
from pathlib import Path

from autopilot.state.models import normalize_phase_number

ROADMAP_RELATIVE_PATH = Path(".planning") / "ROADMAP.md"

_CHECKLIST_PATTERN = re.compile(
    r"^\s*[-*]\s+\[([ xX])\]\s+\*\*Phase\s+(\d+(?:\.\d+)?):\s*(.+?)\*\*",
    re.MULTILINE,
)
_HEADING_PATTERN = re.compile(r"^#{2,3}\s+Phase\s+(\d+(?:\.\d+)?):\s*(.+?)\s*$")
_ANY_HEADING = re.compile(r"^#{1,6}\s")
_DEPENDS_PATTERN = re.compile(r"^\*\*Depends on:?\*\*:?\s*(.+?)\s*$", re.IGNORECASE)
_INSERTED_MARKER = re.compile(r"\s*\(INSERTED\)\s*$", re.IGNORECASE)


@dataclass(slots=True, frozen=True)
class RoadmapPhase:
    number: float
    name: str
    completed: bool = False
    inserted: bool = False
    depends_on: str | None = None


def _split_inserted(name: str) -> tuple[str, bool]:
    stripped, count = _INSERTED_MARKER.subn("", name)
    return stripped.strip(), count > 0


def extract_checklist_phases(content: str) -> list[RoadmapPhase]:
    phases: list[RoadmapPhase] = []
    for match in _CHECKLIST_PATTERN.finditer(content):
        name, inserted = _split_inserted(match.group(3))
        phases.append(
            RoadmapPhase(
                number=normalize_phase_number(float(match.group(2))),
                name=name,
                completed=match.group(1).lower() == "x",
                inserted=inserted,
            )
        )
    return phases


def extract_heading_phases(content: str) -> list[RoadmapPhase]:
    """Phases declared as ``## Phase N: Name`` sections.

    ``**Depends on:**`` is read from the section body, up to the next heading.
    """
    phases: list[RoadmapPhase] = []
    current: RoadmapPhase | None = None
    for line in content.splitlines():
        heading = _HEADING_PATTERN.match(line)
        if heading:
            if current is not None:
                phases.append(current)
            name, inserted = _split_inserted(heading.group(2))
            current = RoadmapPhase(
                number=normalize_phase_number(float(heading.group(1))),
                name=name,
                inserted=inserted,
            )
            continue
        if current is None:
            continue
        if _ANY_HEADING.match(line):
            phases.append(current)
            current = None
            continue
        depends = _DEPENDS_PATTERN.match(line.strip())
        if depends and current.depends_on is None:
            current = replace(current, depends_on=depends.group(1))
    if current is not None:
        phases.append(current)
    return phases


def merge_phases(
    checklist: list[RoadmapPhase], headings: list[RoadmapPhase]
) -> list[RoadmapPhase]:
    """Merge both phase lists by number and sort them numerically.

    Checklist completion is authoritative; headings contribute the inserted flag
    and dependency reference. The first declaration of a number wins within a list.
    """
    merged: dict[float, RoadmapPhase] = {}
    for phase in checklist:
        merged.setdefault(phase.number, phase)
    for phase in headings:
        existing = merged.get(phase.number)
        if existing is None:
            merged[phase.number] = phase
            continue
        merged[phase.number] = replace(
            existing,
            name=existing.name or phase.name,
            inserted=existing.inserted or phase.inserted,
            depends_on=existing.depends_on or phase.depends_on,
        )
    return [merged[number] for number in sorted(merged)]


def extract_phases_from_content(content: str) -> list[RoadmapPhase]:
    return merge_phases(extract_checklist_phases(content), extract_heading_phases(content))


def roadmap_path(project_dir: Path) -> Path:
    return project_dir / ROADMAP_RELATIVE_PATH


def read_roadmap(project_dir: Path) -> list[RoadmapPhase]:
    return extract_phases_from_content(roadmap_path(project_dir).read_text(encoding="utf-8"))
