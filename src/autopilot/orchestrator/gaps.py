from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from autopilot.state.models import format_phase_number, normalize_phase_number

logger = logging.getLogger(__name__)

VERIFICATION_GAP_MARKERS = ("gaps_found", "GAPS_FOUND")
VERIFICATION_PASS_MARKERS = ("passed", "PASSED")
UAT_GAP_MARKERS = ("FAIL", "Issue Found")

_RANGE_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)(?:-(\d+(?:\.\d+)?))?$")


def pad_phase(number: float) -> str:
    """Zero-pad the integer part to two digits: ``3 -> "03"``, ``3.1 -> "03.1"``."""
    rendered = format_phase_number(number)
    whole, dot, fraction = rendered.partition(".")
    return f"{whole.zfill(2)}{dot}{fraction}"


def phases_root(project_dir: Path) -> Path:
    return project_dir / ".planning" / "phases"


def find_phase_dir(project_dir: Path, number: float) -> Path | None:
    root = phases_root(project_dir)
    if not root.is_dir():
        return None
    prefixes = {f"{pad_phase(number)}-", f"{format_phase_number(number)}-"}
    for entry in sorted(root.iterdir()):
        if entry.is_dir() and any(entry.name.startswith(prefix) for prefix in prefixes):
            return entry
    return None


def _read_marker_file(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def check_for_gaps(project_dir: Path, number: float) -> bool:
    """Inspect the phase's verification artifacts for unresolved gaps.

    A missing phase directory or missing artifacts count as "no gaps".
    """
    phase_dir = find_phase_dir(project_dir, number)
    if phase_dir is None:
        logger.debug("No phase directory for phase %s; assuming no gaps", number)
        return False
    padded = pad_phase(number)

    verification = _read_marker_file(phase_dir / f"{padded}-VERIFICATION.md")
    if verification is not None:
        if any(marker in verification for marker in VERIFICATION_GAP_MARKERS):
            return True
        if any(marker in verification for marker in VERIFICATION_PASS_MARKERS):
            return False

    uat = _read_marker_file(phase_dir / f"{padded}-UAT.md")
    if uat is not None and any(marker in uat for marker in UAT_GAP_MARKERS):
        return True
    return False


@dataclass(slots=True, frozen=True)
class PhaseRange:
    start: float
    end: float

    def __contains__(self, number: object) -> bool:
        if isinstance(number, bool) or not isinstance(number, (int, float)):
            return False
        return self.start <= normalize_phase_number(number) <= self.end


def parse_phase_range(value: str) -> PhaseRange:
    match = _RANGE_PATTERN.match(value.strip())
    if not match:
        raise ValueError(
            f'Invalid phase range: "{value}". Expected format: N or N-M (e.g., "3" or "2-5")'
        )
    start = normalize_phase_number(float(match.group(1)))
    end = normalize_phase_number(float(match.group(2))) if match.group(2) else start
    if start > end:
        raise ValueError(
            f"Invalid phase range: start ({format_phase_number(start)}) > "
            f"end ({format_phase_number(end)})"
        )
    return PhaseRange(start=start, end=end)
