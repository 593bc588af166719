"""Phase markers embedded in issue tracker comments.

A marker is an HTML comment carrying a small JSON payload, e.g.::

    <!-- CHAINRUN_PHASE: {"phase": "implement", "status": "completed", "timestamp": "..."} -->

Markers let `--resume` see progress recorded on another machine.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime

from pydantic import BaseModel, ValidationError

from chainrun.core.models import PhaseName, PhaseStatus

logger = logging.getLogger(__name__)

# Payload runs to the first " -->" on the line; braces inside strings are fine
_MARKER_RE = re.compile(r"<!-- CHAINRUN_PHASE: (\{.*?\}) -->")
# Markers inside code samples are documentation, not state
_FENCED_CODE_RE = re.compile(r"`{3,}[\s\S]*?`{3,}|~{3,}[\s\S]*?~{3,}")
_INLINE_CODE_RE = re.compile(r"`[^`\n]+`")


class PhaseMarker(BaseModel):
    phase: PhaseName
    status: PhaseStatus
    timestamp: datetime
    error: str | None = None
    pr: int | None = None


def format_marker(marker: PhaseMarker) -> str:
    # An error text containing "-->" would close the HTML comment early
    payload = marker.model_dump_json(exclude_none=True).replace("-->", "--\\u003e")
    return f"<!-- CHAINRUN_PHASE: {payload} -->"


def format_phase_comment(issue_id: str, markers: list[PhaseMarker]) -> str:
    """Human readable progress comment with one marker per phase."""
    lines = [f"**chainrun** progress for #{issue_id}", ""]
    for marker in markers:
        lines.append(f"- {marker.phase.display_name}: {marker.status.value}")
    lines.append("")
    lines.extend(format_marker(m) for m in markers)
    return "\n".join(lines)


def parse_markers(body: str) -> list[PhaseMarker]:
    """Extract every valid marker from one comment body; malformed ones are ignored."""
    stripped = _INLINE_CODE_RE.sub("", _FENCED_CODE_RE.sub("", body))
    markers: list[PhaseMarker] = []
    for match in _MARKER_RE.finditer(stripped):
        try:
            markers.append(PhaseMarker.model_validate(json.loads(match.group(1))))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.debug(f"Ignoring malformed phase marker: {e}")
    return markers


def latest_markers(comments: list[str]) -> dict[PhaseName, PhaseMarker]:
    """Latest marker per phase across all comments, by timestamp."""
    latest: dict[PhaseName, PhaseMarker] = {}
    for body in comments:
        for marker in parse_markers(body):
            existing = latest.get(marker.phase)
            if existing is None or marker.timestamp.timestamp() > existing.timestamp.timestamp():
                latest[marker.phase] = marker
    return latest


def completed_phases_from_comments(comments: list[str]) -> set[PhaseName]:
    return {phase for phase, marker in latest_markers(comments).items() if marker.status == PhaseStatus.COMPLETED}
