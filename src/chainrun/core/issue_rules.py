"""Rules derived from tracker metadata: phases from labels, order from dependencies.

Labels are matched case-insensitively by substring, so ``frontend-admin`` counts
as a UI label and ``hotfix`` as a bug label.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from chainrun.core.models import PhaseName
from chainrun.tracker.base import TrackedIssue

logger = logging.getLogger(__name__)

UI_LABELS = ("ui", "frontend", "admin", "web", "browser")
BUG_LABELS = ("bug", "fix", "hotfix", "patch")
DOCS_LABELS = ("docs", "documentation", "readme")
COMPLEX_LABELS = ("complex", "refactor", "breaking", "major")
SECURITY_LABELS = ("security", "auth", "authentication", "permissions", "admin")

# "Depends on #12", "**Depends on**: 12", "depends on: #12"
_BODY_DEPENDENCY_RE = re.compile(r"\*?\*?depends\s+on\*?\*?:?\s*#?(\d+)", re.IGNORECASE)
# "depends-on-12", "depends-on/12"
_LABEL_DEPENDENCY_RE = re.compile(r"depends-on[-/](\d+)", re.IGNORECASE)


@dataclass
class PhaseSelection:
    """Phases chosen for one issue and whether its quality loop is forced on."""

    phases: list[PhaseName]
    quality_loop: bool = False


def _has_label(labels: list[str], keywords: tuple[str, ...]) -> bool:
    lowered = [label.lower() for label in labels]
    return any(keyword in label for label in lowered for keyword in keywords)


def is_ui_issue(labels: list[str]) -> bool:
    return _has_label(labels, UI_LABELS)


def phases_from_labels(labels: list[str]) -> PhaseSelection:
    """Pick a workflow for an issue from its labels alone.

    Bug and documentation issues skip planning. UI issues get a browser test
    phase before review. Security issues get a security review after planning,
    and complex issues run with the quality loop on.

    Args:
        labels: Tracker label names

    Returns:
        The phase list and the quality-loop flag.
    """
    if _has_label(labels, BUG_LABELS) or _has_label(labels, DOCS_LABELS):
        phases = [PhaseName.IMPLEMENT, PhaseName.REVIEW]
    elif is_ui_issue(labels):
        phases = [PhaseName.PLAN, PhaseName.IMPLEMENT, PhaseName.UI_TEST, PhaseName.REVIEW]
    else:
        phases = [PhaseName.PLAN, PhaseName.IMPLEMENT, PhaseName.REVIEW]

    if _has_label(labels, SECURITY_LABELS) and PhaseName.PLAN in phases:
        phases.insert(phases.index(PhaseName.PLAN) + 1, PhaseName.SECURITY_REVIEW)

    return PhaseSelection(phases=phases, quality_loop=_has_label(labels, COMPLEX_LABELS))


def adjust_phases_for_labels(phases: list[PhaseName], labels: list[str]) -> PhaseSelection:
    """Adapt an explicitly configured phase list to an issue's labels.

    The configured order is kept. A UI issue gains a browser test phase
    before review (or at the end when there is no review), and a complex
    issue runs with the quality loop on.
    """
    adjusted = list(phases)
    if is_ui_issue(labels) and PhaseName.UI_TEST not in adjusted:
        at = adjusted.index(PhaseName.REVIEW) if PhaseName.REVIEW in adjusted else len(adjusted)
        adjusted.insert(at, PhaseName.UI_TEST)
    return PhaseSelection(phases=adjusted, quality_loop=_has_label(labels, COMPLEX_LABELS))


# =============================================================================
# Dependencies
# =============================================================================


def parse_dependencies(issue: TrackedIssue) -> list[str]:
    """Issue ids that ``issue`` declares it depends on, in first-seen order.

    Declarations come from "depends on #N" lines in the body and from
    ``depends-on-N`` labels. Self references are dropped.
    """
    found = _BODY_DEPENDENCY_RE.findall(issue.body or "")
    for label in issue.labels:
        found.extend(_LABEL_DEPENDENCY_RE.findall(label))

    deps: list[str] = []
    for dep in found:
        if dep != issue.issue_id and dep not in deps:
            deps.append(dep)
    return deps


def sort_by_dependencies(issue_ids: list[str], dependencies: dict[str, list[str]]) -> list[str]:
    """Order issues so each runs after the issues it depends on.

    Only dependencies on issues in ``issue_ids`` count. Independent issues
    keep their given order. Issues that cannot be placed because of a cycle
    are appended in their given order after everything that could be sorted.
    """
    members = set(issue_ids)
    pending = {i: [d for d in dependencies.get(i, []) if d in members and d != i] for i in issue_ids}

    ordered: list[str] = []
    placed: set[str] = set()
    progress = True
    while progress:
        progress = False
        for issue_id in issue_ids:
            if issue_id in placed:
                continue
            if all(dep in placed for dep in pending[issue_id]):
                ordered.append(issue_id)
                placed.add(issue_id)
                progress = True
                # Restart so an unblocked earlier issue goes before later ones
                break

    leftover = [i for i in issue_ids if i not in placed]
    if leftover:
        logger.warning(f"Circular dependencies between {', '.join('#' + i for i in leftover)}; keeping given order")
        ordered.extend(leftover)
    return ordered
