"""Resolution planning: derive a plan from an issue and apply user edits to it."""

from __future__ import annotations

import re
from dataclasses import replace
from typing import Any, Optional

from loguru import logger

from .errors import PlanningError
from .models import DirNode, FileEntry, FileNode, IssueContext, ResolutionPlan, iter_nodes

CANONICAL_STEPS: tuple[str, ...] = (
    "Understand the issue by analyzing the code",
    "Create a branch for the fix",
    "Implement necessary changes",
    "Add or update tests",
    "Verify the fix resolves the issue",
    "Create a pull request",
)

DEFAULT_SOLUTION = "Implement a fix based on the issue description"
DEFAULT_TESTING_STRATEGY = "Write unit tests to verify the fix works as expected"
DEFAULT_SUCCESS_CRITERIA = "All tests pass and the issue is resolved"

FALLBACK_NAME_MARKERS = ("index", "main", "app")
MIN_CONTENT_WORD_LENGTH = 5

# Section header -> plan field; the order is the order sections are rendered in.
SECTION_FIELDS: dict[str, str] = {
    "problem summary": "problem_summary",
    "proposed solution": "proposed_solution",
    "files to modify": "files_to_modify",
    "implementation steps": "implementation_steps",
    "testing strategy": "testing_strategy",
    "success criteria": "success_criteria",
}
LIST_FIELDS = frozenset({"files_to_modify", "implementation_steps"})

_HEADER_RE = re.compile(
    r"^[ \t]*#*[ \t]*(?P<header>" + "|".join(SECTION_FIELDS) + r")[ \t]*(?::[ \t]*(?P<inline>.*?))?[ \t]*$",
    re.IGNORECASE | re.MULTILINE,
)
_LIST_PREFIX_RE = re.compile(r"^\s*(?:[-*+•]|\d+[.)])(?:\s+|$)")
_WORD_RE = re.compile(r"[a-z0-9_]+")


def _issue_words(issue: IssueContext) -> list[str]:
    return _WORD_RE.findall(f"{issue.title} {issue.body}".lower())


def _is_relevant(entry: FileEntry, tokens: set[str], content_words: list[str]) -> bool:
    name_parts = [part for part in entry.name.lower().split(".") if part]
    if any(part in tokens for part in name_parts):
        return True
    if entry.content:
        lowered = entry.content.lower()
        return any(word in lowered for word in content_words)
    return False


def find_relevant_files(structure: list[FileNode], issue: IssueContext) -> list[str]:
    """Return paths of files likely related to the issue, in traversal order."""
    words = _issue_words(issue)
    tokens = set(words)
    content_words = sorted({w for w in words if len(w) >= MIN_CONTENT_WORD_LENGTH}, key=words.index)

    relevant = [
        node.path
        for node in iter_nodes(structure)
        if isinstance(node, FileEntry) and _is_relevant(node, tokens, content_words)
    ]
    if relevant:
        return relevant

    return [
        node.path
        for node in structure
        if isinstance(node, FileEntry) and any(marker in node.name for marker in FALLBACK_NAME_MARKERS)
    ]


def _parse_list(body: str) -> list[str]:
    items = []
    for line in body.splitlines():
        item = _LIST_PREFIX_RE.sub("", line, count=1).strip()
        if item:
            items.append(item)
    return items


def parse_modification_sections(patch_text: str) -> dict[str, str]:
    """Split modification text into `{field_name: section_body}` for recognized headers.

    When a header appears more than once the last occurrence wins.
    """
    text = patch_text or ""
    matches = list(_HEADER_RE.finditer(text))
    sections: dict[str, str] = {}
    for idx, match in enumerate(matches):
        end = matches[idx + 1].start() if idx + 1 < len(matches) else len(text)
        inline = match.group("inline") or ""
        body = "\n".join(part for part in (inline, text[match.end():end]) if part)
        field_name = SECTION_FIELDS[match.group("header").lower()]
        sections[field_name] = body.strip()
    return sections


def format_plan(plan: ResolutionPlan, heading: str = "Issue Resolution Plan") -> str:
    """Render a plan as the markdown document shown to the user."""
    files = "\n".join(f"- {path}" for path in plan.files_to_modify)
    steps = "\n".join(f"{i}. {step}" for i, step in enumerate(plan.implementation_steps, 1))
    return (
        f"# {heading}\n\n"
        f"## Problem Summary\n{plan.problem_summary}\n\n"
        f"## Proposed Solution\n{plan.proposed_solution}\n\n"
        f"## Files to Modify\n{files}\n\n"
        f"## Implementation Steps\n{steps}\n\n"
        f"## Testing Strategy\n{plan.testing_strategy}\n\n"
        f"## Success Criteria\n{plan.success_criteria}\n"
    )


class ResolutionPlanner:
    """Deterministic baseline planner."""

    def create_plan(self, issue: IssueContext) -> ResolutionPlan:
        logger.info("Creating resolution plan for {}", issue.issue_key)
        try:
            files = find_relevant_files(issue.codebase.file_structure, issue)
            return ResolutionPlan(
                problem_summary=f"Issue #{issue.issue_number}: {issue.title}",
                proposed_solution=DEFAULT_SOLUTION,
                files_to_modify=tuple(files),
                implementation_steps=CANONICAL_STEPS,
                testing_strategy=DEFAULT_TESTING_STRATEGY,
                success_criteria=DEFAULT_SUCCESS_CRITERIA,
            )
        except Exception as exc:
            logger.exception("Failed to create resolution plan")
            raise PlanningError(f"Failed to create resolution plan: {exc}") from exc

    def apply_modification(self, plan: ResolutionPlan, patch_text: str) -> ResolutionPlan:
        """Return a copy of `plan` with the sections present in `patch_text` replaced."""
        logger.info("Updating plan with user modifications")
        try:
            sections = parse_modification_sections(patch_text)
            changes: dict[str, Any] = {}
            for field_name, body in sections.items():
                value: Optional[Any]
                if field_name in LIST_FIELDS:
                    items = _parse_list(body)
                    value = tuple(items) if items else None
                else:
                    value = body or None
                if value is not None:
                    changes[field_name] = value
            if not changes:
                logger.info("No recognized plan sections in modification text")
            return replace(plan, **changes)
        except Exception as exc:
            logger.exception("Failed to update plan with modifications")
            raise PlanningError(f"Failed to update plan: {exc}") from exc
