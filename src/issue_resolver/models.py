"""Define the issue, codebase, plan, environment and session records used by the resolver."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Literal, Optional, Union, cast

from .fsm import SessionStatus, is_terminal
from .language import BuildSystem
from .messaging import InputRequest, StatusUpdate
from .utils import _now_iso


def _serialize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [_serialize(item) for item in value]
    if isinstance(value, dict):
        return {key: _serialize(val) for key, val in value.items()}
    return value


@dataclass
class FileEntry:
    """A file in the repository tree; `content` is set only for allow-listed files."""

    path: str
    name: str
    content: Optional[str] = None
    kind: Literal["file"] = field(init=False, default="file")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind, "path": self.path, "name": self.name}
        if self.content is not None:
            data["content"] = self.content
        return data


@dataclass
class DirNode:
    """A directory in the repository tree; `expanded` is False when it was not descended."""

    path: str
    name: str
    children: list["FileNode"] = field(default_factory=list)
    expanded: bool = False
    kind: Literal["dir"] = field(init=False, default="dir")

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "path": self.path,
            "name": self.name,
            "expanded": self.expanded,
            "children": [child.to_dict() for child in self.children],
        }


FileNode = Union[FileEntry, DirNode]


def iter_nodes(nodes: list[FileNode]) -> Iterator[FileNode]:
    """Yield every node of a tree in pre-order (traversal order)."""
    for node in nodes:
        yield node
        if isinstance(node, DirNode) and node.children:
            yield from iter_nodes(node.children)


@dataclass
class CodebaseAnalysis:
    file_structure: list[FileNode] = field(default_factory=list)
    build_system: BuildSystem = BuildSystem.UNKNOWN
    main_language: str = "Unknown"
    dependencies: dict[str, Any] = field(default_factory=dict)

    def files(self) -> Iterator[FileEntry]:
        for node in iter_nodes(self.file_structure):
            if isinstance(node, FileEntry):
                yield node

    def find_file(self, name: str) -> Optional[FileEntry]:
        for entry in self.files():
            if entry.name == name:
                return entry
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_structure": [node.to_dict() for node in self.file_structure],
            "build_system": self.build_system.value,
            "main_language": self.main_language,
            "dependencies": _serialize(self.dependencies),
        }


@dataclass(frozen=True)
class RepoInfo:
    name: str
    full_name: str
    language: str = "Unknown"
    default_branch: str = "main"
    has_issues: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class IssueComment:
    author: str
    body: str
    url: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class IssueContext:
    """Immutable snapshot of an issue and its repository, created once per session."""

    owner: str
    repo: str
    issue_number: int
    title: str
    body: str
    state: str
    repo_info: RepoInfo
    codebase: CodebaseAnalysis = field(default_factory=CodebaseAnalysis, compare=False)
    labels: tuple[str, ...] = ()
    comments: tuple[IssueComment, ...] = ()

    @property
    def issue_key(self) -> str:
        return issue_key(self.owner, self.repo, self.issue_number)

    @property
    def language(self) -> str:
        """Repository language as reported by the host, else the detected one."""
        reported = (self.repo_info.language or "").strip()
        if reported and reported.lower() != "unknown":
            return reported
        return self.codebase.main_language

    def details(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "repo": self.repo,
            "issue_number": self.issue_number,
            "title": self.title,
        }

    def to_dict(self) -> dict[str, Any]:
        data = self.details()
        data.update(
            {
                "body": self.body,
                "state": self.state,
                "labels": list(self.labels),
                "comments": [comment.to_dict() for comment in self.comments],
                "repo_info": self.repo_info.to_dict(),
                "codebase": self.codebase.to_dict(),
            }
        )
        return data


def issue_key(owner: str, repo: str, number: int) -> str:
    return f"{owner}/{repo}#{number}".lower()


@dataclass(frozen=True)
class ResolutionPlan:
    """Structured plan negotiated with the user before implementation.

    Instances are frozen; the planner produces updated copies through
    `dataclasses.replace` rather than mutating a plan in place.
    """

    problem_summary: str
    proposed_solution: str
    files_to_modify: tuple[str, ...] = ()
    implementation_steps: tuple[str, ...] = ()
    testing_strategy: str = ""
    success_criteria: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "files_to_modify", tuple(self.files_to_modify))
        object.__setattr__(self, "implementation_steps", tuple(self.implementation_steps))

    def to_dict(self) -> dict[str, Any]:
        return {
            "problem_summary": self.problem_summary,
            "proposed_solution": self.proposed_solution,
            "files_to_modify": list(self.files_to_modify),
            "implementation_steps": list(self.implementation_steps),
            "testing_strategy": self.testing_strategy,
            "success_criteria": self.success_criteria,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResolutionPlan":
        return cls(
            problem_summary=str(data.get("problem_summary") or ""),
            proposed_solution=str(data.get("proposed_solution") or ""),
            files_to_modify=tuple(str(item) for item in data.get("files_to_modify") or []),
            implementation_steps=tuple(str(item) for item in data.get("implementation_steps") or []),
            testing_strategy=str(data.get("testing_strategy") or ""),
            success_criteria=str(data.get("success_criteria") or ""),
        )


@dataclass
class ContainerHandle:
    id: str
    name: str
    image: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DevelopmentEnvironment:
    """Workspace, container and branch owned by one session while it executes."""

    workspace_path: Path
    branch_name: str
    build_system: BuildSystem = BuildSystem.UNKNOWN
    base_branch: str = "main"
    container: Optional[ContainerHandle] = None
    dependencies_installed: bool = False
    tool_initialized: bool = False
    released: bool = False

    def to_dict(self) -> dict[str, Any]:
        return cast(dict[str, Any], _serialize(asdict(self)))


@dataclass
class TestRunResult:
    __test__ = False

    success: bool
    output: str
    command: Optional[str] = None
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "command": self.command,
            "skipped": self.skipped,
        }


@dataclass
class StepOutcome:
    index: int
    step: str
    exit_code: int
    error: Optional[str] = None
    test_result: Optional[TestRunResult] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "step": self.step,
            "exit_code": self.exit_code,
            "ok": self.ok,
            "error": self.error,
            "test_result": self.test_result.to_dict() if self.test_result else None,
        }


@dataclass
class PublishResult:
    change_request_url: str
    notification_url: str
    branch: str
    commit_message: str
    final_tests: TestRunResult
    steps: list[StepOutcome] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "change_request_url": self.change_request_url,
            "notification_url": self.notification_url,
            "branch": self.branch,
            "commit_message": self.commit_message,
            "final_tests": self.final_tests.to_dict(),
            "steps": [step.to_dict() for step in self.steps],
        }


@dataclass
class SessionResult:
    """Terminal outcome of a session, in the shape returned to callers."""

    success: bool
    error: Optional[str] = None
    stage: Optional[str] = None
    issue_details: Optional[dict[str, Any]] = None
    plan: Optional[ResolutionPlan] = None
    change_request_url: Optional[str] = None
    notification_url: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        if not self.success:
            return {"success": False, "error": self.error, "stage": self.stage}
        return {
            "success": True,
            "issue_details": self.issue_details,
            "plan": self.plan.to_dict() if self.plan else None,
            "change_request_url": self.change_request_url,
            "notification_url": self.notification_url,
        }


@dataclass(eq=False)
class Session:
    """Mutable state of one resolution run, owned by the orchestrator.

    `credentials` never leaves the process: it is excluded from `to_dict`
    and therefore from the archive and the API.
    """

    id: str
    issue_url: str
    issue_key: str
    owner: str
    repo: str
    issue_number: int
    workspace_root: Path
    credentials: str = field(default="", repr=False)
    approval_timeout_seconds: Optional[float] = None
    status: SessionStatus = SessionStatus.CREATED
    issue: Optional[IssueContext] = None
    plan: Optional[ResolutionPlan] = None
    pending_request: Optional[InputRequest] = None
    events: deque = field(default_factory=deque)
    updates: list[StatusUpdate] = field(default_factory=list)
    environment: Optional[DevelopmentEnvironment] = None
    teardown_count: int = 0
    result: Optional[SessionResult] = None
    publish_result: Optional[PublishResult] = None
    warnings: list[str] = field(default_factory=list)
    invalid_responses: int = 0
    confirmation_round: bool = False
    cancel_requested: bool = False
    driving: bool = False
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    def to_dict(self, *, include_updates: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "issue_url": self.issue_url,
            "issue_key": self.issue_key,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "issue": self.issue.details() if self.issue else None,
            "plan": self.plan.to_dict() if self.plan else None,
            "pending_request": self.pending_request.to_dict() if self.pending_request else None,
            "environment": self.environment.to_dict() if self.environment else None,
            "teardown_count": self.teardown_count,
            "warnings": list(self.warnings),
            "result": self.result.to_dict() if self.result else None,
            "publish": self.publish_result.to_dict() if self.publish_result else None,
            "update_count": len(self.updates),
        }
        if include_updates:
            data["updates"] = [update.to_dict() for update in self.updates]
        return data
