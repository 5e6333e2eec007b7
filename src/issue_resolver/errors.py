"""Error taxonomy for the resolution workflow.

Fatal errors end a session in ``failed`` (or ``rejected`` for approval
errors). Recoverable errors are recorded as warnings and the workflow keeps
going. Each error carries the stage it originated from so callers can report
where things went wrong.
"""

from __future__ import annotations

from typing import Any, Optional


class ResolverError(Exception):
    """Base class for errors raised by the resolver."""

    stage: str = "unknown"
    fatal: bool = True

    def __init__(self, message: str, *, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if stage:
            self.stage = stage

    def __str__(self) -> str:
        return self.message


class ContextError(ResolverError):
    """Issue or repository lookup/parsing failed."""

    stage = "analyzing"


class PlanningError(ResolverError):
    """The planner crashed while building or updating a plan."""

    stage = "planning"


class ApprovalError(ResolverError):
    """The user rejected the plan or exhausted invalid responses."""

    stage = "approval"


class ProvisioningError(ResolverError):
    """Clone, branch checkout or container start failed."""

    stage = "provisioning"

    def __init__(self, message: str, *, environment: Any = None, stage: Optional[str] = None):
        super().__init__(message, stage=stage)
        # Partially created environment, so the caller can still tear it down.
        self.environment = environment


class StepToolError(ResolverError):
    """The mutation tool exited non-zero for one step."""

    stage = "executing"
    fatal = False

    def __init__(self, message: str, *, exit_code: int = 1, step: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.step = step


class TestFailure(ResolverError):
    """A test run failed; recorded and embedded in the published description."""

    __test__ = False  # keep pytest from collecting this class

    stage = "verifying"
    fatal = False


class PublishError(ResolverError):
    """Commit, push, change-request or notification creation failed."""

    stage = "publishing"


class SessionCancelled(ResolverError):
    """The session was cancelled by an explicit request."""

    stage = "cancelled"


class SessionTimeout(ResolverError):
    """No user response arrived before the configured deadline."""

    stage = "awaiting_approval"


class SourceHostError(ResolverError):
    """The source-hosting API returned an error."""

    stage = "source_host"

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ContainerRuntimeError(ResolverError):
    """The container runtime failed to perform an operation."""

    stage = "container"


class GitError(ResolverError):
    """A local git operation failed."""

    stage = "git"


class SessionConflictError(ResolverError):
    """A session for the same issue is already in flight."""

    stage = "created"


class UnknownSessionError(ResolverError):
    """No session exists with the given identifier."""


class StaleRequestError(ResolverError):
    """A response referenced a request that is no longer pending."""


class InvalidTransition(ResolverError):
    """The session state machine refused a transition."""


class SessionStateError(ResolverError):
    """A session reached a stage without the data that stage needs."""
