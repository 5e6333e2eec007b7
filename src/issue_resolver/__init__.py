"""Resolve GitHub issues through an approved plan, a container workspace and a pull request."""

from .config import ResolverConfig, load_config
from .errors import ResolverError
from .fsm import SessionStatus
from .models import IssueContext, ResolutionPlan, Session, SessionResult
from .orchestrator import SessionOrchestrator
from .planner import ResolutionPlanner, format_plan

__all__ = [
    "IssueContext",
    "ResolutionPlan",
    "ResolutionPlanner",
    "ResolverConfig",
    "ResolverError",
    "Session",
    "SessionOrchestrator",
    "SessionResult",
    "SessionStatus",
    "format_plan",
    "load_config",
]
