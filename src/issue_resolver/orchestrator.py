"""Drive resolution sessions through analysis, approval, execution and publishing.

A session is explicit state plus an inbound event queue. Waiting for the
user holds no thread: the session parks with a pending `InputRequest`, and
`respond()` enqueues the answer and resumes the state machine. Work runs
inline on the caller's thread by default, or on a thread pool when the
orchestrator is built with ``background=True``.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from functools import partial
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from .analyzer import CodebaseAnalyzer
from .config import ResolverConfig
from .docker_runtime import ContainerRuntime
from .environment import EnvironmentManager
from .errors import (
    ApprovalError,
    ContextError,
    ProvisioningError,
    ResolverError,
    SessionCancelled,
    SessionConflictError,
    SessionStateError,
    SessionTimeout,
    SourceHostError,
    StaleRequestError,
    UnknownSessionError,
)
from .executor import StepExecutor
from .fsm import WAITING_STATUSES, SessionStatus, next_status
from .git_utils import GitOperations
from .github import GitHubClient, SourceHost, parse_issue_url
from .io_utils import _append_record
from .logging_utils import summarize_update
from .messaging import APPROVAL_OPTIONS, CONFIRMATION_OPTIONS, InputRequest, StatusUpdate, UpdateKind
from .models import (
    IssueComment,
    IssueContext,
    RepoInfo,
    Session,
    SessionResult,
    issue_key,
)
from .planner import ResolutionPlanner, format_plan
from .utils import _new_id, _now_iso, _parse_iso

Listener = Callable[[Session, StatusUpdate], None]
SourceHostFactory = Callable[[str], SourceHost]

PLAN_REJECTED = "Plan rejected by user"
UPDATED_PLAN_REJECTED = "Updated plan rejected by user"
TOO_MANY_INVALID = "Too many invalid responses; plan rejected"
TIMED_OUT = "Timed out waiting for user input"
CANCELLED = "Session cancelled"

MODIFY_PROMPT = (
    "Please describe the modifications you'd like to make to the plan. Use section headers "
    "(Problem Summary, Proposed Solution, Files to Modify, Implementation Steps, Testing Strategy, "
    "Success Criteria) for the parts you want to replace."
)


def load_issue_context(
    host: SourceHost,
    analyzer: CodebaseAnalyzer,
    owner: str,
    repo: str,
    number: int,
    *,
    on_warning: Optional[Callable[[str], None]] = None,
) -> IssueContext:
    """Fetch the issue, its repository and comments, and analyze the codebase.

    Raises:
        ContextError: The issue or repository could not be fetched.
    """
    try:
        issue = host.get_issue(owner, repo, number)
        repository = host.get_repository(owner, repo)
    except SourceHostError as exc:
        raise ContextError(f"Failed to fetch issue {owner}/{repo}#{number}: {exc}") from exc

    comments: list[IssueComment] = []
    try:
        for item in host.list_comments(owner, repo, number):
            comments.append(
                IssueComment(
                    author=str((item.get("user") or {}).get("login") or ""),
                    body=str(item.get("body") or ""),
                    url=item.get("html_url"),
                )
            )
    except SourceHostError as exc:
        message = f"Failed to fetch comments for {owner}/{repo}#{number}: {exc}"
        logger.warning(message)
        if on_warning:
            on_warning(message)

    codebase = analyzer.analyze(owner, repo)
    if on_warning:
        for warning in analyzer.warnings:
            on_warning(warning)

    labels = tuple(
        str(label.get("name") if isinstance(label, dict) else label)
        for label in issue.get("labels") or []
    )
    return IssueContext(
        owner=owner,
        repo=repo,
        issue_number=number,
        title=str(issue.get("title") or ""),
        body=str(issue.get("body") or ""),
        state=str(issue.get("state") or "open"),
        repo_info=RepoInfo(
            name=str(repository.get("name") or repo),
            full_name=str(repository.get("full_name") or f"{owner}/{repo}"),
            language=str(repository.get("language") or "Unknown"),
            default_branch=str(repository.get("default_branch") or "main"),
            has_issues=bool(repository.get("has_issues", True)),
        ),
        codebase=codebase,
        labels=labels,
        comments=tuple(comments),
    )


class SessionOrchestrator:
    def __init__(
        self,
        runtime: ContainerRuntime,
        git: GitOperations,
        *,
        config: Optional[ResolverConfig] = None,
        source_host: Optional[SourceHost] = None,
        source_host_factory: Optional[SourceHostFactory] = None,
        planner: Optional[ResolutionPlanner] = None,
        environment_manager: Optional[EnvironmentManager] = None,
        background: bool = False,
        max_workers: int = 4,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.config = config or ResolverConfig()
        self.runtime = runtime
        self.git = git
        self._source_host = source_host
        self._source_host_factory = source_host_factory
        self.planner = planner or ResolutionPlanner()
        self.environments = environment_manager or EnvironmentManager(runtime, git, self.config)
        self.background = background
        self._max_workers = max_workers
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.RLock()
        self._sessions: dict[str, Session] = {}
        self._active: dict[str, str] = {}
        self._listeners: list[Listener] = []
        self._pool: ThreadPoolExecutor | None = None
        self._hosts: dict[str, SourceHost] = {}

    # -- public API ---------------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def start_session(
        self,
        issue_url: str,
        *,
        credentials: Optional[str] = None,
        workspace_root: Optional[Path] = None,
        approval_timeout_seconds: Optional[float] = None,
    ) -> Session:
        """Register a session for `issue_url` and start analyzing it.

        Raises:
            ContextError: The URL is not a GitHub issue URL.
            SessionConflictError: A session for the same issue is still in flight.
        """
        owner, repo, number = parse_issue_url(issue_url)
        key = issue_key(owner, repo, number)
        timeout = approval_timeout_seconds
        if timeout is None:
            timeout = self.config.approval_timeout_seconds
        with self._lock:
            active_id = self._active.get(key)
            if active_id is not None:
                raise SessionConflictError(f"Session {active_id} is already resolving {key}")
            session = Session(
                id=_new_id("session"),
                issue_url=issue_url,
                issue_key=key,
                owner=owner,
                repo=repo,
                issue_number=number,
                workspace_root=Path(workspace_root or self.config.workspace_root),
                credentials=credentials if credentials is not None else self.config.github_token,
                approval_timeout_seconds=timeout,
            )
            self._sessions[session.id] = session
            self._active[key] = session.id
        logger.info("Started session {} for {}", session.id, key)
        self._kick(session)
        return session

    def get_session(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSessionError(f"Unknown session: {session_id}")
        return session

    def list_sessions(self) -> list[Session]:
        with self._lock:
            return list(self._sessions.values())

    def result(self, session_id: str) -> Optional[SessionResult]:
        return self.get_session(session_id).result

    def updates(self, session_id: str, since: int = 0) -> list[StatusUpdate]:
        session = self.get_session(session_id)
        with session.lock:
            return [update for update in session.updates if update.seq > since]

    def respond(self, session_id: str, request_id: str, value: str) -> Session:
        """Answer the session's pending request and resume it.

        Raises:
            UnknownSessionError: No such session.
            StaleRequestError: `request_id` is not the pending request.
        """
        session = self.get_session(session_id)
        with session.lock:
            pending = session.pending_request
            if pending is None or pending.id != request_id or session.is_terminal or session.cancel_requested:
                raise StaleRequestError(f"Request {request_id} is not pending for session {session_id}")
            session.pending_request = None
            session.events.append((pending, value))
        self._kick(session)
        return session

    def cancel(self, session_id: str) -> Session:
        """Cancel a session.

        A session with no live driver (parked on user input, or left behind by
        an interrupted inline run) fails and is torn down immediately. A running
        session is flagged and stops at its next checkpoint.
        """
        session = self.get_session(session_id)
        with session.lock:
            if session.is_terminal:
                return session
            session.cancel_requested = True
            idle = not session.driving
        if idle:
            logger.info("Cancelling idle session {} in {}", session.id, session.status.value)
            self._fail(session, SessionCancelled(CANCELLED, stage=session.status.value))
        else:
            logger.info("Cancellation requested for running session {}", session.id)
        return session

    def check_timeouts(self, now: Optional[datetime] = None) -> list[str]:
        """Fail every session whose pending request is past its deadline.

        Returns:
            Ids of the sessions that timed out.
        """
        current = now or self._clock()
        expired: list[Session] = []
        for session in self.list_sessions():
            with session.lock:
                request = session.pending_request
                if session.is_terminal or session.driving or request is None:
                    continue
                deadline = _parse_iso(request.deadline)
                if deadline is None or current < deadline:
                    continue
                session.pending_request = None
                expired.append(session)
        for session in expired:
            logger.warning("Session {} timed out waiting for input", session.id)
            self._fail(session, SessionTimeout(TIMED_OUT, stage=session.status.value))
        return [session.id for session in expired]

    def shutdown(self, *, wait: bool = True) -> None:
        pool = self._pool
        if pool is not None:
            pool.shutdown(wait=wait)
            self._pool = None
        for host in self._hosts.values():
            close = getattr(host, "close", None)
            if callable(close):
                close()
        self._hosts.clear()

    # -- driver -------------------------------------------------------------

    def _get_pool(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="issue-session")
        return self._pool

    def _kick(self, session: Session) -> None:
        with session.lock:
            if session.driving or session.is_terminal:
                return
            session.driving = True
        if self.background:
            future = self._get_pool().submit(self._drive, session)
            future.add_done_callback(partial(self._log_future_error, session.id))
        else:
            self._drive(session)

    @staticmethod
    def _log_future_error(session_id: str, future: Future) -> None:
        exc = future.exception()
        if exc:
            logger.opt(exception=exc).error("Session {} driver raised unexpected error", session_id)

    def _next_work(self, session: Session) -> Optional[Callable[[], None]]:
        if session.is_terminal:
            return None
        if session.status == SessionStatus.CREATED:
            return partial(self._run_planning, session)
        if session.status == SessionStatus.APPROVED:
            return partial(self._run_pipeline, session)
        if session.status in WAITING_STATUSES and session.events:
            request, value = session.events.popleft()
            return partial(self._handle_response, session, request, value)
        return None

    def _drive(self, session: Session) -> None:
        while True:
            with session.lock:
                work = self._next_work(session)
                if work is None:
                    session.driving = False
                    return
            try:
                work()
            except ResolverError as exc:
                self._fail(session, exc)
            except Exception as exc:
                logger.exception("Unexpected error in session {}", session.id)
                self._fail(session, ResolverError(str(exc) or exc.__class__.__name__, stage=session.status.value))
            except BaseException:
                logger.warning("Session {} interrupted during {}", session.id, session.status.value)
                try:
                    self._fail(session, SessionCancelled(CANCELLED, stage=session.status.value))
                finally:
                    with session.lock:
                        session.driving = False
                raise

    # -- state helpers ------------------------------------------------------

    def _transition(self, session: Session, target: SessionStatus) -> None:
        with session.lock:
            session.status = next_status(session.status, target)
            session.updated_at = _now_iso()
        logger.debug("Session {} -> {}", session.id, target.value)

    def _emit(
        self,
        session: Session,
        kind: UpdateKind,
        message: str = "",
        *,
        request: Optional[InputRequest] = None,
        result: Any = None,
    ) -> StatusUpdate:
        with session.lock:
            update = StatusUpdate(
                session_id=session.id,
                kind=kind,
                message=message,
                request=request,
                result=result,
                seq=len(session.updates) + 1,
            )
            session.updates.append(update)
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(session, update)
            except Exception:
                logger.exception("Status listener failed for {}", summarize_update(update))
        return update

    def _progress(self, session: Session, message: str) -> None:
        logger.info("[{}] {}", session.issue_key, message)
        self._emit(session, UpdateKind.IN_PROGRESS, message)

    def _warn(self, session: Session, message: str) -> None:
        with session.lock:
            session.warnings.append(message)

    def _check_cancelled(self, session: Session, stage: str) -> None:
        if session.cancel_requested:
            raise SessionCancelled(CANCELLED, stage=stage)

    def _host_for(self, session: Session) -> SourceHost:
        if self._source_host is not None:
            return self._source_host
        with self._lock:
            host = self._hosts.get(session.id)
            if host is None:
                if self._source_host_factory is not None:
                    host = self._source_host_factory(session.credentials)
                else:
                    host = GitHubClient(session.credentials, base_url=self.config.github_api_url)
                self._hosts[session.id] = host
            return host

    def _release_host(self, session: Session) -> None:
        with self._lock:
            host = self._hosts.pop(session.id, None)
        close = getattr(host, "close", None)
        if callable(close):
            close()

    def _ask(self, session: Session, request_type: str, message: str, options: tuple[str, ...] = ()) -> None:
        deadline = None
        if session.approval_timeout_seconds:
            deadline = (self._clock() + timedelta(seconds=session.approval_timeout_seconds)).isoformat()
        request = InputRequest(type=request_type, message=message, options=list(options), deadline=deadline)
        with session.lock:
            session.pending_request = request
        self._emit(session, UpdateKind.AWAITING_USER_INPUT, message, request=request)

    def _ask_approval(self, session: Session) -> None:
        if session.plan is None:
            raise SessionStateError(f"Session {session.id} has no plan to review", stage=session.status.value)
        if session.confirmation_round:
            message = format_plan(session.plan, "Updated Issue Resolution Plan")
            message += "\nPlease review the updated plan. Do you approve it?"
            self._ask(session, "choice", message, CONFIRMATION_OPTIONS)
        else:
            message = format_plan(session.plan)
            message += "\nPlease review the plan. Do you approve it, want to modify it, or reject it?"
            self._ask(session, "choice", message, APPROVAL_OPTIONS)

    # -- stages -------------------------------------------------------------

    def _run_planning(self, session: Session) -> None:
        self._transition(session, SessionStatus.ANALYZING)
        self._progress(session, f"Fetching issue details for {session.issue_key}")
        host = self._host_for(session)
        analyzer = CodebaseAnalyzer(host, max_depth=self.config.analysis_max_depth)
        issue = load_issue_context(
            host,
            analyzer,
            session.owner,
            session.repo,
            session.issue_number,
            on_warning=partial(self._warn, session),
        )
        with session.lock:
            session.issue = issue
        self._check_cancelled(session, SessionStatus.ANALYZING.value)

        self._transition(session, SessionStatus.PLANNING)
        self._progress(session, "Creating resolution plan")
        plan = self.planner.create_plan(issue)
        with session.lock:
            session.plan = plan
        self._check_cancelled(session, SessionStatus.PLANNING.value)

        self._transition(session, SessionStatus.AWAITING_APPROVAL)
        self._ask_approval(session)

    def _handle_response(self, session: Session, request: InputRequest, value: str) -> None:
        if session.status == SessionStatus.PLANNING_UPDATE:
            self._apply_modification(session, value)
            return

        option = request.accepts(value)
        if option == "Modify" and session.confirmation_round:
            option = None
        if option is None:
            self._invalid_response(session, request, value)
            return

        with session.lock:
            session.invalid_responses = 0
        if option == "Approve":
            logger.info("Plan approved for {}", session.issue_key)
            self._transition(session, SessionStatus.APPROVED)
        elif option == "Reject":
            self._reject(session, UPDATED_PLAN_REJECTED if session.confirmation_round else PLAN_REJECTED)
        else:
            self._transition(session, SessionStatus.PLANNING_UPDATE)
            self._ask(session, "text", MODIFY_PROMPT)

    def _invalid_response(self, session: Session, request: InputRequest, value: str) -> None:
        with session.lock:
            session.invalid_responses += 1
            count = session.invalid_responses
        logger.warning("Invalid response {!r} for {} ({} so far)", value, session.issue_key, count)
        if count >= self.config.max_invalid_responses:
            self._reject(session, TOO_MANY_INVALID)
            return
        choices = ", ".join(request.options)
        self._emit(session, UpdateKind.IN_PROGRESS, f"Invalid response. Please choose one of: {choices}")
        self._ask_approval(session)

    def _apply_modification(self, session: Session, text: str) -> None:
        if session.plan is None:
            raise SessionStateError(f"Session {session.id} has no plan to modify", stage=session.status.value)
        updated = self.planner.apply_modification(session.plan, text)
        with session.lock:
            session.plan = updated
            session.confirmation_round = True
            session.invalid_responses = 0
        self._transition(session, SessionStatus.AWAITING_APPROVAL)
        self._ask_approval(session)

    def _reject(self, session: Session, reason: str) -> None:
        logger.info("Plan rejected for {}: {}", session.issue_key, reason)
        self._finish(session, SessionStatus.REJECTED, SessionResult(success=False, error=reason, stage=ApprovalError.stage))

    def _run_pipeline(self, session: Session) -> None:
        """Provision, execute, verify and publish; failures are handled by `_drive`."""
        issue = session.issue
        plan = session.plan
        if issue is None or plan is None:
            raise SessionStateError(
                f"Session {session.id} was approved without an issue and plan",
                stage=session.status.value,
            )
        warn = partial(self._warn, session)

        self._check_cancelled(session, SessionStatus.APPROVED.value)
        self._progress(session, "Setting up development environment")
        self._transition(session, SessionStatus.PROVISIONING)
        try:
            env = self.environments.provision(issue, session.workspace_root, session.credentials, on_warning=warn)
        except ProvisioningError as exc:
            with session.lock:
                session.environment = exc.environment
            raise
        with session.lock:
            session.environment = env

        executor = StepExecutor(self.runtime, self.git, self._host_for(session), self.config)
        self._check_cancelled(session, SessionStatus.PROVISIONING.value)
        self._transition(session, SessionStatus.EXECUTING)
        outcomes = executor.run_steps(
            env,
            plan,
            issue,
            progress=partial(self._progress, session),
            cancel_check=lambda: session.cancel_requested,
            on_warning=warn,
        )

        self._transition(session, SessionStatus.VERIFYING)
        self._progress(session, "Running final tests")
        final_tests = executor.verify(env, on_warning=warn)

        self._check_cancelled(session, SessionStatus.VERIFYING.value)
        self._progress(session, "Creating pull request")
        self._transition(session, SessionStatus.PUBLISHING)
        published = executor.publish(env, plan, issue, final_tests, outcomes)
        with session.lock:
            session.publish_result = published

        self._teardown(session)
        result = SessionResult(
            success=True,
            issue_details=issue.details(),
            plan=plan,
            change_request_url=published.change_request_url,
            notification_url=published.notification_url,
        )
        self._finish(session, SessionStatus.COMPLETED, result)

    def _teardown(self, session: Session) -> None:
        with session.lock:
            env = session.environment
            if env is None or session.teardown_count > 0:
                return
            session.teardown_count += 1
        self.environments.teardown(env)

    def _fail(self, session: Session, exc: ResolverError) -> None:
        if session.is_terminal:
            return
        logger.error("Session {} failed during {}: {}", session.id, exc.stage, exc)
        self._teardown(session)
        self._finish(session, SessionStatus.FAILED, SessionResult(success=False, error=str(exc), stage=exc.stage))

    def _finish(self, session: Session, status: SessionStatus, result: SessionResult) -> None:
        with session.lock:
            if session.is_terminal:
                return
            self._transition(session, status)
            session.result = result
            session.pending_request = None
            session.events.clear()
        with self._lock:
            if self._active.get(session.issue_key) == session.id:
                del self._active[session.issue_key]
        self._release_host(session)
        self._archive(session)
        kind = UpdateKind.COMPLETED if result.success else UpdateKind.FAILED
        message = "Issue resolution completed successfully" if result.success else (result.error or "")
        self._emit(session, kind, message, result=result)
        self._prune_finished()

    def _prune_finished(self) -> None:
        """Forget the oldest terminal sessions beyond `max_finished_sessions`."""
        limit = max(0, self.config.max_finished_sessions)
        with self._lock:
            finished = sorted(
                (session for session in self._sessions.values() if session.is_terminal),
                key=lambda session: session.updated_at,
            )
            excess = len(finished) - limit
            for session in finished[:max(0, excess)]:
                del self._sessions[session.id]
                logger.debug("Dropped finished session {}", session.id)

    def _archive(self, session: Session) -> None:
        if not self.config.archive_path:
            return
        try:
            _append_record(Path(self.config.archive_path), session.to_dict(include_updates=True))
        except OSError as exc:
            logger.warning("Failed to archive session {}: {}", session.id, exc)
