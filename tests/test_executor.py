"""Tests for step execution, test runs and publishing."""

from __future__ import annotations

import shlex
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from fakes import FakeGit, FakeRuntime, FakeSourceHost

from issue_resolver.docker_runtime import ExecResult
from issue_resolver.errors import ContainerRuntimeError, PublishError, SessionCancelled
from issue_resolver.executor import (
    SKIPPED_TESTS_OUTPUT,
    StepExecutor,
    build_step_command,
    notification_body,
    pull_request_body,
)
from issue_resolver.language import BuildSystem
from issue_resolver.models import (
    CodebaseAnalysis,
    ContainerHandle,
    DevelopmentEnvironment,
    IssueContext,
    RepoInfo,
    ResolutionPlan,
    TestRunResult,
)
from issue_resolver.planner import CANONICAL_STEPS


@pytest.fixture
def issue() -> IssueContext:
    return IssueContext(
        owner="test-owner",
        repo="test-repo",
        issue_number=123,
        title="Fix login bug",
        body="",
        state="open",
        repo_info=RepoInfo(name="test-repo", full_name="test-owner/test-repo", language="TypeScript"),
        codebase=CodebaseAnalysis(build_system=BuildSystem.NPM),
    )


@pytest.fixture
def plan() -> ResolutionPlan:
    return ResolutionPlan(
        problem_summary="Issue #123: Fix login bug",
        proposed_solution="Implement a fix based on the issue description",
        files_to_modify=("src/login.ts",),
        implementation_steps=CANONICAL_STEPS,
        testing_strategy="Write unit tests to verify the fix works as expected",
        success_criteria="All tests pass and the issue is resolved",
    )


@pytest.fixture
def env(tmp_path: Path) -> DevelopmentEnvironment:
    return DevelopmentEnvironment(
        workspace_path=tmp_path,
        branch_name="fix/issue-123-fix-login-bug",
        build_system=BuildSystem.NPM,
        container=ContainerHandle(id="ctr-1", name="issue-resolver-test", image="node:18"),
    )


def _executor(runtime: FakeRuntime, git: FakeGit, host: FakeSourceHost) -> StepExecutor:
    return StepExecutor(runtime, git, host)


def test_step_command_quotes_arguments(issue: IssueContext) -> None:
    command = build_step_command("codemcp", issue, "Fix the user's \"login\" flow")
    assert command[:2] == ["bash", "-c"]
    assert shlex.split(command[2]) == [
        "codemcp",
        "ImplementStep",
        "Implementing step for GitHub issue #123: Fix the user's \"login\" flow",
        "--chat_id=issue-123",
        "--description=fix-the-user-s-login-flow",
    ]


def test_execute_runs_steps_tests_and_publishes(
    env: DevelopmentEnvironment,
    plan: ResolutionPlan,
    issue: IssueContext,
    runtime: FakeRuntime,
    git: FakeGit,
    source_host: FakeSourceHost,
) -> None:
    progress: list[str] = []
    result = _executor(runtime, git, source_host).execute(env, plan, issue, progress=progress.append)

    assert len(runtime.step_commands()) == 6
    # one step mentions tests, plus the final run
    assert len(runtime.test_commands()) == 2
    assert progress[0] == "Implementing step 1/6: Understand the issue by analyzing the code"
    assert progress[5] == "Implementing step 6/6: Create a pull request"

    assert git.identity == ("GitHub Issue Resolver", "github-issue-resolver@example.com")
    assert git.commits == ["Fix #123: Fix login bug"]
    assert git.pushes == ["fix/issue-123-fix-login-bug"]

    pr = source_host.pull_requests[0]
    assert pr["title"] == "Fix #123: Fix login bug"
    assert pr["head"] == "fix/issue-123-fix-login-bug"
    assert pr["base"] == "main"
    assert "✅ All tests passed" in pr["body"]
    assert pr["body"].rstrip().endswith("Fixes #123")

    assert result.change_request_url == "https://github.com/test-owner/test-repo/pull/1"
    assert result.notification_url.startswith("https://github.com/test-owner/test-repo/issues/123#")
    assert "Hello! 👋" in source_host.issue_comments[0]["body"]
    assert result.change_request_url in source_host.issue_comments[0]["body"]
    assert [step.index for step in result.steps] == [1, 2, 3, 4, 5, 6]
    assert result.steps[3].test_result is not None


def test_failing_step_is_recorded_and_execution_continues(
    env: DevelopmentEnvironment, plan: ResolutionPlan, issue: IssueContext, git: FakeGit, source_host: FakeSourceHost
) -> None:
    def _handler(cmd: list[str]) -> ExecResult:
        if cmd[:2] == ["bash", "-c"] and "--description=implement-necessary-changes" in cmd[2]:
            return ExecResult(stdout="", stderr="tool crashed", exit_code=2)
        return ExecResult(stdout="ok", stderr="", exit_code=0)

    runtime = FakeRuntime(handler=_handler)
    warnings: list[str] = []
    result = _executor(runtime, git, source_host).execute(env, plan, issue, on_warning=warnings.append)

    assert len(runtime.step_commands()) == 6
    failed = result.steps[2]
    assert failed.exit_code == 2 and not failed.ok
    assert any("Step 3 failed with exit code 2" in warning for warning in warnings)
    assert source_host.pull_requests


def test_step_runtime_error_is_recorded(
    env: DevelopmentEnvironment, plan: ResolutionPlan, issue: IssueContext, git: FakeGit, source_host: FakeSourceHost
) -> None:
    def _handler(cmd: list[str]) -> ExecResult:
        raise ContainerRuntimeError("container vanished")

    outcomes = _executor(FakeRuntime(handler=_handler), git, source_host).run_steps(env, plan, issue)
    assert len(outcomes) == 6
    assert all(outcome.exit_code == -1 for outcome in outcomes)
    assert outcomes[3].test_result is not None and not outcomes[3].test_result.success


def test_failing_tests_do_not_abort_publish(
    env: DevelopmentEnvironment, plan: ResolutionPlan, issue: IssueContext, git: FakeGit, source_host: FakeSourceHost
) -> None:
    def _handler(cmd: list[str]) -> ExecResult:
        if cmd[:2] == ["npm", "test"]:
            return ExecResult(stdout="x" * 800, stderr="", exit_code=1)
        return ExecResult(stdout="ok", stderr="", exit_code=0)

    result = _executor(FakeRuntime(handler=_handler), git, source_host).execute(env, plan, issue)
    assert result.final_tests.success is False
    body = source_host.pull_requests[0]["body"]
    assert "⚠️ Some tests failed" in body
    assert "x" * 500 + "..." in body
    assert "x" * 501 not in body


def test_unknown_build_system_skips_tests(
    env: DevelopmentEnvironment, runtime: FakeRuntime, git: FakeGit, source_host: FakeSourceHost
) -> None:
    env.build_system = BuildSystem.UNKNOWN
    result = _executor(runtime, git, source_host).run_tests(env)
    assert result == TestRunResult(success=True, output=SKIPPED_TESTS_OUTPUT, skipped=True)
    assert runtime.execs == []


def test_cancel_before_step(
    env: DevelopmentEnvironment, plan: ResolutionPlan, issue: IssueContext, runtime: FakeRuntime, git: FakeGit, source_host: FakeSourceHost
) -> None:
    calls = {"n": 0}

    def _cancel() -> bool:
        calls["n"] += 1
        return calls["n"] > 2

    with pytest.raises(SessionCancelled):
        _executor(runtime, git, source_host).execute(env, plan, issue, cancel_check=_cancel)
    assert len(runtime.step_commands()) == 2
    assert source_host.pull_requests == []


def test_push_failure_raises_publish_error(
    env: DevelopmentEnvironment, plan: ResolutionPlan, issue: IssueContext, runtime: FakeRuntime, git: FakeGit, source_host: FakeSourceHost
) -> None:
    git.fail_push = True
    with pytest.raises(PublishError) as excinfo:
        _executor(runtime, git, source_host).execute(env, plan, issue)
    assert excinfo.value.stage == "publishing"
    assert source_host.pull_requests == []


def test_pull_request_failure_raises_publish_error(
    env: DevelopmentEnvironment, plan: ResolutionPlan, issue: IssueContext, runtime: FakeRuntime, git: FakeGit, source_host: FakeSourceHost
) -> None:
    source_host.fail_pull_request = True
    with pytest.raises(PublishError, match="Failed to create pull request"):
        _executor(runtime, git, source_host).execute(env, plan, issue)


def test_nothing_to_commit_still_publishes(
    env: DevelopmentEnvironment, plan: ResolutionPlan, issue: IssueContext, runtime: FakeRuntime, git: FakeGit, source_host: FakeSourceHost
) -> None:
    git.clean = True
    result = _executor(runtime, git, source_host).execute(env, plan, issue)
    assert git.commits == []
    assert git.pushes == ["fix/issue-123-fix-login-bug"]
    assert result.change_request_url


def test_bodies_include_plan_sections(plan: ResolutionPlan, issue: IssueContext) -> None:
    body = pull_request_body(plan, issue, TestRunResult(success=True, output="all good"))
    assert "## Changes Made\n1. Understand the issue by analyzing the code" in body
    assert "## Files Modified\n- src/login.ts" in body
    assert "```\nall good\n```" in body

    comment = notification_body(plan, "https://example.test/pr/1")
    assert "## Problem\nIssue #123: Fix login bug" in comment
    assert "## Solution\nImplement a fix based on the issue description" in comment
