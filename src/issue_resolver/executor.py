"""Run plan steps inside a provisioned environment and publish the result."""

from __future__ import annotations

import shlex
from typing import Callable, Optional

from loguru import logger

from .config import ResolverConfig
from .docker_runtime import ContainerRuntime
from .errors import (
    ContainerRuntimeError,
    GitError,
    PublishError,
    SessionCancelled,
    SourceHostError,
    StepToolError,
    TestFailure,
)
from .git_utils import GitOperations
from .github import SourceHost
from .language import get_test_command
from .logging_utils import truncate_output
from .models import (
    DevelopmentEnvironment,
    IssueContext,
    PublishResult,
    ResolutionPlan,
    StepOutcome,
    TestRunResult,
)
from .utils import slugify

ProgressSink = Callable[[str], None]
CancelCheck = Callable[[], bool]
WarningSink = Callable[[str], None]

SKIPPED_TESTS_OUTPUT = "Tests skipped: unknown build system"
TEST_OUTPUT_LIMIT = 500


def commit_message_for(issue: IssueContext) -> str:
    return f"Fix #{issue.issue_number}: {issue.title}"


def step_prompt(issue: IssueContext, step: str) -> str:
    return f"Implementing step for GitHub issue #{issue.issue_number}: {step}"


def build_step_command(tool: str, issue: IssueContext, step: str) -> list[str]:
    """Return the container command that asks the mutation tool to implement `step`."""
    command = " ".join(
        [
            shlex.quote(tool),
            "ImplementStep",
            shlex.quote(step_prompt(issue, step)),
            shlex.quote(f"--chat_id=issue-{issue.issue_number}"),
            shlex.quote(f"--description={slugify(step)}"),
        ]
    )
    return ["bash", "-c", command]


def pull_request_body(plan: ResolutionPlan, issue: IssueContext, test_result: TestRunResult) -> str:
    steps = "\n".join(f"{i}. {step}" for i, step in enumerate(plan.implementation_steps, 1))
    files = "\n".join(f"- {path}" for path in plan.files_to_modify)
    status = "✅ All tests passed" if test_result.success else "⚠️ Some tests failed"
    return (
        f"# Fix for Issue #{issue.issue_number}: {issue.title}\n\n"
        f"## Problem\n{plan.problem_summary}\n\n"
        f"## Solution\n{plan.proposed_solution}\n\n"
        f"## Changes Made\n{steps}\n\n"
        f"## Files Modified\n{files}\n\n"
        f"## Testing\n{plan.testing_strategy}\n\n"
        f"### Test Results\n{status}\n\n"
        f"```\n{truncate_output(test_result.output, TEST_OUTPUT_LIMIT)}\n```\n\n"
        f"## Success Criteria\n{plan.success_criteria}\n\n"
        f"Fixes #{issue.issue_number}\n"
    )


def notification_body(plan: ResolutionPlan, change_request_url: str) -> str:
    return (
        "Hello! 👋\n\n"
        f"I've created a pull request to resolve this issue: {change_request_url}\n\n"
        "The implementation follows this plan:\n\n"
        f"## Problem\n{plan.problem_summary}\n\n"
        f"## Solution\n{plan.proposed_solution}\n\n"
        "Please review the pull request and let me know if you need any adjustments.\n"
    )


class StepExecutor:
    """Apply plan steps with the mutation tool, verify with tests, and publish.

    Step failures and test failures are recoverable: they are reported through
    the warning sink and the run continues. Only publish failures and
    cancellation end the run.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        git: GitOperations,
        source_host: SourceHost,
        config: Optional[ResolverConfig] = None,
    ):
        self.runtime = runtime
        self.git = git
        self.source_host = source_host
        self.config = config or ResolverConfig()

    def run_tests(self, env: DevelopmentEnvironment) -> TestRunResult:
        command = get_test_command(env.build_system)
        if not command:
            logger.info("No test command for build system {}", env.build_system.value)
            return TestRunResult(success=True, output=SKIPPED_TESTS_OUTPUT, skipped=True)
        command_text = " ".join(command)
        if env.container is None:
            return TestRunResult(success=False, output="No container available to run tests", command=command_text)
        logger.info("Running tests: {}", command_text)
        try:
            result = self.runtime.exec(env.container, command, timeout_seconds=self.config.command_timeout_seconds)
        except ContainerRuntimeError as exc:
            logger.warning("Test run failed to execute: {}", exc)
            return TestRunResult(success=False, output=str(exc), command=command_text)
        return TestRunResult(success=result.exit_code == 0, output=result.output, command=command_text)

    def _record_test(self, result: TestRunResult, warn: WarningSink, label: str) -> None:
        if result.success:
            return
        failure = TestFailure(f"{label} tests failed: {truncate_output(result.output, 200)}")
        logger.warning(str(failure))
        warn(str(failure))

    def run_steps(
        self,
        env: DevelopmentEnvironment,
        plan: ResolutionPlan,
        issue: IssueContext,
        *,
        progress: Optional[ProgressSink] = None,
        cancel_check: Optional[CancelCheck] = None,
        on_warning: Optional[WarningSink] = None,
    ) -> list[StepOutcome]:
        """Invoke the mutation tool once per step, in plan order.

        Raises:
            SessionCancelled: `cancel_check()` returned True before a step.
        """
        emit = progress or (lambda _msg: None)
        warn = on_warning or (lambda _msg: None)
        steps = list(plan.implementation_steps)
        outcomes: list[StepOutcome] = []
        logger.info("Implementing {} steps for {} on {}", len(steps), issue.issue_key, env.branch_name)

        for index, step in enumerate(steps, 1):
            if cancel_check and cancel_check():
                raise SessionCancelled("Session cancelled", stage="executing")
            emit(f"Implementing step {index}/{len(steps)}: {step}")

            outcome = StepOutcome(index=index, step=step, exit_code=0)
            try:
                if env.container is None:
                    raise ContainerRuntimeError("No container available")
                result = self.runtime.exec(
                    env.container,
                    build_step_command(self.config.mutation_tool, issue, step),
                    timeout_seconds=self.config.command_timeout_seconds,
                )
                outcome.exit_code = result.exit_code
                if result.exit_code != 0:
                    error = StepToolError(
                        f"Step {index} failed with exit code {result.exit_code}",
                        exit_code=result.exit_code,
                        step=step,
                    )
                    outcome.error = str(error)
                    logger.warning("{}: {}", error, truncate_output(result.stderr, 300))
                    warn(str(error))
            except ContainerRuntimeError as exc:
                outcome.exit_code = -1
                outcome.error = f"Step {index} could not run: {exc}"
                logger.warning(outcome.error)
                warn(outcome.error)

            if "test" in step.lower():
                outcome.test_result = self.run_tests(env)
                self._record_test(outcome.test_result, warn, f"Step {index}")
            outcomes.append(outcome)
        return outcomes

    def verify(self, env: DevelopmentEnvironment, *, on_warning: Optional[WarningSink] = None) -> TestRunResult:
        result = self.run_tests(env)
        self._record_test(result, on_warning or (lambda _msg: None), "Final")
        return result

    def publish(
        self,
        env: DevelopmentEnvironment,
        plan: ResolutionPlan,
        issue: IssueContext,
        final_tests: TestRunResult,
        steps: Optional[list[StepOutcome]] = None,
    ) -> PublishResult:
        """Commit, push, open the pull request and comment on the issue.

        Raises:
            PublishError: Any git or source-host failure.
        """
        message = commit_message_for(issue)
        project_dir = env.workspace_path
        try:
            self.git.configure_identity(project_dir, self.config.git_user_name, self.config.git_user_email)
            sha = self.git.commit_all(project_dir, message)
            if sha is None:
                logger.warning("Nothing to commit for {}; pushing branch as-is", issue.issue_key)
            self.git.push(project_dir, env.branch_name)
        except GitError as exc:
            raise PublishError(f"Failed to commit and push changes: {exc}") from exc

        try:
            pr_url = self.source_host.create_pull_request(
                issue.owner,
                issue.repo,
                title=message,
                head=env.branch_name,
                base=env.base_branch,
                body=pull_request_body(plan, issue, final_tests),
            )
        except SourceHostError as exc:
            raise PublishError(f"Failed to create pull request: {exc}") from exc
        logger.info("Created pull request {}", pr_url)

        try:
            comment_url = self.source_host.create_issue_comment(
                issue.owner,
                issue.repo,
                issue.issue_number,
                notification_body(plan, pr_url),
            )
        except SourceHostError as exc:
            raise PublishError(f"Failed to comment on issue: {exc}") from exc

        return PublishResult(
            change_request_url=pr_url,
            notification_url=comment_url,
            branch=env.branch_name,
            commit_message=message,
            final_tests=final_tests,
            steps=list(steps or []),
        )

    def execute(
        self,
        env: DevelopmentEnvironment,
        plan: ResolutionPlan,
        issue: IssueContext,
        *,
        progress: Optional[ProgressSink] = None,
        cancel_check: Optional[CancelCheck] = None,
        on_warning: Optional[WarningSink] = None,
    ) -> PublishResult:
        """Run every step, the final test pass and the publish stage."""
        outcomes = self.run_steps(
            env, plan, issue, progress=progress, cancel_check=cancel_check, on_warning=on_warning
        )
        final_tests = self.verify(env, on_warning=on_warning)
        if cancel_check and cancel_check():
            raise SessionCancelled("Session cancelled", stage="publishing")
        if progress:
            progress("Creating pull request")
        return self.publish(env, plan, issue, final_tests, outcomes)
