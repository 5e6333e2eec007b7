"""Provision and tear down the isolated development environment of a session."""

from __future__ import annotations

import shutil
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from loguru import logger

from .config import ResolverConfig
from .docker_runtime import ContainerRuntime
from .errors import ContainerRuntimeError, GitError, ProvisioningError
from .git_utils import GitOperations, authenticated_clone_url
from .language import Language, get_container_image, get_install_command
from .models import DevelopmentEnvironment, IssueContext
from .utils import slugify

WarningSink = Callable[[str], None]


def workspace_dir_name(issue: IssueContext) -> str:
    return f"{issue.owner}-{issue.repo}-issue-{issue.issue_number}"


def branch_name_for(issue: IssueContext) -> str:
    return f"fix/issue-{issue.issue_number}-{slugify(issue.title)}"


def container_name_for(issue: IssueContext) -> str:
    return "issue-resolver-" + slugify(workspace_dir_name(issue), max_length=100)


def _prepare_workspace(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True, exist_ok=True)


class EnvironmentManager:
    """Own the clone, branch and container of each session's workspace.

    `teardown` is idempotent: a released environment is marked as such, and
    only containers whose release is still in progress are tracked here.
    """

    def __init__(self, runtime: ContainerRuntime, git: GitOperations, config: Optional[ResolverConfig] = None):
        self.runtime = runtime
        self.git = git
        self.config = config or ResolverConfig()
        self._lock = threading.Lock()
        self._releasing: set[str] = set()

    def provision(
        self,
        issue: IssueContext,
        workspace_root: Path,
        credentials: str,
        *,
        on_warning: Optional[WarningSink] = None,
    ) -> DevelopmentEnvironment:
        """Create the workspace, clone, branch and start the container.

        Args:
            issue: Issue snapshot the environment is built for.
            workspace_root: Parent directory for per-issue workspaces.
            credentials: Source-host token used for the clone and passed to the container.
            on_warning: Receives recoverable problems (dependency install, tool init).

        Returns:
            The provisioned environment.

        Raises:
            ProvisioningError: Clone, branch checkout or container start failed.
                `exc.environment` holds whatever was created so far.
        """
        warn = on_warning or (lambda _msg: None)
        workspace = (Path(workspace_root) / workspace_dir_name(issue)).resolve()
        env = DevelopmentEnvironment(
            workspace_path=workspace,
            branch_name=branch_name_for(issue),
            build_system=issue.codebase.build_system,
            base_branch=issue.repo_info.default_branch or "main",
        )
        logger.info("Provisioning environment for {} at {}", issue.issue_key, workspace)

        try:
            _prepare_workspace(workspace)
        except OSError as exc:
            raise ProvisioningError(f"Failed to prepare workspace {workspace}: {exc}", environment=env) from exc

        clone_url = authenticated_clone_url(issue.owner, issue.repo, credentials)
        try:
            self.git.clone(clone_url, workspace, branch=env.base_branch)
        except GitError as exc:
            raise ProvisioningError(f"Failed to clone repository: {exc}", environment=env) from exc

        try:
            self.git.checkout_new_branch(workspace, env.branch_name)
        except GitError as exc:
            raise ProvisioningError(f"Failed to create branch {env.branch_name}: {exc}", environment=env) from exc

        image = get_container_image(Language.parse(issue.language))
        try:
            env.container = self.runtime.create_container(
                image=image,
                workdir=workspace,
                name=container_name_for(issue),
                env={"GITHUB_TOKEN": credentials},
            )
        except ContainerRuntimeError as exc:
            raise ProvisioningError(f"Failed to start container ({image}): {exc}", environment=env) from exc

        env.dependencies_installed = self._install_dependencies(env, warn)
        env.tool_initialized = self._init_mutation_tool(env, warn)
        logger.info("Environment ready: branch={} container={}", env.branch_name, env.container.name)
        return env

    def _install_dependencies(self, env: DevelopmentEnvironment, warn: WarningSink) -> bool:
        command = get_install_command(env.build_system)
        if not command:
            logger.info("No install command for build system {}; skipping", env.build_system.value)
            return False
        if env.container is None:
            return False
        try:
            result = self.runtime.exec(env.container, command, timeout_seconds=self.config.command_timeout_seconds)
        except ContainerRuntimeError as exc:
            message = f"Dependency installation failed: {exc}"
            logger.warning(message)
            warn(message)
            return False
        if result.exit_code != 0:
            message = f"Dependency installation failed with exit code {result.exit_code}, continuing"
            logger.warning("{}\n{}", message, result.stderr[-2000:])
            warn(message)
            return False
        return True

    def _init_mutation_tool(self, env: DevelopmentEnvironment, warn: WarningSink) -> bool:
        if env.container is None:
            return False
        command = [self.config.mutation_tool, "InitProject", str(env.workspace_path)]
        try:
            result = self.runtime.exec(env.container, command, timeout_seconds=self.config.command_timeout_seconds)
        except ContainerRuntimeError as exc:
            message = f"{self.config.mutation_tool} initialization failed: {exc}"
            logger.warning(message)
            warn(message)
            return False
        if result.exit_code != 0:
            message = f"{self.config.mutation_tool} initialization failed with exit code {result.exit_code}"
            logger.warning(message)
            warn(message)
            return False
        return True

    def teardown(self, env: Optional[DevelopmentEnvironment]) -> None:
        """Stop and remove the environment's container. Never raises."""
        if env is None or env.container is None:
            return
        container = env.container
        with self._lock:
            if env.released or container.id in self._releasing:
                return
            self._releasing.add(container.id)

        logger.info("Tearing down environment {}", container.name)
        try:
            try:
                if self.runtime.is_running(container):
                    self.runtime.stop(container)
            except ContainerRuntimeError as exc:
                logger.warning("Failed to stop container {}: {}", container.name, exc)
            try:
                self.runtime.remove(container)
            except ContainerRuntimeError as exc:
                logger.warning("Failed to remove container {}: {}", container.name, exc)
        finally:
            with self._lock:
                env.released = True
                self._releasing.discard(container.id)

    @contextmanager
    def scoped(
        self,
        issue: IssueContext,
        workspace_root: Path,
        credentials: str,
        *,
        on_warning: Optional[WarningSink] = None,
    ) -> Iterator[DevelopmentEnvironment]:
        """Provision an environment and release it when the block exits."""
        try:
            env = self.provision(issue, workspace_root, credentials, on_warning=on_warning)
        except ProvisioningError as exc:
            self.teardown(exc.environment)
            raise
        try:
            yield env
        finally:
            self.teardown(env)
