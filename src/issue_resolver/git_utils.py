"""Provide the local git helpers used to prepare and publish a workspace."""

from __future__ import annotations

import re
import subprocess
from pathlib import Path
from typing import Optional, Protocol

from loguru import logger

from .errors import GitError

_CREDENTIAL_RE = re.compile(r"(https?://)[^@/\s]+@")


def _redact(text: str) -> str:
    return _CREDENTIAL_RE.sub(r"\1***@", text or "")


def authenticated_clone_url(owner: str, repo: str, token: str, host: str = "github.com") -> str:
    if not token:
        return f"https://{host}/{owner}/{repo}.git"
    return f"https://x-access-token:{token}@{host}/{owner}/{repo}.git"


def _run_git(args: list[str], cwd: Optional[Path] = None) -> subprocess.CompletedProcess:
    command = ["git", *args]
    try:
        result = subprocess.run(
            command,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError as exc:
        raise GitError("git executable not found") from exc
    if result.returncode != 0:
        detail = _redact((result.stderr or result.stdout or "").strip())[:400]
        raise GitError(f"git {args[0]} failed ({result.returncode}): {detail}")
    return result


def _git_current_branch(project_dir: Path) -> Optional[str]:
    result = subprocess.run(
        ["git", "rev-parse", "--abbrev-ref", "HEAD"],
        cwd=project_dir,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def _git_head_sha(project_dir: Path) -> Optional[str]:
    result = subprocess.run(
        ["git", "rev-parse", "HEAD"],
        cwd=project_dir,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def _git_has_changes(project_dir: Path) -> bool:
    result = subprocess.run(
        ["git", "status", "--porcelain"],
        cwd=project_dir,
        capture_output=True,
        text=True,
        check=False,
    )
    return result.returncode == 0 and bool(result.stdout.strip())


class GitOperations(Protocol):
    def clone(self, url: str, dest: Path, *, branch: Optional[str] = None) -> None:
        ...

    def checkout_new_branch(self, project_dir: Path, branch: str) -> None:
        ...

    def configure_identity(self, project_dir: Path, name: str, email: str) -> None:
        ...

    def commit_all(self, project_dir: Path, message: str) -> Optional[str]:
        ...

    def push(self, project_dir: Path, branch: str) -> None:
        ...


class GitCLI:
    """Git operations backed by the ``git`` executable."""

    def clone(self, url: str, dest: Path, *, branch: Optional[str] = None) -> None:
        args = ["clone"]
        if branch:
            args.extend(["--branch", branch])
        args.extend([url, str(dest)])
        logger.info("Cloning repository {} into {}", _redact(url), dest)
        _run_git(args)

    def checkout_new_branch(self, project_dir: Path, branch: str) -> None:
        if _git_current_branch(project_dir) == branch:
            return
        _run_git(["checkout", "-b", branch], cwd=project_dir)
        logger.info("Created branch {}", branch)

    def configure_identity(self, project_dir: Path, name: str, email: str) -> None:
        _run_git(["config", "user.name", name], cwd=project_dir)
        _run_git(["config", "user.email", email], cwd=project_dir)

    def commit_all(self, project_dir: Path, message: str) -> Optional[str]:
        """Stage everything and commit; returns the new HEAD sha, or None if clean."""
        _run_git(["add", "-A", "--", "."], cwd=project_dir)
        if not _git_has_changes(project_dir):
            logger.warning("No changes to commit in {}", project_dir)
            return None
        _run_git(["commit", "-m", message], cwd=project_dir)
        return _git_head_sha(project_dir)

    def push(self, project_dir: Path, branch: str) -> None:
        if not branch:
            raise GitError("Branch is required to push")
        logger.info("Pushing branch {}", branch)
        _run_git(["push", "-u", "origin", branch], cwd=project_dir)
