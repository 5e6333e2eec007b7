"""Source-hosting collaborator: the GitHub REST API over httpx."""

from __future__ import annotations

import base64
from typing import Any, Optional, Protocol
from urllib.parse import urlparse

import httpx
from loguru import logger

from .errors import ContextError, SourceHostError

DEFAULT_API_URL = "https://api.github.com"


class SourceHost(Protocol):
    def get_issue(self, owner: str, repo: str, number: int) -> dict[str, Any]:
        ...

    def get_repository(self, owner: str, repo: str) -> dict[str, Any]:
        ...

    def list_comments(self, owner: str, repo: str, number: int) -> list[dict[str, Any]]:
        ...

    def list_directory(self, owner: str, repo: str, path: str = "") -> list[dict[str, Any]]:
        ...

    def get_file_content(self, owner: str, repo: str, path: str) -> Optional[str]:
        ...

    def create_pull_request(
        self,
        owner: str,
        repo: str,
        *,
        title: str,
        head: str,
        base: str,
        body: str,
    ) -> str:
        ...

    def create_issue_comment(self, owner: str, repo: str, number: int, body: str) -> str:
        ...


def parse_issue_url(issue_url: str) -> tuple[str, str, int]:
    """Extract `(owner, repo, issue_number)` from an issue URL.

    Expected shape: ``https://github.com/<owner>/<repo>/issues/<number>``.

    Raises:
        ContextError: If the URL does not point at an issue.
    """
    try:
        parsed = urlparse(str(issue_url or "").strip())
        parts = parsed.path.split("/")
        if not parsed.scheme or len(parts) < 5 or parts[3] != "issues":
            raise ValueError("Invalid GitHub issue URL format")
        owner, repo, number = parts[1], parts[2], int(parts[4])
        if not owner or not repo or number <= 0:
            raise ValueError("Invalid GitHub issue URL format")
        return owner, repo, number
    except ValueError as exc:
        logger.error("Failed to parse GitHub issue URL {}: {}", issue_url, exc)
        raise ContextError(f"Invalid GitHub issue URL: {issue_url}") from exc


class GitHubClient:
    """Minimal GitHub REST v3 client covering what the resolver consumes."""

    def __init__(
        self,
        token: str,
        *,
        base_url: str = DEFAULT_API_URL,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "issue-resolver",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "GitHubClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            resp = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise SourceHostError(f"{method} {url} failed: {exc}") from exc
        if resp.is_error:
            message = ""
            try:
                message = str(resp.json().get("message") or "")
            except ValueError:
                message = resp.text[:200]
            raise SourceHostError(
                f"{method} {url} returned {resp.status_code}: {message}".rstrip(": "),
                status_code=resp.status_code,
            )
        if not resp.content:
            return None
        return resp.json()

    def get_issue(self, owner: str, repo: str, number: int) -> dict[str, Any]:
        return self._request("GET", f"/repos/{owner}/{repo}/issues/{number}")

    def get_repository(self, owner: str, repo: str) -> dict[str, Any]:
        return self._request("GET", f"/repos/{owner}/{repo}")

    def list_comments(self, owner: str, repo: str, number: int) -> list[dict[str, Any]]:
        data = self._request("GET", f"/repos/{owner}/{repo}/issues/{number}/comments")
        return list(data or [])

    def list_directory(self, owner: str, repo: str, path: str = "") -> list[dict[str, Any]]:
        data = self._request("GET", f"/repos/{owner}/{repo}/contents/{path}".rstrip("/"))
        if isinstance(data, dict):
            return [data]
        return list(data or [])

    def get_file_content(self, owner: str, repo: str, path: str) -> Optional[str]:
        data = self._request("GET", f"/repos/{owner}/{repo}/contents/{path}")
        if not isinstance(data, dict) or not isinstance(data.get("content"), str):
            return None
        if data.get("encoding", "base64") != "base64":
            return data["content"]
        return base64.b64decode(data["content"]).decode("utf-8", errors="replace")

    def create_pull_request(
        self,
        owner: str,
        repo: str,
        *,
        title: str,
        head: str,
        base: str,
        body: str,
    ) -> str:
        logger.info("Creating pull request: {}/{} head={} base={}", owner, repo, head, base)
        data = self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            json={"title": title, "head": head, "base": base, "body": body},
        )
        return str(data["html_url"])

    def create_issue_comment(self, owner: str, repo: str, number: int, body: str) -> str:
        logger.info("Adding comment to issue {}/{}#{}", owner, repo, number)
        data = self._request(
            "POST",
            f"/repos/{owner}/{repo}/issues/{number}/comments",
            json={"body": body},
        )
        return str(data["html_url"])
