"""Pydantic models for API requests and responses."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class StartSessionRequest(BaseModel):
    """Request to start resolving an issue."""

    issue_url: str
    github_token: Optional[str] = None
    development_path: Optional[str] = None
    approval_timeout_seconds: Optional[float] = Field(default=None, gt=0)


class RespondRequest(BaseModel):
    """Answer to a session's pending input request."""

    request_id: str
    value: str


class InputRequestInfo(BaseModel):
    id: str
    type: str
    message: str
    options: list[str] = Field(default_factory=list)
    created_at: Optional[str] = None
    deadline: Optional[str] = None


class SessionInfo(BaseModel):
    """Session view returned by the API."""

    id: str
    issue_url: str
    issue_key: str
    status: str
    created_at: str
    updated_at: str
    issue: Optional[dict[str, Any]] = None
    plan: Optional[dict[str, Any]] = None
    pending_request: Optional[InputRequestInfo] = None
    environment: Optional[dict[str, Any]] = None
    teardown_count: int = 0
    warnings: list[str] = Field(default_factory=list)
    result: Optional[dict[str, Any]] = None
    publish: Optional[dict[str, Any]] = None
    update_count: int = 0


class StatusUpdateInfo(BaseModel):
    seq: int
    session_id: str
    kind: str
    message: str = ""
    request: Optional[InputRequestInfo] = None
    result: Optional[dict[str, Any]] = None
    timestamp: str


class UpdatesResponse(BaseModel):
    session_id: str
    status: str
    updates: list[StatusUpdateInfo] = Field(default_factory=list)
