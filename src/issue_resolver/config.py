"""Load resolver configuration from defaults, an optional YAML file and the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping, Optional

from loguru import logger

from .io_utils import _load_data_with_error

CONFIG_ENV_VAR = "ISSUE_RESOLVER_CONFIG"

# Environment variable -> config field.
ENV_OVERRIDES: dict[str, str] = {
    "GITHUB_TOKEN": "github_token",
    "DEVELOPMENT_PATH": "development_path",
    "PORT": "port",
    "LOG_LEVEL": "log_level",
    "GITHUB_API_URL": "github_api_url",
}

_INT_FIELDS = {
    "port",
    "max_invalid_responses",
    "analysis_max_depth",
    "command_timeout_seconds",
    "max_finished_sessions",
}


@dataclass
class ResolverConfig:
    github_token: str = ""
    development_path: str = "./workspace"
    github_api_url: str = "https://api.github.com"
    host: str = "127.0.0.1"
    port: int = 3000
    log_level: str = "INFO"
    max_invalid_responses: int = 3
    approval_timeout_seconds: Optional[float] = None
    analysis_max_depth: int = 6
    command_timeout_seconds: int = 1800
    mutation_tool: str = "codemcp"
    git_user_name: str = "GitHub Issue Resolver"
    git_user_email: str = "github-issue-resolver@example.com"
    archive_path: Optional[str] = None
    max_finished_sessions: int = 100

    @property
    def workspace_root(self) -> Path:
        return Path(self.development_path).expanduser()

    def to_dict(self, *, include_secrets: bool = False) -> dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        if not include_secrets:
            data["github_token"] = "***" if self.github_token else ""
        return data


def _coerce(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in _INT_FIELDS:
        return int(value)
    if name == "approval_timeout_seconds":
        return float(value)
    return str(value)


def _apply(config: ResolverConfig, values: Mapping[str, Any], source: str) -> Optional[str]:
    known = {f.name for f in fields(config)}
    for key, value in values.items():
        if key not in known:
            continue
        try:
            setattr(config, key, _coerce(key, value))
        except (TypeError, ValueError) as exc:
            return f"{source}: invalid value for {key}: {exc}"
    return None


def load_config(
    config_path: Optional[Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> tuple[ResolverConfig, str | None]:
    """Build the resolver configuration.

    Values are layered: dataclass defaults, then the YAML file (explicit path
    or ``$ISSUE_RESOLVER_CONFIG``), then environment variables, then explicit
    overrides (CLI flags). Unknown keys are ignored.

    Args:
        config_path: Optional YAML config file.
        environ: Environment mapping (defaults to ``os.environ``).
        overrides: Values that win over every other source; ``None`` values are skipped.

    Returns:
        A tuple of `(config, error_message)`. On a config file error the
        defaults plus environment are still returned alongside the message.
    """
    env = os.environ if environ is None else environ
    config = ResolverConfig()
    error: str | None = None

    path = config_path or (Path(env[CONFIG_ENV_VAR]) if env.get(CONFIG_ENV_VAR) else None)
    if path is not None:
        path = Path(path).expanduser()
        if not path.exists():
            error = f"{path.name}: config file not found"
        else:
            data, error = _load_data_with_error(path, {})
            if not error:
                error = _apply(config, data, path.name)

    env_values = {field_name: env[var] for var, field_name in ENV_OVERRIDES.items() if env.get(var)}
    env_error = _apply(config, env_values, "environment")
    error = error or env_error

    if overrides:
        override_error = _apply(config, {k: v for k, v in overrides.items() if v is not None}, "overrides")
        error = error or override_error

    if not config.github_token:
        logger.warning("GITHUB_TOKEN is not set; GitHub API calls will be unauthenticated")
    return config, error
