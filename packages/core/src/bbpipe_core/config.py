from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Mapping, Optional

import yaml

MODES = ("tag", "agent", "review")
COMMENT_UPDATE_STRATEGIES = ("stream", "final", "both")

# Older pipelines still configure the review mode under its experimental name.
_MODE_ALIASES = {"experimental-review": "review"}

DEFAULT_CONFIG: dict = {
    "mode": "tag",
    "trigger_phrase": "@claude",
    "model": "sonnet",
    "fallback_model": "opus",
    "max_turns": 30,
    "timeout_minutes": 10,
    "allowed_tools": None,  # None = not pinned; the mode picks a tool set
    "blocked_tools": None,
    "enable_streaming_comments": True,
    "comment_update_strategy": "both",
    "auto_detect_actionable": True,
    "branch_prefix": "claude/",
    "auto_commit": False,
    "auto_pr": False,
    "enable_mcp_server": False,
    "verbose": False,
}

# Environment variable -> config key. Order matters only for readability.
ENV_VARIABLES: dict[str, str] = {
    "MODE": "mode",
    "TRIGGER_PHRASE": "trigger_phrase",
    "MODEL": "model",
    "FALLBACK_MODEL": "fallback_model",
    "MAX_TURNS": "max_turns",
    "TIMEOUT_MINUTES": "timeout_minutes",
    "ALLOWED_TOOLS": "allowed_tools",
    "BLOCKED_TOOLS": "blocked_tools",
    "ENABLE_STREAMING_COMMENTS": "enable_streaming_comments",
    "COMMENT_UPDATE_STRATEGY": "comment_update_strategy",
    "AUTO_DETECT_ACTIONABLE": "auto_detect_actionable",
    "BRANCH_PREFIX": "branch_prefix",
    "AUTO_COMMIT": "auto_commit",
    "AUTO_PR": "auto_pr",
    "ENABLE_MCP_SERVER": "enable_mcp_server",
    "VERBOSE": "verbose",
    "CLAUDE_AGENT_PROMPT": "agent_prompt",
    "CLAUDE_BIN_PATH": "claude_bin_path",
    "ANTHROPIC_API_KEY": "anthropic_api_key",
    "AWS_ACCESS_KEY_ID": "aws_access_key_id",
    "AWS_SECRET_ACCESS_KEY": "aws_secret_access_key",
    "AWS_REGION": "aws_region",
    "GCP_PROJECT_ID": "gcp_project_id",
    "GCP_REGION": "gcp_region",
    "GCP_SERVICE_ACCOUNT_KEY": "gcp_service_account_key",
    "BITBUCKET_ACCESS_TOKEN": "bitbucket_access_token",
    "BITBUCKET_USERNAME": "bitbucket_username",
    "BITBUCKET_APP_PASSWORD": "bitbucket_app_password",
    "BITBUCKET_WORKSPACE": "workspace",
    "BITBUCKET_REPO_SLUG": "repo_slug",
    "BITBUCKET_PR_ID": "pr_id",
    "BITBUCKET_COMMIT": "commit_hash",
    "BITBUCKET_BRANCH": "branch",
    "BITBUCKET_CLONE_DIR": "clone_dir",
    "BITBUCKET_PIPE_STORAGE_DIR": "pipe_storage_dir",
}

_INT_KEYS = {"max_turns", "timeout_minutes", "pr_id"}
_BOOL_KEYS = {
    "enable_streaming_comments",
    "auto_detect_actionable",
    "auto_commit",
    "auto_pr",
    "enable_mcp_server",
    "verbose",
}
_LIST_KEYS = {"allowed_tools", "blocked_tools"}
_TRUTHY = {"1", "true", "yes", "on"}


class ConfigError(ValueError):
    """Raised when the pipe configuration cannot be used to start a run."""


@dataclass(frozen=True)
class PipeConfig:
    """Validated, immutable configuration for one pipe invocation."""

    workspace: str
    repo_slug: str
    mode: str = "tag"
    trigger_phrase: str = "@claude"
    model: str = "sonnet"
    fallback_model: Optional[str] = "opus"
    max_turns: int = 30
    timeout_minutes: int = 10
    allowed_tools: Optional[tuple[str, ...]] = None
    blocked_tools: Optional[tuple[str, ...]] = None
    enable_streaming_comments: bool = True
    comment_update_strategy: str = "both"
    auto_detect_actionable: bool = True
    anthropic_api_key: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_region: Optional[str] = None
    gcp_project_id: Optional[str] = None
    gcp_region: Optional[str] = None
    gcp_service_account_key: Optional[str] = None
    bitbucket_access_token: Optional[str] = None
    bitbucket_username: Optional[str] = None
    bitbucket_app_password: Optional[str] = None
    pr_id: Optional[int] = None
    commit_hash: Optional[str] = None
    branch: Optional[str] = None
    branch_prefix: str = "claude/"
    auto_commit: bool = False
    auto_pr: bool = False
    agent_prompt: Optional[str] = None
    enable_mcp_server: bool = False
    verbose: bool = False
    clone_dir: Optional[str] = None
    pipe_storage_dir: Optional[str] = None
    claude_bin_path: Optional[str] = None

    @property
    def auth_method(self) -> str | None:
        """Return the authentication method the assistant CLI will use.

        Priority is fixed: Anthropic API key, then AWS Bedrock, then Google
        Vertex AI. Only the winning method is exported to the subprocess.
        """
        if self.anthropic_api_key:
            return "anthropic"
        if self.aws_access_key_id:
            return "bedrock"
        if self.gcp_project_id:
            return "vertex"
        return None

    @property
    def has_bitbucket_credentials(self) -> bool:
        return bool(self.bitbucket_access_token or (self.bitbucket_username and self.bitbucket_app_password))

    @property
    def full_name(self) -> str:
        return f"{self.workspace}/{self.repo_slug}"

    @classmethod
    def from_dict(cls, data: Mapping) -> PipeConfig:
        """Build a config from a merged settings dict, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        for key in _LIST_KEYS:
            items = values.get(key)
            if isinstance(items, str):
                items = [item.strip() for item in items.split(",") if item.strip()]
            if items is not None:
                values[key] = tuple(items) or None
        mode = values.get("mode")
        if isinstance(mode, str):
            values["mode"] = _MODE_ALIASES.get(mode.strip().lower(), mode.strip().lower())
        values.setdefault("workspace", "")
        values.setdefault("repo_slug", "")
        return cls(**values)


def validate_config(config: PipeConfig) -> PipeConfig:
    """Fail fast on a configuration that cannot start a run."""
    if config.auth_method is None:
        raise ConfigError(
            "No authentication configured. Provide one of: ANTHROPIC_API_KEY, "
            "AWS credentials (AWS_ACCESS_KEY_ID) or GCP credentials (GCP_PROJECT_ID)."
        )
    if not config.workspace or not config.repo_slug:
        raise ConfigError(
            "Missing Bitbucket context. Ensure BITBUCKET_WORKSPACE and BITBUCKET_REPO_SLUG are set."
        )
    if config.mode not in MODES:
        raise ConfigError(f"Unknown mode: {config.mode!r}. Choose one of: {', '.join(MODES)}.")
    if config.comment_update_strategy not in COMMENT_UPDATE_STRATEGIES:
        raise ConfigError(
            f"Unknown comment update strategy: {config.comment_update_strategy!r}. "
            f"Choose one of: {', '.join(COMMENT_UPDATE_STRATEGIES)}."
        )
    if not isinstance(config.max_turns, int) or config.max_turns <= 0:
        raise ConfigError(f"MAX_TURNS must be a positive integer, got {config.max_turns}.")
    if not isinstance(config.timeout_minutes, (int, float)) or config.timeout_minutes <= 0:
        raise ConfigError(f"TIMEOUT_MINUTES must be positive, got {config.timeout_minutes}.")
    return config


def _parse_env_value(key: str, raw: str):
    value = raw.strip()
    if key in _BOOL_KEYS:
        return value.lower() in _TRUTHY
    if key in _INT_KEYS:
        try:
            return int(value)
        except ValueError:
            raise ConfigError(f"Expected an integer for {key}, got {raw!r}.")
    if key in _LIST_KEYS:
        return [item.strip() for item in value.split(",") if item.strip()] or None
    return value


def read_env(env: Mapping[str, str]) -> dict:
    """Extract config values from environment variables; blank values are ignored."""
    values: dict = {}
    for env_name, key in ENV_VARIABLES.items():
        raw = env.get(env_name)
        if raw is None or not raw.strip():
            continue
        values[key] = _parse_env_value(key, raw)
    return values


def load_config(
    config_path: str = ".bbpipe.yml",
    env: Optional[Mapping[str, str]] = None,
    cli_overrides: Optional[dict] = None,
) -> PipeConfig:
    """
    Load configuration by merging (in order of precedence):
      1. Built-in defaults
      2. .bbpipe.yml in the current directory
      3. Environment variables (pipe variables and BITBUCKET_* platform variables)
      4. CLI argument overrides
    """
    config = dict(DEFAULT_CONFIG)

    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            file_config = yaml.safe_load(f) or {}
        if not isinstance(file_config, dict):
            raise ConfigError(f"{config_path} must contain a mapping of settings.")
        config.update(file_config)

    config.update(read_env(os.environ if env is None else env))

    if cli_overrides:
        for key, value in cli_overrides.items():
            if value is not None:
                config[key] = value

    try:
        pipe_config = PipeConfig.from_dict(config)
    except TypeError as e:
        raise ConfigError(f"Invalid configuration: {e}")
    return validate_config(pipe_config)
