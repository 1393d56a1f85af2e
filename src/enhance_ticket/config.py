"""Configuration loading from YAML files and environment variables.

Configuration lives in one or more YAML (or JSON) files. Files are merged in
order, later files winning key by key, so a shared base file can be combined
with a local override::

    ENHANCE_TICKET_CONFIG=/etc/enhance-ticket/base.yaml,./config.yaml

Without ``ENHANCE_TICKET_CONFIG`` the loader merges
``~/.enhance-ticket/config.yaml`` and ``./config.yaml`` (whichever exist).

String values may reference environment variables as ``${NAME}``; a ``.env``
file is loaded first. A handful of runtime settings can also be overridden
directly from the environment (``ENHANCE_TICKET_LOG_LEVEL``,
``ENHANCE_TICKET_LOG_JSON``, ``ENHANCE_TICKET_DIAGNOSTIC_TAGS``,
``ENHANCE_TICKET_PORT``).

Validation collects every problem before failing, so one run of
``enhance-ticket validate`` reports the whole list.
"""

from __future__ import annotations

import json
import os
import re
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, TypeVar

import yaml
from dotenv import load_dotenv

from enhance_ticket.deduplication import DEFAULT_DEDUP_WINDOW_SECONDS, DEFAULT_SWEEP_THRESHOLD
from enhance_ticket.logging import DIAGNOSTIC_TAGS_ENV_VAR, get_logger
from enhance_ticket.triggers import TriggerConfigError, TriggerRule, parse_trigger_rules
from enhance_ticket.types import AgentName, PermissionMode

logger = get_logger(__name__)

CONFIG_ENV_VAR = "ENHANCE_TICKET_CONFIG"
SUPPORTED_CONFIG_VERSION = "1.0"

VALID_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

MIN_PORT = 1
MAX_PORT = 65535

DEFAULT_LINEAR_API_URL = "https://api.linear.app/graphql"
DEFAULT_RUNTIME_URL = "http://127.0.0.1:2468"

_ENV_REFERENCE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when configuration cannot be loaded or is invalid.

    Attributes:
        errors: Every problem found.
    """

    def __init__(self, errors: list[str] | str) -> None:
        self.errors = [errors] if isinstance(errors, str) else list(errors)
        super().__init__("Config validation failed:\n" + "\n".join(f"- {e}" for e in self.errors))


@dataclass(frozen=True)
class RateLimitConfig:
    """Inbound request limit for the webhook routes, per client."""

    enabled: bool = True
    window_seconds: float = 60.0
    max_requests: int = 60


@dataclass(frozen=True)
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 4747
    log_level: str = "INFO"
    log_json: bool = False
    diagnostic_tags: str = ""
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)


@dataclass(frozen=True)
class WorkspaceConfig:
    """A local repository checkout that agent runs work in.

    Attributes:
        name: Unique workspace name.
        team_id: Tracker team whose issues map to this workspace.
        local_path: Path to the git checkout.
        project_ids: Tracker projects that map here. Empty means "any
            project of the team not claimed by another workspace".
    """

    name: str
    team_id: str
    local_path: Path
    project_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class LinearConfig:
    api_key: str
    webhook_secret: str
    workspaces: tuple[WorkspaceConfig, ...]
    triggers: tuple[TriggerRule, ...]
    api_url: str = DEFAULT_LINEAR_API_URL


@dataclass(frozen=True)
class SandboxSettings:
    """Agent settings for a run.

    Attributes:
        agent: Agent to run.
        permission_mode: Permission mode requested at session creation.
        agent_mode: Runtime-specific agent mode, passed through unchanged.
        timeout_seconds: Deadline for the whole run.
        progress_interval_seconds: Minimum spacing of throttled progress updates.
        reasoning: Reasoning hint appended to prompts (e.g. "high").
        prompt_prefix: Text prepended to every prompt.
        prompt_suffix: Text appended to every prompt.
    """

    agent: AgentName = AgentName.CLAUDE
    permission_mode: PermissionMode = PermissionMode.DEFAULT
    agent_mode: str | None = None
    timeout_seconds: float = 1800.0
    progress_interval_seconds: float = 60.0
    reasoning: str | None = None
    prompt_prefix: str | None = None
    prompt_suffix: str | None = None


@dataclass(frozen=True)
class SandboxOverride:
    """Per-workspace overrides; ``None`` fields inherit the default."""

    workspace: str
    agent: AgentName | None = None
    permission_mode: PermissionMode | None = None
    agent_mode: str | None = None
    timeout_seconds: float | None = None
    progress_interval_seconds: float | None = None
    reasoning: str | None = None
    prompt_prefix: str | None = None
    prompt_suffix: str | None = None


@dataclass(frozen=True)
class ConnectionConfig:
    base_url: str = DEFAULT_RUNTIME_URL
    token: str | None = None
    request_timeout_seconds: float = 30.0


@dataclass(frozen=True)
class SandboxConfig:
    default: SandboxSettings = field(default_factory=SandboxSettings)
    overrides: tuple[SandboxOverride, ...] = ()
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)

    def settings_for(self, workspace: str, agent: AgentName | None = None) -> SandboxSettings:
        """Effective settings for a workspace.

        Args:
            workspace: Workspace name.
            agent: Agent forced by the trigger rule, overriding both the
                default and the workspace override.

        Returns:
            Default settings with the workspace's override applied.
        """
        settings = self.default
        for override in self.overrides:
            if override.workspace != workspace:
                continue
            changes = {
                name: getattr(override, name)
                for name in (
                    "agent",
                    "permission_mode",
                    "agent_mode",
                    "timeout_seconds",
                    "progress_interval_seconds",
                    "reasoning",
                    "prompt_prefix",
                    "prompt_suffix",
                )
                if getattr(override, name) is not None
            }
            settings = replace(settings, **changes)
            break
        if agent is not None:
            settings = replace(settings, agent=agent)
        return settings


@dataclass(frozen=True)
class ProgressConfig:
    include_tool_calls: bool = True
    include_file_changes: bool = True


@dataclass(frozen=True)
class WorktreeConfig:
    name_template: str = "{WORKSPACE_PATH}-worktrees/{ISSUE_ID}"
    branch_template: str = "fix/{ISSUE_ID}"
    post_create_script: str | None = None


@dataclass(frozen=True)
class BotConfig:
    mention_name: str = "et"


@dataclass(frozen=True)
class ReplyConfig:
    """Limits for mention replies.

    Attributes:
        strip_mention: Remove the leading mention from the question.
        max_answer_chars: Longest answer posted back to the issue.
        max_context_comments: Recent comments included in the prompt.
    """

    strip_mention: bool = True
    max_answer_chars: int = 50_000
    max_context_comments: int = 10


@dataclass(frozen=True)
class ReviewConfig:
    max_diff_chars: int = 120_000
    max_context_comments: int = 10
    max_comment_chars: int = 50_000


@dataclass(frozen=True)
class GitHubRepoConfig:
    workspace: str
    repo: str
    remote: str = "origin"
    base_branch: str | None = None
    draft: bool = True
    title_template: str = "{ISSUE_IDENTIFIER}: {ISSUE_TITLE}"


@dataclass(frozen=True)
class GitHubCleanupConfig:
    """What to clean up when a pull request from an issue branch is merged."""

    enabled: bool = False
    remove_worktree_on_merge: bool = True
    delete_branch_on_merge: bool = True


@dataclass(frozen=True)
class GitHubConfig:
    enabled: bool = False
    repos: tuple[GitHubRepoConfig, ...] = ()
    webhook_secret: str | None = None
    cleanup: GitHubCleanupConfig = field(default_factory=GitHubCleanupConfig)

    def repo_for(self, workspace: str) -> GitHubRepoConfig | None:
        for repo in self.repos:
            if repo.workspace == workspace:
                return repo
        return None

    def repo_by_name(self, full_name: str) -> GitHubRepoConfig | None:
        """Find a repo by its ``owner/name``, ignoring case."""
        wanted = full_name.lower()
        for repo in self.repos:
            if repo.repo.lower() == wanted:
                return repo
        return None


@dataclass(frozen=True)
class DedupConfig:
    window_seconds: float = DEFAULT_DEDUP_WINDOW_SECONDS
    sweep_threshold: int = DEFAULT_SWEEP_THRESHOLD


@dataclass(frozen=True)
class AdvancedConfig:
    dead_letter_path: Path = Path("logs/dead-letter.jsonl")
    enable_health_check: bool = True
    enable_metrics: bool = True


@dataclass(frozen=True)
class Config:
    """Application configuration.

    This dataclass is frozen (immutable) to prevent accidental modification
    after creation.
    """

    linear: LinearConfig
    server: ServerConfig = field(default_factory=ServerConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    progress: ProgressConfig = field(default_factory=ProgressConfig)
    worktree: WorktreeConfig = field(default_factory=WorktreeConfig)
    bot: BotConfig = field(default_factory=BotConfig)
    reply: ReplyConfig = field(default_factory=ReplyConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    github: GitHubConfig = field(default_factory=GitHubConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    advanced: AdvancedConfig = field(default_factory=AdvancedConfig)
    version: str = SUPPORTED_CONFIG_VERSION

    def workspace(self, name: str) -> WorkspaceConfig | None:
        for workspace in self.linear.workspaces:
            if workspace.name == name:
                return workspace
        return None


# ---------------------------------------------------------------------------
# File handling
# ---------------------------------------------------------------------------


def default_config_paths() -> list[Path]:
    """Config file paths in merge order.

    ``ENHANCE_TICKET_CONFIG`` (comma separated) wins when set; otherwise the
    user-level and working-directory files that exist.
    """
    env_value = os.getenv(CONFIG_ENV_VAR, "").strip()
    if env_value:
        return [Path(p.strip()).expanduser() for p in env_value.split(",") if p.strip()]
    candidates = [Path.home() / ".enhance-ticket" / "config.yaml", Path("config.yaml")]
    return [p for p in candidates if p.exists()]


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}") from None
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e

    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigError(f"Invalid syntax in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Top level of {path} must be a mapping")
    return data


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Merge two mappings recursively; ``override`` wins, lists are replaced."""
    merged: dict[str, Any] = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def interpolate_env(value: Any, missing: set[str]) -> Any:
    """Replace ``${NAME}`` references in every string of a nested structure.

    Args:
        value: Parsed configuration value.
        missing: Receives names of variables that are not set.

    Returns:
        The value with references substituted.
    """
    if isinstance(value, str):

        def _substitute(match: re.Match[str]) -> str:
            name = match.group(1)
            env_value = os.environ.get(name)
            if env_value is None:
                missing.add(name)
                return ""
            return env_value

        return _ENV_REFERENCE.sub(_substitute, value)
    if isinstance(value, Mapping):
        return {k: interpolate_env(v, missing) for k, v in value.items()}
    if isinstance(value, list):
        return [interpolate_env(v, missing) for v in value]
    return value


# ---------------------------------------------------------------------------
# Field helpers
#
# Each helper reads one field, appends a message to ``errors`` when the value
# is unusable, and returns the default in that case so parsing can continue.
# ---------------------------------------------------------------------------


def _section(data: Mapping[str, Any], key: str, errors: list[str]) -> Mapping[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        errors.append(f"'{key}' must be a mapping")
        return {}
    return value


def _list(data: Mapping[str, Any], key: str, where: str, errors: list[str]) -> list[Any]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        errors.append(f"{where}.{key} must be a list")
        return []
    return value


def _str(
    data: Mapping[str, Any],
    key: str,
    where: str,
    errors: list[str],
    default: str | None = None,
    required: bool = False,
) -> str | None:
    value = data.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            errors.append(f"{where}.{key} is required")
        return default
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if not isinstance(value, str):
        errors.append(f"{where}.{key} must be a string")
        return default
    return value.strip()


def _bool(data: Mapping[str, Any], key: str, where: str, errors: list[str], default: bool) -> bool:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return _parse_bool(value)
    errors.append(f"{where}.{key} must be a boolean")
    return default


def _positive_number(
    data: Mapping[str, Any], key: str, where: str, errors: list[str], default: float | None
) -> float | None:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            errors.append(f"{where}.{key} must be a number, got '{value}'")
            return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        errors.append(f"{where}.{key} must be a number")
        return default
    if value <= 0:
        errors.append(f"{where}.{key} must be positive, got {value}")
        return default
    return float(value)


def _positive_int(
    data: Mapping[str, Any], key: str, where: str, errors: list[str], default: int
) -> int:
    value = _positive_number(data, key, where, errors, default)
    return int(value) if value is not None else default


E = TypeVar("E", AgentName, PermissionMode)


def _enum(
    enum_cls: type[E],
    data: Mapping[str, Any],
    key: str,
    where: str,
    errors: list[str],
) -> E | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not enum_cls.is_valid(value):
        valid = ", ".join(sorted(enum_cls.values()))
        errors.append(f"{where}.{key} must be one of: {valid} (got '{value}')")
        return None
    return enum_cls(value)


def _parse_bool(value: str) -> bool:
    """Parse a boolean from common string spellings."""
    return value.strip().lower() in ("true", "1", "yes", "on")


def _parse_port(value: Any, where: str, errors: list[str], default: int) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        errors.append(f"{where} must be an integer port, got '{value}'")
        return default
    if not MIN_PORT <= port <= MAX_PORT:
        errors.append(f"{where} must be between {MIN_PORT} and {MAX_PORT}, got {port}")
        return default
    return port


def _validate_log_level(value: str, errors: list[str], where: str) -> str:
    upper = value.upper()
    if upper not in VALID_LOG_LEVELS:
        errors.append(f"{where} must be one of: {', '.join(sorted(VALID_LOG_LEVELS))}")
        return "INFO"
    return upper


# ---------------------------------------------------------------------------
# Section parsers
# ---------------------------------------------------------------------------


def _parse_server(data: Mapping[str, Any], errors: list[str]) -> ServerConfig:
    where = "server"
    defaults = ServerConfig()
    port = _parse_port(data.get("port", defaults.port), f"{where}.port", errors, defaults.port)
    log_level = _validate_log_level(
        _str(data, "log_level", where, errors, defaults.log_level) or defaults.log_level,
        errors,
        f"{where}.log_level",
    )
    raw_limit = _section(data, "rate_limit", errors)
    limit_where = f"{where}.rate_limit"
    limit_defaults = RateLimitConfig()
    rate_limit = RateLimitConfig(
        enabled=_bool(raw_limit, "enabled", limit_where, errors, limit_defaults.enabled),
        window_seconds=_positive_number(
            raw_limit, "window_seconds", limit_where, errors, limit_defaults.window_seconds
        )
        or limit_defaults.window_seconds,
        max_requests=_positive_int(
            raw_limit, "max_requests", limit_where, errors, limit_defaults.max_requests
        ),
    )
    return ServerConfig(
        host=_str(data, "host", where, errors, defaults.host) or defaults.host,
        port=port,
        log_level=log_level,
        log_json=_bool(data, "log_json", where, errors, defaults.log_json),
        diagnostic_tags=_str(data, "diagnostic_tags", where, errors, "") or "",
        rate_limit=rate_limit,
    )


def _parse_workspaces(data: Mapping[str, Any], errors: list[str]) -> tuple[WorkspaceConfig, ...]:
    raw_workspaces = _list(data, "workspaces", "linear", errors)
    if not raw_workspaces:
        errors.append("linear.workspaces must list at least one workspace")
        return ()

    workspaces: list[WorkspaceConfig] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_workspaces):
        where = f"linear.workspaces[{index}]"
        if not isinstance(raw, Mapping):
            errors.append(f"{where} must be a mapping")
            continue
        name = _str(raw, "name", where, errors, required=True)
        team_id = _str(raw, "team_id", where, errors, required=True)
        local_path = _str(raw, "local_path", where, errors, required=True)
        project_ids = [str(p) for p in _list(raw, "project_ids", where, errors)]
        if name is None or team_id is None or local_path is None:
            continue
        if name in seen:
            errors.append(f"{where}: duplicate workspace name '{name}'")
            continue
        seen.add(name)
        workspaces.append(
            WorkspaceConfig(
                name=name,
                team_id=team_id,
                local_path=Path(local_path).expanduser(),
                project_ids=tuple(project_ids),
            )
        )
    return tuple(workspaces)


def _parse_linear(data: Mapping[str, Any], errors: list[str]) -> LinearConfig:
    where = "linear"
    api_key = _str(data, "api_key", where, errors, required=True) or ""
    webhook_secret = _str(data, "webhook_secret", where, errors, required=True) or ""
    workspaces = _parse_workspaces(data, errors)

    triggers: tuple[TriggerRule, ...] = ()
    try:
        triggers = parse_trigger_rules(data.get("triggers"))
    except TriggerConfigError as e:
        errors.extend(f"linear.{err}" for err in e.errors)

    return LinearConfig(
        api_key=api_key,
        webhook_secret=webhook_secret,
        workspaces=workspaces,
        triggers=triggers,
        api_url=_str(data, "api_url", where, errors, DEFAULT_LINEAR_API_URL)
        or DEFAULT_LINEAR_API_URL,
    )


def _parse_settings_fields(
    data: Mapping[str, Any], where: str, errors: list[str]
) -> dict[str, Any]:
    return {
        "agent": _enum(AgentName, data, "agent", where, errors),
        "permission_mode": _enum(PermissionMode, data, "permission_mode", where, errors),
        "agent_mode": _str(data, "agent_mode", where, errors),
        "timeout_seconds": _positive_number(data, "timeout_seconds", where, errors, None),
        "progress_interval_seconds": _positive_number(
            data, "progress_interval_seconds", where, errors, None
        ),
        "reasoning": _str(data, "reasoning", where, errors),
        "prompt_prefix": _str(data, "prompt_prefix", where, errors),
        "prompt_suffix": _str(data, "prompt_suffix", where, errors),
    }


def _parse_sandbox(
    data: Mapping[str, Any], workspace_names: set[str], errors: list[str]
) -> SandboxConfig:
    default_fields = _parse_settings_fields(
        _section(data, "default", errors), "sandbox.default", errors
    )
    default = replace(
        SandboxSettings(), **{k: v for k, v in default_fields.items() if v is not None}
    )

    overrides: list[SandboxOverride] = []
    for index, raw in enumerate(_list(data, "overrides", "sandbox", errors)):
        where = f"sandbox.overrides[{index}]"
        if not isinstance(raw, Mapping):
            errors.append(f"{where} must be a mapping")
            continue
        workspace = _str(raw, "workspace", where, errors, required=True)
        if workspace is None:
            continue
        if workspace not in workspace_names:
            errors.append(f"{where}: unknown workspace '{workspace}'")
            continue
        fields = _parse_settings_fields(raw, where, errors)
        overrides.append(SandboxOverride(workspace=workspace, **fields))

    raw_connection = _section(data, "connection", errors)
    where = "sandbox.connection"
    connection = ConnectionConfig(
        base_url=_str(raw_connection, "base_url", where, errors, DEFAULT_RUNTIME_URL)
        or DEFAULT_RUNTIME_URL,
        token=_str(raw_connection, "token", where, errors),
        request_timeout_seconds=_positive_number(
            raw_connection, "request_timeout_seconds", where, errors, 30.0
        )
        or 30.0,
    )
    return SandboxConfig(default=default, overrides=tuple(overrides), connection=connection)


def _parse_github(
    data: Mapping[str, Any], workspace_names: set[str], errors: list[str]
) -> GitHubConfig:
    repos: list[GitHubRepoConfig] = []
    for index, raw in enumerate(_list(data, "repos", "github", errors)):
        where = f"github.repos[{index}]"
        if not isinstance(raw, Mapping):
            errors.append(f"{where} must be a mapping")
            continue
        workspace = _str(raw, "workspace", where, errors, required=True)
        repo = _str(raw, "repo", where, errors, required=True)
        if workspace is None or repo is None:
            continue
        if workspace not in workspace_names:
            errors.append(f"{where}: unknown workspace '{workspace}'")
            continue
        defaults = GitHubRepoConfig(workspace=workspace, repo=repo)
        repos.append(
            GitHubRepoConfig(
                workspace=workspace,
                repo=repo,
                remote=_str(raw, "remote", where, errors, defaults.remote) or defaults.remote,
                base_branch=_str(raw, "base_branch", where, errors),
                draft=_bool(raw, "draft", where, errors, defaults.draft),
                title_template=_str(raw, "title_template", where, errors, defaults.title_template)
                or defaults.title_template,
            )
        )

    raw_cleanup = _section(data, "cleanup", errors)
    where = "github.cleanup"
    cleanup = GitHubCleanupConfig(
        enabled=_bool(raw_cleanup, "enabled", where, errors, False),
        remove_worktree_on_merge=_bool(
            raw_cleanup, "remove_worktree_on_merge", where, errors, True
        ),
        delete_branch_on_merge=_bool(raw_cleanup, "delete_branch_on_merge", where, errors, True),
    )
    webhook_secret = _str(data, "webhook_secret", "github", errors)
    if cleanup.enabled and not webhook_secret:
        errors.append("github.webhook_secret is required when github.cleanup.enabled is true")

    return GitHubConfig(
        enabled=_bool(data, "enabled", "github", errors, False),
        repos=tuple(repos),
        webhook_secret=webhook_secret,
        cleanup=cleanup,
    )


def parse_config(data: Mapping[str, Any]) -> Config:
    """Build a :class:`Config` from an already merged and interpolated mapping.

    Raises:
        ConfigError: Listing every problem found.
    """
    errors: list[str] = []

    version = str(data.get("version", SUPPORTED_CONFIG_VERSION))
    if version != SUPPORTED_CONFIG_VERSION:
        errors.append(
            f"Unsupported config version '{version}' (expected '{SUPPORTED_CONFIG_VERSION}')"
        )

    linear = _parse_linear(_section(data, "linear", errors), errors)
    workspace_names = {w.name for w in linear.workspaces}

    server = _parse_server(_section(data, "server", errors), errors)
    sandbox = _parse_sandbox(_section(data, "sandbox", errors), workspace_names, errors)

    raw_progress = _section(data, "progress", errors)
    progress = ProgressConfig(
        include_tool_calls=_bool(raw_progress, "include_tool_calls", "progress", errors, True),
        include_file_changes=_bool(raw_progress, "include_file_changes", "progress", errors, True),
    )

    raw_worktree = _section(data, "worktree", errors)
    worktree_defaults = WorktreeConfig()
    worktree = WorktreeConfig(
        name_template=_str(raw_worktree, "name_template", "worktree", errors)
        or worktree_defaults.name_template,
        branch_template=_str(raw_worktree, "branch_template", "worktree", errors)
        or worktree_defaults.branch_template,
        post_create_script=_str(raw_worktree, "post_create_script", "worktree", errors),
    )

    raw_bot = _section(data, "bot", errors)
    bot = BotConfig(mention_name=_str(raw_bot, "mention_name", "bot", errors, "et") or "et")

    raw_reply = _section(data, "reply", errors)
    reply_defaults = ReplyConfig()
    reply = ReplyConfig(
        strip_mention=_bool(raw_reply, "strip_mention", "reply", errors, True),
        max_answer_chars=_positive_int(
            raw_reply, "max_answer_chars", "reply", errors, reply_defaults.max_answer_chars
        ),
        max_context_comments=_positive_int(
            raw_reply, "max_context_comments", "reply", errors, reply_defaults.max_context_comments
        ),
    )

    raw_review = _section(data, "review", errors)
    review_defaults = ReviewConfig()
    review = ReviewConfig(
        max_diff_chars=_positive_int(
            raw_review, "max_diff_chars", "review", errors, review_defaults.max_diff_chars
        ),
        max_context_comments=_positive_int(
            raw_review,
            "max_context_comments",
            "review",
            errors,
            review_defaults.max_context_comments,
        ),
        max_comment_chars=_positive_int(
            raw_review, "max_comment_chars", "review", errors, review_defaults.max_comment_chars
        ),
    )

    github = _parse_github(_section(data, "github", errors), workspace_names, errors)

    raw_dedup = _section(data, "dedup", errors)
    dedup = DedupConfig(
        window_seconds=_positive_number(
            raw_dedup, "window_seconds", "dedup", errors, DEFAULT_DEDUP_WINDOW_SECONDS
        )
        or DEFAULT_DEDUP_WINDOW_SECONDS,
        sweep_threshold=int(
            _positive_number(
                raw_dedup, "sweep_threshold", "dedup", errors, DEFAULT_SWEEP_THRESHOLD
            )
            or DEFAULT_SWEEP_THRESHOLD
        ),
    )

    raw_advanced = _section(data, "advanced", errors)
    advanced_defaults = AdvancedConfig()
    dead_letter = _str(raw_advanced, "dead_letter_path", "advanced", errors)
    advanced = AdvancedConfig(
        dead_letter_path=Path(dead_letter) if dead_letter else advanced_defaults.dead_letter_path,
        enable_health_check=_bool(
            raw_advanced, "enable_health_check", "advanced", errors, True
        ),
        enable_metrics=_bool(raw_advanced, "enable_metrics", "advanced", errors, True),
    )

    if errors:
        raise ConfigError(errors)

    return Config(
        linear=linear,
        server=server,
        sandbox=sandbox,
        progress=progress,
        worktree=worktree,
        bot=bot,
        reply=reply,
        review=review,
        github=github,
        dedup=dedup,
        advanced=advanced,
        version=version,
    )


def _apply_env_overrides(config: Config) -> Config:
    """Apply direct environment overrides for runtime settings."""
    errors: list[str] = []
    server = config.server

    log_level = os.getenv("ENHANCE_TICKET_LOG_LEVEL")
    if log_level:
        server = replace(
            server, log_level=_validate_log_level(log_level, errors, "ENHANCE_TICKET_LOG_LEVEL")
        )
    log_json = os.getenv("ENHANCE_TICKET_LOG_JSON")
    if log_json:
        server = replace(server, log_json=_parse_bool(log_json))
    tags = os.getenv(DIAGNOSTIC_TAGS_ENV_VAR)
    if tags is not None:
        server = replace(server, diagnostic_tags=tags)
    port = os.getenv("ENHANCE_TICKET_PORT")
    if port:
        server = replace(
            server, port=_parse_port(port, "ENHANCE_TICKET_PORT", errors, server.port)
        )

    if errors:
        raise ConfigError(errors)
    return replace(config, server=server)


def load_config(paths: Sequence[Path] | None = None, env_file: Path | None = None) -> Config:
    """Load configuration from files and the environment.

    Args:
        paths: Config files in merge order. Defaults to
            :func:`default_config_paths`.
        env_file: Optional path to a .env file. If not provided, looks for
            .env in the current directory.

    Returns:
        The validated configuration.

    Raises:
        ConfigError: If no file is found, a file is unreadable, a
            referenced environment variable is unset, or validation fails.
    """
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    config_paths = list(paths) if paths else default_config_paths()
    if not config_paths:
        raise ConfigError(
            f"No config file found. Set {CONFIG_ENV_VAR} or create ./config.yaml"
        )

    merged: dict[str, Any] = {}
    for path in config_paths:
        merged = deep_merge(merged, _read_config_file(path))

    missing: set[str] = set()
    interpolated = interpolate_env(merged, missing)
    if missing:
        raise ConfigError(
            [f"Environment variable '{name}' is referenced but not set" for name in sorted(missing)]
        )

    config = _apply_env_overrides(parse_config(interpolated))
    logger.debug(
        "Loaded config from %s", ", ".join(str(p) for p in config_paths)
    )
    return config


def check_workspace_paths(config: Config) -> list[str]:
    """Check that every workspace path exists and is a git checkout.

    Kept separate from :func:`load_config` so that loading does not touch
    the filesystem beyond the config files themselves.

    Returns:
        Error messages, empty when every workspace is usable.
    """
    errors: list[str] = []
    for workspace in config.linear.workspaces:
        if not workspace.local_path.is_dir():
            errors.append(
                f"Workspace '{workspace.name}': path does not exist: {workspace.local_path}"
            )
        elif not (workspace.local_path / ".git").exists():
            errors.append(
                f"Workspace '{workspace.name}': not a git repository: {workspace.local_path}"
            )
    return errors


_config_lock = threading.Lock()
_cached_config: Config | None = None


def get_config() -> Config:
    """Return the process-wide configuration, loading it on first use."""
    global _cached_config
    with _config_lock:
        if _cached_config is None:
            _cached_config = load_config()
        return _cached_config


def clear_config_cache() -> None:
    """Forget the cached configuration so the next :func:`get_config` reloads."""
    global _cached_config
    with _config_lock:
        _cached_config = None
