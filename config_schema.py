"""Load and validate configuration from YAML with sensible defaults."""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import List, Optional, Union, get_args, get_origin, get_type_hints

import yaml

logger = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    command: str = "claude"
    model: str = "sonnet"
    max_turns: int = 40
    timeout_seconds: int = 7200
    extra_args: List[str] = field(default_factory=list)


@dataclass
class OrchestratorConfig:
    max_slots: int = 1
    watchdog_interval_seconds: int = 300
    inactivity_timeout_seconds: int = 600
    inactivity_check_interval_seconds: int = 30
    pid_poll_interval_seconds: int = 5
    review_enabled: bool = True
    agent_assignee: str = "agent-1"


@dataclass
class BackoffConfig:
    failure_threshold: int = 3
    max_priority_before_block: int = 4
    merge_failure_multiplier: int = 2
    max_infra_retries: int = 2
    auto_retry_cooldown_hours: float = 8.0
    auto_retry_interval_seconds: int = 3600


@dataclass
class MergeConfig:
    trunk_branch: str = "main"
    remote: str = "origin"
    branch_prefix: str = "autosprint/"
    push_enabled: bool = True
    queue_max_retries: int = 2
    post_merge_command: str = ""        # e.g. a deploy script; empty = disabled
    final_review_command: str = ""      # run when an epic's children are all closed
    hook_timeout: int = 600


@dataclass
class ValidationConfig:
    test_command: str = "python3 -m pytest tests/ -x -q"
    test_timeout: int = 3600


@dataclass
class PathsConfig:
    data_dir: str = ".autosprint"
    tasks_file: str = ".autosprint/tasks.json"
    worktree_base_dir: str = ""         # empty = <tmp>/autosprint-worktrees/<project>


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: str = ".autosprint/autosprint.log"
    max_bytes: int = 5_000_000
    backup_count: int = 3
    format: str = "text"  # "text" or "json"


@dataclass
class WebhookConfig:
    """Configuration for a single webhook endpoint."""
    url: str = ""
    type: str = "generic"  # "slack", "discord", "generic"
    name: str = ""


@dataclass
class NotificationEventsConfig:
    """Which events trigger notifications."""
    on_task_completed: bool = True
    on_task_failed: bool = False
    on_task_blocked: bool = True
    on_push_failed: bool = True


@dataclass
class NotificationsConfig:
    """Top-level notification configuration."""
    enabled: bool = False
    webhooks: List[WebhookConfig] = field(default_factory=list)
    events: NotificationEventsConfig = field(default_factory=NotificationEventsConfig)


@dataclass
class ProjectConfig:
    id: str = "default"
    repo_path: str = "."


@dataclass
class Config:
    target_dir: str = "."
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)
    projects: List[ProjectConfig] = field(default_factory=list)

    def resolved_projects(self) -> List[ProjectConfig]:
        """Return configured projects, or a single default project at target_dir."""
        if self.projects:
            return list(self.projects)
        return [ProjectConfig(id="default", repo_path=self.target_dir)]


class ConfigError(ValueError):
    """Raised by validate_config(); the message lists every problem found."""


KNOWN_WEBHOOK_TYPES = ("slack", "discord", "generic")


def _field_type(dc_class, name: str):
    """Primitive type declared for a dataclass field (Optional unwrapped), or None."""
    try:
        hint = get_type_hints(dc_class).get(name)
    except Exception:
        return None
    if get_origin(hint) is Union:
        args = [a for a in get_args(hint) if a is not type(None)]
        hint = args[0] if len(args) == 1 else None
    if get_origin(hint) is list:
        return list
    return hint if isinstance(hint, type) else None


def _merge_dataclass(dc_instance, overrides: dict, section: str = ""):
    """Merge a dict of overrides into a dataclass instance.

    Nested dataclass fields are merged recursively. Unknown keys and
    values of the wrong type are logged and skipped, so one typo never
    discards the rest of the section.
    """
    section = section or type(dc_instance).__name__
    for key, value in (overrides or {}).items():
        dotted = f"{section}.{key}"
        if key not in {f.name for f in fields(dc_instance)}:
            logger.warning("Unknown config key '%s' - ignoring (typo?)", dotted)
            continue
        current = getattr(dc_instance, key)
        if is_dataclass(current):
            if isinstance(value, dict):
                _merge_dataclass(current, value, dotted)
            else:
                logger.warning("Config section '%s' must be a mapping - skipping", dotted)
            continue
        expected = _field_type(type(dc_instance), key)
        if expected is float and isinstance(value, int) and not isinstance(value, bool):
            value = float(value)
        elif expected is not None and value is not None and not isinstance(value, expected):
            logger.warning(
                "Config field '%s' expects %s but got %s (%r) - skipping",
                dotted, expected.__name__, type(value).__name__, value,
            )
            continue
        setattr(dc_instance, key, value)
    return dc_instance


def _load_webhooks(entries) -> List[WebhookConfig]:
    webhooks = []
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("url"):
            logger.warning("Skipping webhook without a url: %r", entry)
            continue
        webhooks.append(_merge_dataclass(WebhookConfig(), entry, "notifications.webhooks"))
    return webhooks


def _load_projects(entries) -> List[ProjectConfig]:
    projects = []
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("id"):
            logger.warning("Skipping malformed project entry: %r", entry)
            continue
        projects.append(_merge_dataclass(ProjectConfig(), entry, "projects"))
    return projects


def load_config(path: Optional[str] = None) -> Config:
    """Load configuration from a YAML file, merging with defaults.

    A missing path, a missing file or an empty file all give the defaults.
    Anything loaded from a file is validated before it is returned.
    """
    config = Config()
    if path is None or not Path(path).exists():
        return config

    with open(path, "r") as f:
        raw = yaml.safe_load(f)
    if not raw or not isinstance(raw, dict):
        return config

    raw = dict(raw)
    notifications = raw.get("notifications")
    if isinstance(notifications, dict):
        notifications = dict(notifications)
        raw["notifications"] = notifications
        webhooks = notifications.pop("webhooks", None)
        if isinstance(webhooks, list):
            config.notifications.webhooks = _load_webhooks(webhooks)
    projects = raw.pop("projects", None)
    if isinstance(projects, list):
        config.projects = _load_projects(projects)

    _merge_dataclass(config, raw, "config")
    validate_config(config)
    return config


def _positive(errors: List[str], name: str, value, allow_zero: bool = False) -> None:
    if value < 0 or (value == 0 and not allow_zero):
        kind = "non-negative" if allow_zero else "positive"
        errors.append(f"{name} must be {kind}, got {value}")


def _check_project(project: ProjectConfig) -> Optional[str]:
    if not os.path.isdir(project.repo_path):
        return f"Project {project.id}: repo_path does not exist or is not a directory: {project.repo_path}"
    check = subprocess.run(
        ["git", "rev-parse", "--git-dir"],
        cwd=project.repo_path, capture_output=True, text=True,
    )
    if check.returncode != 0:
        return f"Project {project.id}: repo_path is not a git repository: {project.repo_path}"
    return None


def validate_config(config: Config) -> None:
    """Validate cross-field configuration constraints.

    Raises ConfigError listing every violation, not just the first.
    """
    errors: List[str] = []

    worker = config.worker
    if not worker.command or not worker.command.strip():
        errors.append("worker.command must be a non-empty string")
    _positive(errors, "worker.timeout_seconds", worker.timeout_seconds)
    _positive(errors, "worker.max_turns", worker.max_turns)

    orch = config.orchestrator
    for name in (
        "max_slots",
        "watchdog_interval_seconds",
        "inactivity_timeout_seconds",
        "inactivity_check_interval_seconds",
        "pid_poll_interval_seconds",
    ):
        _positive(errors, f"orchestrator.{name}", getattr(orch, name))
    if orch.inactivity_check_interval_seconds > orch.inactivity_timeout_seconds > 0:
        errors.append(
            f"orchestrator.inactivity_check_interval_seconds "
            f"({orch.inactivity_check_interval_seconds}) must not exceed "
            f"orchestrator.inactivity_timeout_seconds ({orch.inactivity_timeout_seconds})"
        )

    bo = config.backoff
    _positive(errors, "backoff.failure_threshold", bo.failure_threshold)
    _positive(errors, "backoff.merge_failure_multiplier", bo.merge_failure_multiplier)
    _positive(errors, "backoff.max_infra_retries", bo.max_infra_retries, allow_zero=True)
    _positive(errors, "backoff.auto_retry_cooldown_hours", bo.auto_retry_cooldown_hours, allow_zero=True)
    _positive(errors, "backoff.auto_retry_interval_seconds", bo.auto_retry_interval_seconds)

    merge = config.merge
    if not merge.trunk_branch.strip():
        errors.append("merge.trunk_branch must be a non-empty branch name")
    if not merge.branch_prefix.strip():
        errors.append("merge.branch_prefix must be non-empty")
    _positive(errors, "merge.queue_max_retries", merge.queue_max_retries, allow_zero=True)
    _positive(errors, "merge.hook_timeout", merge.hook_timeout)

    _positive(errors, "validation.test_timeout", config.validation.test_timeout)

    for name in ("data_dir", "tasks_file"):
        if not getattr(config.paths, name).strip():
            errors.append(f"paths.{name} must be a non-empty path")

    if config.logging.format not in ("text", "json"):
        errors.append(f"logging.format must be 'text' or 'json', got {config.logging.format!r}")

    seen = set()
    for project in config.resolved_projects():
        if project.id in seen:
            errors.append(f"Duplicate project id: {project.id}")
            continue
        seen.add(project.id)
        problem = _check_project(project)
        if problem:
            errors.append(problem)

    if errors:
        raise ConfigError("; ".join(errors))

    if config.notifications.enabled:
        for i, wh in enumerate(config.notifications.webhooks):
            if wh.type not in KNOWN_WEBHOOK_TYPES:
                logger.warning(
                    "notifications.webhooks[%d].type '%s' is not recognized; known types: %s",
                    i, wh.type, ", ".join(KNOWN_WEBHOOK_TYPES),
                )
