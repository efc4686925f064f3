"""Tests for config_schema module."""

import pytest

from config_schema import (
    BackoffConfig,
    Config,
    ConfigError,
    ProjectConfig,
    load_config,
    validate_config,
)


def _write(tmp_path, text, name="config.yaml"):
    path = tmp_path / name
    path.write_text(text)
    return str(path)


class TestConfigDefaults:
    def test_default_config_has_expected_values(self, default_config):
        config = default_config
        assert config.target_dir == "."
        assert config.worker.command == "claude"
        assert config.orchestrator.max_slots == 1
        assert config.orchestrator.watchdog_interval_seconds == 300
        assert config.orchestrator.inactivity_timeout_seconds == 600
        assert config.orchestrator.agent_assignee == "agent-1"
        assert config.merge.trunk_branch == "main"
        assert config.merge.branch_prefix == "autosprint/"
        assert config.paths.data_dir == ".autosprint"

    def test_backoff_defaults(self):
        backoff = BackoffConfig()
        assert backoff.failure_threshold == 3
        assert backoff.max_priority_before_block == 4
        assert backoff.merge_failure_multiplier == 2
        assert backoff.max_infra_retries == 2
        assert backoff.auto_retry_cooldown_hours == 8.0

    def test_resolved_projects_defaults_to_target_dir(self):
        config = Config(target_dir="/srv/repo")
        projects = config.resolved_projects()
        assert len(projects) == 1
        assert projects[0].id == "default"
        assert projects[0].repo_path == "/srv/repo"

    def test_resolved_projects_uses_configured_list(self):
        config = Config(projects=[ProjectConfig(id="a", repo_path="/a")])
        assert [p.id for p in config.resolved_projects()] == ["a"]


class TestLoadConfig:
    def test_load_config_none_returns_defaults(self):
        config = load_config(None)
        assert config.worker.model == "sonnet"

    def test_load_config_missing_file_returns_defaults(self):
        config = load_config("/nonexistent/path.yaml")
        assert config.target_dir == "."

    def test_load_config_empty_file_returns_defaults(self, tmp_path):
        config = load_config(_write(tmp_path, ""))
        assert config.target_dir == "."

    def test_sections_are_merged(self, tmp_path, tmp_git_repo):
        path = _write(tmp_path, f"""
target_dir: {tmp_git_repo}
worker:
  model: opus
  extra_args: ["--verbose"]
orchestrator:
  max_slots: 2
  review_enabled: false
backoff:
  failure_threshold: 5
  auto_retry_cooldown_hours: 4
merge:
  trunk_branch: develop
  push_enabled: false
logging:
  format: json
""")
        config = load_config(path)
        assert config.worker.model == "opus"
        assert config.worker.extra_args == ["--verbose"]
        assert config.orchestrator.max_slots == 2
        assert config.orchestrator.review_enabled is False
        assert config.backoff.failure_threshold == 5
        assert config.backoff.auto_retry_cooldown_hours == 4.0
        assert isinstance(config.backoff.auto_retry_cooldown_hours, float)
        assert config.merge.trunk_branch == "develop"
        assert config.merge.push_enabled is False
        assert config.logging.format == "json"
        # untouched fields keep defaults
        assert config.worker.command == "claude"

    def test_wrong_type_is_skipped(self, tmp_path, tmp_git_repo):
        path = _write(tmp_path, f"""
target_dir: {tmp_git_repo}
orchestrator:
  max_slots: "many"
""")
        config = load_config(path)
        assert config.orchestrator.max_slots == 1

    def test_unknown_key_is_ignored(self, tmp_path, tmp_git_repo):
        path = _write(tmp_path, f"""
target_dir: {tmp_git_repo}
worker:
  modle: opus
""")
        config = load_config(path)
        assert config.worker.model == "sonnet"
        assert not hasattr(config.worker, "modle")

    def test_projects_and_webhooks(self, tmp_path, tmp_git_repo):
        path = _write(tmp_path, f"""
projects:
  - id: web
    repo_path: {tmp_git_repo}
  - repo_path: /no/id/here
notifications:
  enabled: true
  webhooks:
    - url: https://hooks.example.com/x
      type: slack
    - type: generic
  events:
    on_task_failed: true
""")
        config = load_config(path)
        assert [p.id for p in config.projects] == ["web"]
        assert config.notifications.enabled is True
        assert len(config.notifications.webhooks) == 1
        assert config.notifications.webhooks[0].type == "slack"
        assert config.notifications.events.on_task_failed is True


class TestValidateConfig:
    def _config(self, tmp_git_repo, **overrides):
        config = Config(target_dir=tmp_git_repo)
        for dotted, value in overrides.items():
            section, key = dotted.split("__")
            setattr(getattr(config, section), key, value)
        return config

    def test_defaults_validate(self, tmp_git_repo):
        validate_config(self._config(tmp_git_repo))

    @pytest.mark.parametrize("field,value", [
        ("orchestrator__max_slots", 0),
        ("orchestrator__inactivity_timeout_seconds", 0),
        ("backoff__failure_threshold", 0),
        ("backoff__max_infra_retries", -1),
        ("merge__trunk_branch", " "),
        ("worker__command", ""),
        ("logging__format", "xml"),
    ])
    def test_invalid_values_raise(self, tmp_git_repo, field, value):
        with pytest.raises(ValueError):
            validate_config(self._config(tmp_git_repo, **{field: value}))

    def test_check_interval_above_timeout_rejected(self, tmp_git_repo):
        config = self._config(
            tmp_git_repo,
            orchestrator__inactivity_timeout_seconds=10,
            orchestrator__inactivity_check_interval_seconds=30,
        )
        with pytest.raises(ValueError, match="inactivity_check_interval_seconds"):
            validate_config(config)

    def test_non_git_repo_rejected(self, tmp_path):
        plain = tmp_path / "plain"
        plain.mkdir()
        config = Config(target_dir=str(plain))
        with pytest.raises(ValueError, match="not a git repository"):
            validate_config(config)

    def test_duplicate_project_ids_rejected(self, tmp_git_repo):
        config = Config(projects=[
            ProjectConfig(id="a", repo_path=tmp_git_repo),
            ProjectConfig(id="a", repo_path=tmp_git_repo),
        ])
        with pytest.raises(ValueError, match="Duplicate project id"):
            validate_config(config)

    def test_all_problems_reported_together(self, tmp_git_repo):
        config = self._config(tmp_git_repo, orchestrator__max_slots=0, merge__branch_prefix="")
        with pytest.raises(ConfigError) as exc_info:
            validate_config(config)
        message = str(exc_info.value)
        assert "orchestrator.max_slots" in message
        assert "merge.branch_prefix" in message


class TestNestedSections:
    def test_section_that_is_not_a_mapping_is_skipped(self, tmp_path, tmp_git_repo):
        path = _write(tmp_path, f"""
target_dir: {tmp_git_repo}
orchestrator: 3
notifications:
  events: yes
""")
        config = load_config(path)
        assert config.orchestrator.max_slots == 1
        assert config.notifications.events.on_task_completed is True
