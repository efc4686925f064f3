"""Tests for main.py argument handling, project selection and logging setup."""

import json
import logging
from io import StringIO

import pytest

from config_schema import Config, LoggingConfig, ProjectConfig
from main import parse_args, select_projects, setup_logging
from structured_logging import JSONFormatter


class TestParseArgs:
    def test_defaults(self):
        args = parse_args([])
        assert args.config == "config.yaml"
        assert args.once is False
        assert args.project is None
        assert args.log_level is None

    def test_repeatable_project(self):
        args = parse_args(["--once", "--project", "web", "--project", "api", "--log-level", "DEBUG"])
        assert args.once is True
        assert args.project == ["web", "api"]
        assert args.log_level == "DEBUG"

    def test_bad_log_level_rejected(self):
        with pytest.raises(SystemExit):
            parse_args(["--log-level", "LOUD"])


class TestSelectProjects:
    def _config(self):
        return Config(projects=[ProjectConfig(id="web", repo_path="/w"), ProjectConfig(id="api", repo_path="/a")])

    def test_all_when_none_requested(self):
        assert [p.id for p in select_projects(self._config(), None)] == ["web", "api"]

    def test_subset_keeps_config_order(self):
        assert [p.id for p in select_projects(self._config(), ["api"])] == ["api"]

    def test_unknown_id(self):
        with pytest.raises(KeyError):
            select_projects(self._config(), ["web", "mobile"])


class TestSetupLogging:
    @pytest.fixture(autouse=True)
    def restore_root(self):
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        root.handlers = []
        yield root
        for handler in root.handlers:
            handler.close()
        root.handlers = saved_handlers
        root.setLevel(saved_level)

    def test_console_and_rotating_file(self, tmp_path, restore_root):
        log_file = tmp_path / "logs" / "autosprint.log"
        setup_logging(LoggingConfig(file=str(log_file), level="warning"))
        assert restore_root.level == logging.WARNING
        assert len(restore_root.handlers) == 2
        logging.getLogger("x").warning("written")
        restore_root.handlers[1].flush()
        assert "[WARNING] x: written" in log_file.read_text()

    def test_level_override_and_no_file(self, restore_root):
        setup_logging(LoggingConfig(file="", level="INFO"), level_override="DEBUG")
        assert restore_root.level == logging.DEBUG
        assert len(restore_root.handlers) == 1

    def test_json_format(self, restore_root):
        setup_logging(LoggingConfig(file="", format="json"))
        handler = restore_root.handlers[0]
        assert isinstance(handler.formatter, JSONFormatter)
        stream = StringIO()
        handler.setStream(stream)
        logging.getLogger("y").info("hello", extra={"task_id": "proj-2"})
        assert json.loads(stream.getvalue())["task_id"] == "proj-2"
