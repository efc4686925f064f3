#!/usr/bin/env python3
"""autosprint: entry point.

Loads the YAML config, configures logging, builds one orchestrator per
project, runs crash recovery and the orphan sweep, then schedules work
until SIGINT/SIGTERM (or, with --once, until the ready backlog is drained).
"""

from __future__ import annotations

import argparse
import logging
import logging.handlers
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional, Sequence

from config_schema import Config, LoggingConfig, ProjectConfig, load_config

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(settings: LoggingConfig, level_override: Optional[str] = None) -> None:
    """Console plus, when ``settings.file`` is set, a rotating file handler."""
    root = logging.getLogger()
    level = (level_override or settings.level).upper()
    root.setLevel(getattr(logging, level, logging.INFO))

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.file:
        log_path = Path(settings.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            str(log_path), maxBytes=settings.max_bytes, backupCount=settings.backup_count,
        ))
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    if settings.format == "json":
        from structured_logging import apply_json_logging
        apply_json_logging()


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="autosprint: build orchestration for agent-driven task backlogs"
    )
    parser.add_argument(
        "--config",
        default="config.yaml",
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Work through the ready backlog once, then exit",
    )
    parser.add_argument(
        "--project",
        action="append",
        default=None,
        help="Only run the given project id (repeatable)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override logging.level from the config file",
    )
    return parser.parse_args(argv)


def select_projects(config: Config, wanted: Optional[Sequence[str]]) -> List[ProjectConfig]:
    """Configured projects, narrowed to ``wanted`` ids. Raises KeyError on unknown ids."""
    projects = config.resolved_projects()
    if not wanted:
        return projects
    unknown = set(wanted) - {p.id for p in projects}
    if unknown:
        raise KeyError(", ".join(sorted(unknown)))
    return [p for p in projects if p.id in set(wanted)]


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)

    from events import EventBroadcaster
    from notifications import NotificationManager
    from orchestrator import OrchestratorRegistry

    try:
        config = load_config(args.config)
    except (ValueError, OSError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(config.logging, args.log_level)
    logger = logging.getLogger("main")

    try:
        projects = select_projects(config, args.project)
    except KeyError as e:
        logger.error("Unknown project id(s): %s", e.args[0])
        sys.exit(2)

    events = EventBroadcaster(notifier=NotificationManager(config.notifications))
    registry = OrchestratorRegistry(config, events)
    for project in projects:
        registry.register(project)

    stop = threading.Event()

    def handler(signum, frame):
        logger.info("Received signal %d, shutting down gracefully...", signum)
        stop.set()

    def dispatch_now(signum, frame):
        logger.info("Received signal %d, dispatching ready tasks", signum)
        threading.Thread(
            target=registry.nudge_all, args=("user action",), name="nudge-all", daemon=True,
        ).start()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)
    signal.signal(signal.SIGUSR1, dispatch_now)

    logger.info("autosprint starting with %d project(s)", len(projects))
    registry.start_all(recover=True, timers=not args.once)
    try:
        if args.once:
            for project_id in registry.project_ids():
                orchestrator = registry.get(project_id)
                while not stop.is_set() and not orchestrator.wait_idle(timeout=1.0):
                    pass
                logger.info("Finished %s: %s", project_id, orchestrator.status())
        else:
            while not stop.wait(1.0):
                pass
    finally:
        registry.stop_all(wait=args.once and not stop.is_set())
        logger.info("autosprint stopped")


if __name__ == "__main__":
    main()
