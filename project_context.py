"""Per-project collaborators, built once and shared by the orchestration services."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from config_schema import Config, ProjectConfig
from events import EventBroadcaster
from git_manager import GitManager
from integration_queue import IntegrationQueue
from session_archive import SessionArchive
from snapshot_store import SnapshotStore
from task_store import JsonTaskStore, TaskStore
from validator import Validator
from worker_runner import WorkerInvoker


@dataclass
class ProjectContext:
    project_id: str
    repo_path: str
    config: Config
    store: TaskStore
    git: GitManager
    queue: IntegrationQueue
    snapshots: SnapshotStore
    archive: SessionArchive
    events: EventBroadcaster
    invoker: WorkerInvoker
    validator: Validator

    @property
    def data_dir(self) -> str:
        return str(Path(self.repo_path) / self.config.paths.data_dir)

    def emit(self, event_type: str, **payload) -> None:
        self.events.emit(self.project_id, event_type, **payload)


def build_context(
    config: Config,
    project: ProjectConfig,
    events: EventBroadcaster,
    store: Optional[TaskStore] = None,
    invoker: Optional[WorkerInvoker] = None,
) -> ProjectContext:
    """Wire the default collaborators for a project; tests pass fakes for store/invoker."""
    repo = project.repo_path
    data_dir = str(Path(repo) / config.paths.data_dir)
    data_dir_name = Path(config.paths.data_dir).name
    tasks_file = Path(config.paths.tasks_file)
    if not tasks_file.is_absolute():
        tasks_file = Path(repo) / tasks_file
    worktree_base = config.paths.worktree_base_dir or None
    if worktree_base:
        worktree_base = str(Path(worktree_base) / project.id)
    git = GitManager(
        repo,
        trunk=config.merge.trunk_branch,
        remote=config.merge.remote,
        branch_prefix=config.merge.branch_prefix,
        worktree_base=worktree_base,
        data_dir_name=data_dir_name,
    )
    return ProjectContext(
        project_id=project.id,
        repo_path=repo,
        config=config,
        store=store or JsonTaskStore(str(tasks_file), project_id=project.id, id_prefix=project.id),
        git=git,
        queue=IntegrationQueue(git, project_id=project.id, max_retries=config.merge.queue_max_retries),
        snapshots=SnapshotStore(data_dir),
        archive=SessionArchive(data_dir),
        events=events,
        invoker=invoker or WorkerInvoker(config.worker, data_dir_name=data_dir_name),
        validator=Validator(config.validation),
    )
