"""Shared test fixtures."""

import json
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

import pytest

# Ensure project root is on sys.path so all modules are importable
# regardless of the working directory when pytest is invoked.
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from config_schema import Config, ProjectConfig
from events import EventBroadcaster
from project_context import build_context
from task_store import InMemoryTaskStore
from worker_runner import (
    RESULT_FILENAME,
    ROLE_CODER,
    ROLE_MERGER,
    ROLE_REVIEWER,
    WorkerHandle,
    active_dir,
)


def git(cwd, *args):
    """Run a git command in a test repo and return stdout."""
    return subprocess.run(
        ["git", *args], cwd=str(cwd), capture_output=True, text=True, check=True,
    ).stdout


def _init_repo(repo: Path) -> None:
    repo.mkdir(parents=True, exist_ok=True)
    git(repo, "init")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    git(repo, "config", "user.email", "test@test.com")
    git(repo, "config", "user.name", "Test")
    git(repo, "config", "commit.gpgsign", "false")


@pytest.fixture
def default_config():
    """Return a Config with all defaults."""
    return Config()


@pytest.fixture
def tmp_git_repo(tmp_path):
    """Create a temporary git repo on ``main`` with one commit and return its path."""
    repo = tmp_path / "repo"
    _init_repo(repo)
    # Create an initial commit
    (repo / "README.md").write_text("# Test\n")
    git(repo, "add", "-A")
    git(repo, "commit", "-m", "Initial commit")
    return str(repo)


@pytest.fixture
def tmp_git_repo_with_remote(tmp_path, tmp_git_repo):
    """tmp_git_repo plus a bare ``origin`` it has pushed main to."""
    origin = tmp_path / "origin.git"
    subprocess.run(
        ["git", "init", "--bare", str(origin)], capture_output=True, check=True,
    )
    git(origin, "symbolic-ref", "HEAD", "refs/heads/main")
    git(tmp_git_repo, "remote", "add", "origin", str(origin))
    git(tmp_git_repo, "push", "-u", "origin", "main")
    return tmp_git_repo


@pytest.fixture
def memory_store():
    return InMemoryTaskStore(project_id="proj", id_prefix="proj")


@pytest.fixture
def events():
    return EventBroadcaster()


@pytest.fixture
def project_config(tmp_path, tmp_git_repo):
    """Config for a single project at tmp_git_repo with worktrees under tmp_path."""
    config = Config(target_dir=tmp_git_repo)
    config.paths.worktree_base_dir = str(tmp_path / "worktrees")
    config.merge.push_enabled = True
    config.orchestrator.inactivity_check_interval_seconds = 1
    config.validation.test_command = "true"
    config.projects = [ProjectConfig(id="proj", repo_path=tmp_git_repo)]
    return config


# ----------------------------------------------------------------------
# Scripted workers
# ----------------------------------------------------------------------


@dataclass
class FakeRun:
    """What one fake worker run does.

    ``action(cwd, task_id)`` runs first (e.g. write and commit files), then
    ``output`` lines are streamed, then ``result`` is written (None = no
    result file). ``hang=True`` never exits until killed.
    """

    result: Optional[dict] = None
    returncode: int = 0
    output: List[str] = field(default_factory=list)
    action: Optional[Callable[[str, str], None]] = None
    hang: bool = False


class FakeHandle(WorkerHandle):
    _next_pid = 40000

    def __init__(self, role: str, result_path: Path, returncode: int = 0):
        super().__init__()
        FakeHandle._next_pid += 1
        self.role = role
        self.pid = FakeHandle._next_pid
        self.result_path = result_path
        self._returncode = returncode

    def finish(self) -> None:
        self.returncode = self._returncode
        self.exited.set()

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9
        self.exited.set()


class FakeInvoker:
    """Stand-in for WorkerInvoker; each spawn consumes the next FakeRun for its role."""

    DEFAULTS = {
        ROLE_CODER: lambda: FakeRun(result={"status": "success", "summary": "Implemented"}),
        ROLE_REVIEWER: lambda: FakeRun(result={"status": "approved", "summary": "Looks good"}),
        ROLE_MERGER: lambda: FakeRun(result={"status": "failed", "summary": "Cannot resolve"}),
    }

    def __init__(self, data_dir_name: str = ".autosprint"):
        self.data_dir_name = data_dir_name
        self.scripts = {ROLE_CODER: [], ROLE_REVIEWER: [], ROLE_MERGER: []}
        self.calls = []
        self.adopted = []
        self.handles = []

    def script(self, role: str, *runs: FakeRun) -> "FakeInvoker":
        self.scripts[role].extend(runs)
        return self

    def prompts(self, role: str) -> List[str]:
        return [prompt for r, _, prompt in self.calls if r == role]

    def result_path_for(self, cwd: str, task_id: str) -> Path:
        return active_dir(cwd, task_id, self.data_dir_name) / RESULT_FILENAME

    def spawn(self, role, prompt, cwd, task_id, on_output=None, on_exit=None):
        self.calls.append((role, task_id, prompt))
        run = self.scripts[role].pop(0) if self.scripts[role] else self.DEFAULTS[role]()
        result_path = self.result_path_for(cwd, task_id)
        result_path.parent.mkdir(parents=True, exist_ok=True)
        if result_path.exists():
            result_path.unlink()
        handle = FakeHandle(role, result_path, run.returncode)
        self.handles.append(handle)
        if run.action is not None:
            run.action(cwd, task_id)
        for line in run.output:
            if on_output is not None:
                on_output(line)
        if run.hang:
            return handle
        if run.result is not None:
            result_path.write_text(json.dumps(run.result))
        handle.finish()
        return handle

    def adopt(self, role, pid, cwd, task_id, poll_interval, on_exit=None):
        self.adopted.append((role, pid, task_id))
        handle = FakeHandle(role, self.result_path_for(cwd, task_id))
        handle.pid = pid
        handle.finish()
        return handle

    def run_to_completion(self, role, prompt, cwd, task_id):
        handle = self.spawn(role, prompt, cwd, task_id)
        handle.wait()
        return handle.read_result()


def commit_file(name: str, content: str) -> Callable[[str, str], None]:
    """FakeRun action: write a file in the worktree and commit it."""

    def action(cwd: str, task_id: str) -> None:
        path = Path(cwd) / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        git(cwd, "add", name)
        git(cwd, "commit", "-m", f"{task_id}: write {name}")

    return action


@pytest.fixture
def fake_invoker():
    return FakeInvoker()


@pytest.fixture
def ctx(project_config, memory_store, events, fake_invoker):
    """ProjectContext for ``proj`` backed by the in-memory store and scripted workers."""
    context = build_context(
        project_config, project_config.projects[0], events,
        store=memory_store, invoker=fake_invoker,
    )
    yield context
    context.queue.stop(timeout=5)
