"""Git operations for task branches: worktrees, rebase, merge to trunk, push."""

from __future__ import annotations

import logging
import shutil
import tempfile
import time
from pathlib import Path
from typing import List, Optional, Sequence

from process_utils import RunResult, run_with_group_kill

logger = logging.getLogger(__name__)

# Timeouts in seconds. Commits run hooks and network operations can stall.
GIT_DEFAULT_TIMEOUT = 120
GIT_COMMIT_TIMEOUT = 300
GIT_NETWORK_TIMEOUT = 300

# fetch/push retry schedule: 2s, 4s between three attempts
GIT_RETRY_MAX_ATTEMPTS = 3
GIT_RETRY_BASE_DELAY = 2.0

# Lower-cased stderr fragments that mark a failure worth retrying
_TRANSIENT_ERROR_PATTERNS = (
    "could not read from remote",
    "connection reset",
    "connection refused",
    "timed out",
    "network is unreachable",
    "temporary failure",
    "name or service not known",
    "couldn't resolve host",
    "unable to access",
    "unable to connect",
    "the remote end hung up",
    "early eof",
    "unexpected disconnect",
    "index.lock",
    "another git process seems to be running",
)


class GitError(RuntimeError):
    """A git command failed for a reason other than a conflict."""


class GitCommandError(GitError):
    """A required git command exited non-zero or timed out."""

    def __init__(self, args: Sequence[str], result: RunResult):
        self.git_args = list(args)
        self.returncode = result.returncode
        self.stdout = result.stdout
        self.stderr = result.stderr
        detail = (result.stderr or result.stdout or "").strip()
        super().__init__(
            f"git {' '.join(self.git_args[:2])} failed (exit {result.returncode}): {detail[:500]}"
        )


class RebaseConflictError(GitError):
    """A rebase stopped on conflicts. The repository is left mid-rebase."""

    def __init__(self, conflicted_files: List[str]):
        self.conflicted_files = list(conflicted_files)
        super().__init__(
            f"Rebase conflict in {len(self.conflicted_files)} file(s): "
            f"{', '.join(self.conflicted_files)}"
        )


class MergeConflictError(GitError):
    """A merge stopped on conflicts. The repository is left mid-merge."""

    def __init__(self, conflicted_files: List[str]):
        self.conflicted_files = list(conflicted_files)
        super().__init__(
            f"Merge conflict in {len(self.conflicted_files)} file(s): "
            f"{', '.join(self.conflicted_files)}"
        )


def is_transient_error(text: str) -> bool:
    """Check if git stderr (or an exception message) looks like a transient failure."""
    lowered = (text or "").lower()
    return any(pat in lowered for pat in _TRANSIENT_ERROR_PATTERNS)


class GitManager:
    """Branch and worktree manager for one project repository.

    The main checkout stays on the trunk branch; every task works in its
    own worktree on branch ``<branch_prefix><task_id>``.
    """

    def __init__(
        self,
        repo_dir: str,
        trunk: str = "main",
        remote: str = "origin",
        branch_prefix: str = "autosprint/",
        worktree_base: Optional[str] = None,
        data_dir_name: str = ".autosprint",
    ):
        self.repo_dir = repo_dir
        self.trunk = trunk
        self.remote = remote
        self.branch_prefix = branch_prefix
        self.data_dir_name = data_dir_name
        if worktree_base:
            self.worktree_base = worktree_base
        else:
            self.worktree_base = str(
                Path(tempfile.gettempdir()) / "autosprint-worktrees" / Path(repo_dir).resolve().name
            )
        self._is_repo: Optional[bool] = None

    def _ensure_repo(self) -> None:
        if self._is_repo is None:
            check = run_with_group_kill(
                ["git", "rev-parse", "--git-dir"], cwd=self.repo_dir, timeout=GIT_DEFAULT_TIMEOUT,
            )
            # only a positive answer is cached; a missing repo may be created later
            if check.ok:
                self._is_repo = True
            else:
                raise GitError(f"Not a git repository: {self.repo_dir}")

    def _run(
        self,
        *args: str,
        check: bool = True,
        timeout: int = GIT_DEFAULT_TIMEOUT,
        cwd: Optional[str] = None,
    ) -> RunResult:
        """Run ``git <args>`` in the main checkout, or in ``cwd`` (a worktree).

        A timeout kills git and its hooks and comes back as exit -1. With
        ``check`` any non-zero exit raises GitCommandError.
        """
        self._ensure_repo()
        result = run_with_group_kill(["git", *args], cwd=cwd or self.repo_dir, timeout=timeout)
        if result.timed_out:
            logger.warning("git %s timed out after %ds", args[0] if args else "?", timeout)
        if check and result.returncode != 0:
            raise GitCommandError(args, result)
        return result

    def _run_with_retry(
        self,
        *args: str,
        timeout: int = GIT_NETWORK_TIMEOUT,
        cwd: Optional[str] = None,
        attempts: int = GIT_RETRY_MAX_ATTEMPTS,
        base_delay: float = GIT_RETRY_BASE_DELAY,
    ) -> RunResult:
        """Like ``_run(check=False)``, retrying transient failures with doubling delays.

        Anything that does not look transient (a rejected push, a conflict)
        is returned after the first attempt.
        """
        delay = base_delay
        for attempt in range(1, attempts + 1):
            result = self._run(*args, check=False, timeout=timeout, cwd=cwd)
            if result.returncode == 0 or attempt == attempts or not is_transient_error(result.stderr):
                return result
            logger.warning(
                "git %s hit a transient error (attempt %d/%d), retrying in %.1fs: %s",
                args[0], attempt, attempts, delay, result.stderr.strip()[:200],
            )
            time.sleep(delay)
            delay *= 2
        return result

    @staticmethod
    def _fail(action: str, result: RunResult) -> GitError:
        detail = (result.stderr or result.stdout or "").strip()
        return GitError(f"git {action} failed (exit {result.returncode}): {detail[:500]}")

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------

    def branch_name(self, task_id: str) -> str:
        return f"{self.branch_prefix}{task_id}"

    def worktree_path(self, task_id: str) -> str:
        return str(Path(self.worktree_base) / task_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def branch_exists(self, branch: str) -> bool:
        result = self._run("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", check=False)
        return result.returncode == 0

    def has_remote(self) -> bool:
        result = self._run("remote", check=False)
        return self.remote in result.stdout.split()

    def get_current_branch(self, cwd: Optional[str] = None) -> str:
        result = self._run("rev-parse", "--abbrev-ref", "HEAD", cwd=cwd)
        return result.stdout.strip()

    def get_head(self, cwd: Optional[str] = None) -> str:
        return self._run("rev-parse", "HEAD", cwd=cwd).stdout.strip()

    def has_uncommitted_changes(self, cwd: Optional[str] = None) -> bool:
        status = self._run("status", "--porcelain", check=False, cwd=cwd)
        return status.stdout.strip() != ""

    def conflicted_files(self, cwd: Optional[str] = None) -> List[str]:
        """List files with unresolved merge/rebase conflicts."""
        result = self._run("diff", "--name-only", "--diff-filter=U", check=False, cwd=cwd)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def is_rebase_in_progress(self, cwd: Optional[str] = None) -> bool:
        for marker in ("rebase-merge", "rebase-apply"):
            result = self._run("rev-parse", "--git-path", marker, check=False, cwd=cwd)
            rel = result.stdout.strip()
            if not rel:
                continue
            path = Path(rel)
            if not path.is_absolute():
                path = Path(cwd or self.repo_dir) / path
            if path.exists():
                return True
        return False

    def is_merge_in_progress(self, cwd: Optional[str] = None) -> bool:
        result = self._run("rev-parse", "-q", "--verify", "MERGE_HEAD", check=False, cwd=cwd)
        return result.returncode == 0

    def capture_branch_diff(self, branch: str) -> str:
        """Diff of a branch against trunk, without checking anything out."""
        result = self._run("diff", f"{self.trunk}...{branch}", check=False)
        if result.returncode != 0:
            logger.debug("No diff captured for %s: %s", branch, result.stderr.strip())
            return ""
        return result.stdout

    def capture_uncommitted_diff(self, cwd: str) -> str:
        """Diff of staged + unstaged + untracked changes in a worktree, index restored after."""
        self._run("add", "-A", check=False, cwd=cwd)
        try:
            result = self._run("diff", "--cached", "HEAD", check=False, cwd=cwd)
            return result.stdout if result.returncode == 0 else ""
        finally:
            self._run("reset", "HEAD", check=False, cwd=cwd)

    def changed_files(self, branch: str) -> List[str]:
        """Files a branch changes relative to trunk."""
        result = self._run("diff", "--name-only", f"{self.trunk}...{branch}", check=False)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def changed_files_between(self, base: str, head: str) -> List[str]:
        result = self._run("diff", "--name-only", f"{base}..{head}", check=False)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    # ------------------------------------------------------------------
    # Worktrees and branches
    # ------------------------------------------------------------------

    def create_task_worktree(self, task_id: str) -> str:
        """Create an isolated worktree for a task and return its path.

        The branch is created from trunk only if it does not exist, so a
        requeued task keeps the commits of its earlier attempts.
        """
        branch = self.branch_name(task_id)
        wt_path = self.worktree_path(task_id)
        self.ensure_data_dir_excluded()
        if not self.branch_exists(branch):
            self._run("branch", branch, self.trunk)
        self.remove_task_worktree(task_id)
        Path(wt_path).parent.mkdir(parents=True, exist_ok=True)
        self._run("worktree", "add", wt_path, branch)
        logger.info("Created worktree %s on %s", wt_path, branch)
        return wt_path

    def ensure_data_dir_excluded(self) -> None:
        """Keep prompt/result files out of commits via the shared info/exclude."""
        common = self._run("rev-parse", "--git-common-dir").stdout.strip()
        common_path = Path(common)
        if not common_path.is_absolute():
            common_path = Path(self.repo_dir) / common_path
        exclude = common_path / "info" / "exclude"
        pattern = f"/{self.data_dir_name}/"
        existing = exclude.read_text() if exclude.exists() else ""
        if pattern in existing.splitlines():
            return
        exclude.parent.mkdir(parents=True, exist_ok=True)
        with open(exclude, "a") as f:
            if existing and not existing.endswith("\n"):
                f.write("\n")
            f.write(pattern + "\n")

    def remove_task_worktree(self, task_id: str, path: Optional[str] = None) -> None:
        """Remove a task's worktree, falling back to rmtree if git refuses."""
        wt_path = path or self.worktree_path(task_id)
        self._run("worktree", "remove", "--force", wt_path, check=False)
        if Path(wt_path).exists():
            shutil.rmtree(wt_path, ignore_errors=True)
        self.prune_worktrees()

    def delete_branch(self, branch: str, force: bool = True) -> None:
        flag = "-D" if force else "-d"
        result = self._run("branch", flag, branch, check=False)
        if result.returncode != 0:
            logger.debug("Branch %s not deleted: %s", branch, result.stderr.strip())

    def prune_worktrees(self) -> None:
        """Clean up stale worktree references."""
        self._run("worktree", "prune", check=False, timeout=30)

    def list_worktree_dirs(self) -> List[str]:
        base = Path(self.worktree_base)
        if not base.exists():
            return []
        return sorted(str(p) for p in base.iterdir() if p.is_dir())

    def commit_wip(self, cwd: str, task_id: str) -> bool:
        """Commit any uncommitted changes in a worktree as ``WIP: <task_id>``."""
        if not Path(cwd).exists():
            return False
        try:
            if not self.has_uncommitted_changes(cwd):
                return False
            self._run("add", "-A", cwd=cwd)
            self._run("commit", "--no-verify", "-m", f"WIP: {task_id}",
                      cwd=cwd, timeout=GIT_COMMIT_TIMEOUT)
            logger.info("Committed work in progress for %s", task_id)
            return True
        except GitCommandError as e:
            logger.warning("commit_wip failed for %s: %s", task_id, (e.stderr or "").strip())
            return False

    # ------------------------------------------------------------------
    # Integration
    # ------------------------------------------------------------------

    def ensure_on_trunk(self) -> None:
        current = self.get_current_branch()
        if current != self.trunk:
            logger.warning("Main checkout on %s, switching back to %s", current, self.trunk)
            self._run("checkout", self.trunk)

    def fetch_trunk(self) -> bool:
        """Update the remote-tracking trunk ref. Local trunk is left alone."""
        if not self.has_remote():
            return False
        fetched = self._run_with_retry("fetch", self.remote, self.trunk, timeout=GIT_NETWORK_TIMEOUT)
        if fetched.returncode != 0:
            logger.warning("fetch %s %s failed: %s", self.remote, self.trunk, fetched.stderr.strip())
            return False
        return True

    def sync_trunk_from_remote(self) -> bool:
        """Fast-forward the local trunk to its upstream. Best effort.

        Moves trunk, so callers must be on the integration queue thread.
        """
        if not self.fetch_trunk():
            return False
        upstream = f"{self.remote}/{self.trunk}"
        if self.get_current_branch() == self.trunk:
            result = self._run("merge", "--ff-only", upstream, check=False)
        else:
            result = self._run("fetch", ".", f"{upstream}:{self.trunk}", check=False)
        if result.returncode != 0:
            logger.warning("Could not fast-forward %s to %s: %s",
                           self.trunk, upstream, result.stderr.strip())
            return False
        return True

    def contains_trunk(self, branch: str) -> bool:
        """True when ``branch`` already has every commit on local trunk."""
        result = self._run("merge-base", "--is-ancestor", self.trunk, branch, check=False)
        return result.returncode == 0

    def rebase_onto_trunk(self, cwd: str) -> None:
        """Rebase the worktree's branch onto local trunk. Only the worktree moves.

        Raises RebaseConflictError when the rebase stops on conflicts; the
        worktree is then left mid-rebase for the caller to continue or abort.
        """
        result = self._run("rebase", self.trunk, check=False, cwd=cwd)
        if result.returncode == 0:
            return
        if self.is_rebase_in_progress(cwd):
            raise RebaseConflictError(self.conflicted_files(cwd))
        raise self._fail("rebase", result)

    def rebase_continue(self, cwd: Optional[str] = None) -> None:
        self._run("add", "-A", cwd=cwd)
        result = self._run("-c", "core.editor=true", "rebase", "--continue", check=False, cwd=cwd)
        if result.returncode != 0:
            raise self._fail("rebase --continue", result)

    def rebase_abort(self, cwd: Optional[str] = None) -> None:
        self._run("rebase", "--abort", check=False, cwd=cwd)

    def merge_to_trunk(self, branch: str, message: str) -> str:
        """Merge a task branch into trunk in the main checkout. Returns the new trunk head.

        Raises MergeConflictError on conflicts (repository left mid-merge).
        """
        self.ensure_on_trunk()
        result = self._run("merge", "--no-edit", "-m", message, branch, check=False)
        if result.returncode == 0:
            return self.get_head()
        conflicts = self.conflicted_files()
        if conflicts or self.is_merge_in_progress():
            raise MergeConflictError(conflicts)
        raise self._fail("merge", result)

    def conclude_merge(self) -> str:
        """Commit a merge whose conflicts were resolved in the main checkout."""
        self._run("add", "-A")
        result = self._run("commit", "--no-edit", check=False, timeout=GIT_COMMIT_TIMEOUT)
        if result.returncode != 0:
            raise self._fail("commit", result)
        return self.get_head()

    def abort_merge(self) -> None:
        self._run("merge", "--abort", check=False)

    def abort_in_progress(self) -> bool:
        """Abort any merge or rebase left in the main checkout. Returns True if one was found."""
        found = False
        if self.is_rebase_in_progress():
            self.rebase_abort()
            found = True
        if self.is_merge_in_progress() or self.conflicted_files():
            self.abort_merge()
            found = True
        return found

    def push_trunk(self) -> None:
        """Fetch, rebase local trunk onto its upstream, then push.

        Raises RebaseConflictError when the upstream moved and the rebase
        conflicts; the main checkout is left mid-rebase.
        """
        fetched = self._run_with_retry("fetch", self.remote, self.trunk, timeout=GIT_NETWORK_TIMEOUT)
        if fetched.returncode != 0:
            logger.warning("push_trunk: fetch failed, pushing anyway: %s", fetched.stderr.strip())
        else:
            result = self._run("rebase", f"{self.remote}/{self.trunk}", check=False)
            if result.returncode != 0:
                if self.is_rebase_in_progress():
                    raise RebaseConflictError(self.conflicted_files())
                raise self._fail("rebase", result)
        self.push_trunk_to_remote()

    def push_trunk_to_remote(self) -> None:
        result = self._run_with_retry("push", self.remote, self.trunk, timeout=GIT_NETWORK_TIMEOUT)
        if result.returncode != 0:
            raise self._fail("push", result)
        logger.info("Pushed %s to %s", self.trunk, self.remote)
