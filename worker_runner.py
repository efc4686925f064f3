"""Spawn coding, review and merger workers and read the result files they write.

The orchestrator only sees ``WorkerHandle``: start it, kill it, drain its
output queue, wait on its exit event. ``ProcessWorkerHandle`` runs the
agent CLI in its own process group; ``AdoptedWorkerHandle`` watches a pid
left over from a previous orchestrator process.
"""

from __future__ import annotations

import json
import logging
import os
import queue
import subprocess
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from config_schema import WorkerConfig
from process_utils import kill_pid_group, kill_process_group, pid_alive
from timers import CancellableTimer

logger = logging.getLogger(__name__)

ROLE_CODER = "coder"
ROLE_REVIEWER = "reviewer"
ROLE_MERGER = "merger"

RESULT_FILENAME = "result.json"
PROMPT_FILENAME = "prompt.md"

# lines kept on WorkerHandle.output for callers without an on_output callback
OUTPUT_TAIL_LINES = 1000

_KEY_ALIASES = {
    "filesChanged": "files_changed",
    "testsWritten": "tests_written",
    "testsPassed": "tests_passed",
    "openQuestions": "open_questions",
}


class WorkerSpawnError(RuntimeError):
    """The worker process could not be started."""


def active_dir(base_dir: str, task_id: str, data_dir_name: str = ".autosprint") -> Path:
    return Path(base_dir) / data_dir_name / "active" / task_id


def read_result(path: Path) -> Optional[Dict[str, Any]]:
    """Read a worker's result.json. Missing, empty or malformed files give None."""
    try:
        text = Path(path).read_text().strip()
    except OSError:
        return None
    if not text:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning("Malformed result file %s: %s", path, e)
        return None
    if not isinstance(data, dict) or not isinstance(data.get("status"), str):
        logger.warning("Result file %s has no status field", path)
        return None
    normalized = {}
    for key, value in data.items():
        normalized[_KEY_ALIASES.get(key, key)] = value
    normalized["status"] = normalized["status"].strip().lower()
    return normalized


class WorkerHandle:
    """A running (or finished) worker.

    Consumers read output through the on_output callback given at spawn.
    Handles spawned without one keep the most recent OUTPUT_TAIL_LINES lines
    on the bounded `output` queue instead; older lines are dropped.
    """

    role: str = ""
    pid: Optional[int] = None
    returncode: Optional[int] = None
    result_path: Optional[Path] = None

    def __init__(self):
        self.output: "queue.Queue[str]" = queue.Queue(maxsize=OUTPUT_TAIL_LINES)
        self.exited = threading.Event()
        self.killed = False

    def start(self) -> "WorkerHandle":
        raise NotImplementedError

    def kill(self) -> None:
        raise NotImplementedError

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.exited.wait(timeout)

    def read_result(self) -> Optional[Dict[str, Any]]:
        if self.result_path is None:
            return None
        return read_result(self.result_path)

    def _keep_tail(self, line: str) -> None:
        while True:
            try:
                self.output.put_nowait(line)
                return
            except queue.Full:
                try:
                    self.output.get_nowait()
                except queue.Empty:
                    pass


class ProcessWorkerHandle(WorkerHandle):
    def __init__(
        self,
        role: str,
        command: List[str],
        cwd: str,
        result_path: Path,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        on_output: Optional[Callable[[str], None]] = None,
        on_exit: Optional[Callable[[Optional[int]], None]] = None,
    ):
        super().__init__()
        self.role = role
        self.command = command
        self.cwd = cwd
        self.result_path = result_path
        self.env = env
        self.timeout = timeout
        self.on_output = on_output
        self.on_exit = on_exit
        self._proc: Optional[subprocess.Popen] = None
        self._timeout_timer: Optional[CancellableTimer] = None

    def start(self) -> "ProcessWorkerHandle":
        try:
            self._proc = subprocess.Popen(
                self.command,
                cwd=self.cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                env=self.env,
                start_new_session=True,
            )
        except OSError as e:
            raise WorkerSpawnError(f"Failed to start {self.role} worker: {e}") from e
        self.pid = self._proc.pid
        logger.info("Started %s worker pid=%d in %s", self.role, self.pid, self.cwd)
        if self.timeout:
            self._timeout_timer = CancellableTimer(
                self.timeout, self._on_timeout, name=f"{self.role}-timeout",
            ).start()
        threading.Thread(
            target=self._pump, name=f"{self.role}-{self.pid}-output", daemon=True,
        ).start()
        return self

    def _on_timeout(self) -> None:
        logger.warning("%s worker pid=%s exceeded %ss, killing", self.role, self.pid, self.timeout)
        self.kill()

    def _pump(self) -> None:
        proc = self._proc
        assert proc is not None and proc.stdout is not None
        try:
            for line in proc.stdout:
                if self.on_output is None:
                    self._keep_tail(line)
                    continue
                try:
                    self.on_output(line)
                except Exception:
                    logger.exception("Output callback failed for %s worker", self.role)
        except (OSError, ValueError):
            pass
        finally:
            proc.wait()
            self.returncode = proc.returncode
            if self._timeout_timer is not None:
                self._timeout_timer.cancel()
            self.exited.set()
            logger.info("%s worker pid=%s exited rc=%s", self.role, self.pid, self.returncode)
            if self.on_exit is not None:
                try:
                    self.on_exit(self.returncode)
                except Exception:
                    logger.exception("Exit callback failed for %s worker", self.role)

    def kill(self) -> None:
        self.killed = True
        if self._proc is not None and self._proc.poll() is None:
            kill_process_group(self._proc)


class AdoptedWorkerHandle(WorkerHandle):
    """Watches a worker process started by a previous orchestrator process.

    There is no output stream and no exit code; only the exit event.
    """

    def __init__(
        self,
        role: str,
        pid: int,
        result_path: Path,
        poll_interval: float = 5.0,
        on_exit: Optional[Callable[[Optional[int]], None]] = None,
    ):
        super().__init__()
        self.role = role
        self.pid = pid
        self.result_path = result_path
        self.poll_interval = poll_interval
        self.on_exit = on_exit
        self._stop = threading.Event()

    def start(self) -> "AdoptedWorkerHandle":
        threading.Thread(target=self._poll, name=f"adopted-{self.pid}", daemon=True).start()
        return self

    def _poll(self) -> None:
        while pid_alive(self.pid):
            if self._stop.wait(self.poll_interval):
                return
        self.exited.set()
        logger.info("Adopted %s worker pid=%s has exited", self.role, self.pid)
        if self.on_exit is not None:
            try:
                self.on_exit(None)
            except Exception:
                logger.exception("Exit callback failed for adopted %s worker", self.role)

    def kill(self) -> None:
        self.killed = True
        if pid_alive(self.pid):
            kill_pid_group(self.pid)

    def stop_watching(self) -> None:
        self._stop.set()


class WorkerInvoker:
    """Builds agent CLI commands and spawns ProcessWorkerHandles."""

    def __init__(self, config: WorkerConfig, data_dir_name: str = ".autosprint"):
        self.config = config
        self.data_dir_name = data_dir_name

    def _build_command(self, prompt: str) -> List[str]:
        cmd = [
            self.config.command,
            "-p", prompt,
            "--model", self.config.model,
            "--max-turns", str(self.config.max_turns),
        ]
        cmd.extend(self.config.extra_args)
        return cmd

    def result_path_for(self, cwd: str, task_id: str) -> Path:
        return active_dir(cwd, task_id, self.data_dir_name) / RESULT_FILENAME

    def prepare(self, role: str, prompt: str, cwd: str, task_id: str) -> Path:
        """Write the prompt and clear any stale result. Returns the result path."""
        task_dir = active_dir(cwd, task_id, self.data_dir_name)
        task_dir.mkdir(parents=True, exist_ok=True)
        (task_dir / PROMPT_FILENAME).write_text(prompt)
        result_path = task_dir / RESULT_FILENAME
        try:
            result_path.unlink()
        except FileNotFoundError:
            pass
        return result_path

    def spawn(
        self,
        role: str,
        prompt: str,
        cwd: str,
        task_id: str,
        on_output: Optional[Callable[[str], None]] = None,
        on_exit: Optional[Callable[[Optional[int]], None]] = None,
    ) -> WorkerHandle:
        result_path = self.prepare(role, prompt, cwd, task_id)
        env = dict(os.environ)
        env["AUTOSPRINT_RESULT_FILE"] = str(result_path)
        env["AUTOSPRINT_TASK_ID"] = task_id
        env["AUTOSPRINT_ROLE"] = role
        handle = ProcessWorkerHandle(
            role=role,
            command=self._build_command(prompt),
            cwd=cwd,
            result_path=result_path,
            env=env,
            timeout=self.config.timeout_seconds,
            on_output=on_output,
            on_exit=on_exit,
        )
        return handle.start()

    def adopt(
        self,
        role: str,
        pid: int,
        cwd: str,
        task_id: str,
        poll_interval: float,
        on_exit: Optional[Callable[[Optional[int]], None]] = None,
    ) -> WorkerHandle:
        result_path = self.result_path_for(cwd, task_id)
        return AdoptedWorkerHandle(
            role=role, pid=pid, result_path=result_path,
            poll_interval=poll_interval, on_exit=on_exit,
        ).start()

    def run_to_completion(self, role: str, prompt: str, cwd: str, task_id: str) -> Optional[Dict[str, Any]]:
        """Spawn a worker, wait for it, and return its parsed result (merger runs)."""
        started = time.monotonic()
        handle = self.spawn(role, prompt, cwd, task_id)
        handle.wait()
        logger.info(
            "%s worker for %s finished in %.0fs (rc=%s)",
            role, task_id, time.monotonic() - started, handle.returncode,
        )
        return handle.read_result()
