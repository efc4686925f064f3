"""Project-wide FIFO for every operation that mutates trunk.

One daemon thread per project drains the queue, so merges and pushes never
overlap. A push additionally holds the push mutex and clears the
``push idle`` event while in flight, which lets a slot wait for an
outstanding push before it starts rebasing.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from git_manager import GitManager, is_transient_error

logger = logging.getLogger(__name__)

RETRY_DELAY_SECONDS = 2.0


@dataclass
class _Job:
    description: str
    fn: Callable[[], Any]
    future: Future = field(default_factory=Future)
    is_push: bool = False


_STOP = object()


class IntegrationQueue:
    def __init__(
        self,
        git: GitManager,
        project_id: str = "",
        max_retries: int = 2,
        retry_delay: float = RETRY_DELAY_SECONDS,
    ):
        self.git = git
        self.project_id = project_id
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._push_lock = threading.Lock()
        self._push_idle = threading.Event()
        self._push_idle.set()
        self._pending_pushes = 0
        self._state_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._started = False

    def start(self) -> "IntegrationQueue":
        with self._state_lock:
            if self._started:
                return self
            self._started = True
        self._thread = threading.Thread(
            target=self._drain, name=f"integration-{self.project_id}", daemon=True,
        )
        self._thread.start()
        return self

    def stop(self, timeout: Optional[float] = None) -> None:
        if not self._started:
            return
        self._queue.put(_STOP)
        if self._thread is not None:
            self._thread.join(timeout)
        if self._thread is None or not self._thread.is_alive():
            with self._state_lock:
                self._started = False

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    @property
    def push_in_flight(self) -> bool:
        return not self._push_idle.is_set()

    def wait_for_push(self, timeout: Optional[float] = None) -> bool:
        """Block while a push is queued or running. Returns False on timeout."""
        return self._push_idle.wait(timeout)

    def submit(self, description: str, fn: Callable[[], Any]) -> Future:
        """Queue a trunk-mutating job; the returned future resolves with its result."""
        job = _Job(description=description, fn=fn)
        self.start()
        self._queue.put(job)
        logger.debug("Queued %s (depth %d)", description, self.depth)
        return job.future

    def submit_push(self, description: str, fn: Callable[[], Any]) -> Future:
        """Queue a push. ``wait_for_push`` blocks from now until it finishes."""
        job = _Job(description=description, fn=fn, is_push=True)
        with self._state_lock:
            self._pending_pushes += 1
            self._push_idle.clear()
        self.start()
        self._queue.put(job)
        return job.future

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            try:
                self._run_job(item)
            finally:
                if item.is_push:
                    with self._state_lock:
                        self._pending_pushes -= 1
                        if self._pending_pushes == 0:
                            self._push_idle.set()

    def _run_job(self, job: _Job) -> None:
        if not job.future.set_running_or_notify_cancel():
            return
        attempt = 0
        while True:
            try:
                if self.git.conflicted_files() or self.git.is_merge_in_progress():
                    logger.warning(
                        "Unmerged paths in %s before %s, aborting leftover operation",
                        self.git.repo_dir, job.description,
                    )
                    self.git.abort_in_progress()
                if job.is_push:
                    with self._push_lock:
                        result = job.fn()
                else:
                    result = job.fn()
            except Exception as e:
                if attempt < self.max_retries and is_transient_error(str(e)):
                    attempt += 1
                    logger.warning(
                        "%s failed with transient error (retry %d/%d): %s",
                        job.description, attempt, self.max_retries, e,
                    )
                    time.sleep(self.retry_delay)
                    continue
                job.future.set_exception(e)
                return
            job.future.set_result(result)
            return
