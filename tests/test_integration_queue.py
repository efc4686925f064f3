"""Tests for integration_queue.py: serialized trunk operations."""

import threading
import time
from unittest.mock import MagicMock

import pytest

from git_manager import GitError
from integration_queue import IntegrationQueue


@pytest.fixture
def git():
    mock = MagicMock()
    mock.conflicted_files.return_value = []
    mock.is_merge_in_progress.return_value = False
    return mock


@pytest.fixture
def queue(git):
    q = IntegrationQueue(git, project_id="proj", max_retries=2, retry_delay=0)
    yield q
    q.stop(timeout=5)


class TestSerialization:
    def test_jobs_run_in_order_without_overlap(self, queue):
        order = []
        running = []
        overlaps = []

        def job(n):
            def run():
                running.append(n)
                if len(running) > 1:
                    overlaps.append(n)
                time.sleep(0.01)
                order.append(n)
                running.remove(n)
                return n
            return run

        futures = [queue.submit(f"job {n}", job(n)) for n in range(5)]
        assert [f.result(timeout=5) for f in futures] == [0, 1, 2, 3, 4]
        assert order == [0, 1, 2, 3, 4]
        assert overlaps == []

    def test_concurrent_submitters(self, queue):
        active = []
        max_active = []
        lock = threading.Lock()

        def run():
            with lock:
                active.append(1)
                max_active.append(len(active))
            time.sleep(0.005)
            with lock:
                active.pop()

        futures = []
        threads = [
            threading.Thread(target=lambda: futures.append(queue.submit("merge", run)))
            for _ in range(8)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        for f in futures:
            f.result(timeout=5)
        assert max(max_active) == 1


class TestErrors:
    def test_exception_reaches_future(self, queue):
        future = queue.submit("bad", MagicMock(side_effect=GitError("merge failed: conflict")))
        with pytest.raises(GitError):
            future.result(timeout=5)

    def test_transient_error_retried(self, queue):
        fn = MagicMock(side_effect=[GitError("fatal: Could not read from remote repository"), "ok"])
        assert queue.submit("flaky", fn).result(timeout=5) == "ok"
        assert fn.call_count == 2

    def test_transient_retries_exhausted(self, queue):
        fn = MagicMock(side_effect=GitError("connection reset"))
        with pytest.raises(GitError):
            queue.submit("down", fn).result(timeout=5)
        assert fn.call_count == 3

    def test_permanent_error_not_retried(self, queue):
        fn = MagicMock(side_effect=GitError("CONFLICT"))
        with pytest.raises(GitError):
            queue.submit("conflict", fn).result(timeout=5)
        assert fn.call_count == 1

    def test_queue_keeps_running_after_failure(self, queue):
        queue.submit("bad", MagicMock(side_effect=ValueError("x")))
        assert queue.submit("good", lambda: 42).result(timeout=5) == 42

    def test_leftover_conflict_aborted_before_job(self, queue, git):
        git.conflicted_files.return_value = ["a.py"]
        queue.submit("merge", lambda: None).result(timeout=5)
        git.abort_in_progress.assert_called()


class TestPush:
    def test_wait_for_push_blocks_until_done(self, queue):
        release = threading.Event()
        assert not queue.push_in_flight
        future = queue.submit_push("push", release.wait)
        assert queue.push_in_flight
        assert queue.wait_for_push(0.05) is False
        release.set()
        future.result(timeout=5)
        assert queue.wait_for_push(5) is True
        assert not queue.push_in_flight

    def test_push_failure_still_clears_in_flight(self, queue):
        future = queue.submit_push("push", MagicMock(side_effect=GitError("rejected")))
        with pytest.raises(GitError):
            future.result(timeout=5)
        assert queue.wait_for_push(5)

    def test_push_holds_mutex(self, queue):
        held = []

        def push():
            acquired = queue._push_lock.acquire(blocking=False)
            held.append(not acquired)
            if acquired:
                queue._push_lock.release()

        queue.submit_push("push", push).result(timeout=5)
        assert held == [True]


class TestLifecycle:
    def test_restart_after_stop(self, queue):
        assert queue.submit("a", lambda: 1).result(timeout=5) == 1
        queue.stop(timeout=5)
        assert queue.submit("b", lambda: 2).result(timeout=5) == 2

    def test_stop_without_start(self, git):
        IntegrationQueue(git).stop(timeout=1)
