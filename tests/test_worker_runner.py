"""Tests for worker_runner.py: worker processes and result files."""

import json
import subprocess
import threading
from pathlib import Path

import pytest

import worker_runner
from config_schema import WorkerConfig
from worker_runner import (
    ROLE_CODER,
    ROLE_REVIEWER,
    AdoptedWorkerHandle,
    ProcessWorkerHandle,
    WorkerInvoker,
    WorkerSpawnError,
    active_dir,
    read_result,
)


class TestReadResult:
    def test_missing_file(self, tmp_path):
        assert read_result(tmp_path / "result.json") is None

    def test_empty_file(self, tmp_path):
        path = tmp_path / "result.json"
        path.write_text("  \n")
        assert read_result(path) is None

    def test_malformed_json(self, tmp_path):
        path = tmp_path / "result.json"
        path.write_text("{oops")
        assert read_result(path) is None

    def test_missing_status(self, tmp_path):
        path = tmp_path / "result.json"
        path.write_text(json.dumps({"summary": "did things"}))
        assert read_result(path) is None

    def test_normalizes_aliases_and_status(self, tmp_path):
        path = tmp_path / "result.json"
        path.write_text(json.dumps({
            "status": " Success ",
            "summary": "done",
            "filesChanged": ["a.py"],
            "testsPassed": True,
        }))
        result = read_result(path)
        assert result["status"] == "success"
        assert result["files_changed"] == ["a.py"]
        assert result["tests_passed"] is True
        assert "filesChanged" not in result


class TestProcessWorkerHandle:
    def test_streams_output_and_reports_exit(self, tmp_path):
        lines = []
        exits = []
        exit_seen = threading.Event()
        result_path = tmp_path / "result.json"
        handle = ProcessWorkerHandle(
            role=ROLE_CODER,
            command=["sh", "-c", f"echo one; echo two; echo '{{\"status\": \"success\"}}' > {result_path}"],
            cwd=str(tmp_path),
            result_path=result_path,
            on_output=lines.append,
            on_exit=lambda rc: (exits.append(rc), exit_seen.set()),
        ).start()
        assert handle.wait(10)
        assert exit_seen.wait(5)
        assert handle.pid is not None
        assert handle.returncode == 0
        assert [l.strip() for l in lines] == ["one", "two"]
        assert exits == [0]
        assert handle.read_result()["status"] == "success"
        assert handle.output.empty()

    def test_without_callback_keeps_bounded_tail(self, tmp_path, monkeypatch):
        monkeypatch.setattr(worker_runner, "OUTPUT_TAIL_LINES", 5)
        handle = ProcessWorkerHandle(
            role=ROLE_CODER, command=["sh", "-c", "for i in $(seq 1 50); do echo line$i; done"],
            cwd=str(tmp_path), result_path=tmp_path / "result.json",
        ).start()
        assert handle.wait(10)
        kept = []
        while not handle.output.empty():
            kept.append(handle.output.get_nowait().strip())
        assert kept == [f"line{i}" for i in range(46, 51)]

    def test_nonzero_exit(self, tmp_path):
        handle = ProcessWorkerHandle(
            role=ROLE_CODER, command=["sh", "-c", "exit 3"],
            cwd=str(tmp_path), result_path=tmp_path / "result.json",
        ).start()
        assert handle.wait(10)
        assert handle.returncode == 3
        assert handle.read_result() is None

    def test_kill(self, tmp_path):
        handle = ProcessWorkerHandle(
            role=ROLE_CODER, command=["sleep", "30"],
            cwd=str(tmp_path), result_path=tmp_path / "result.json",
        ).start()
        handle.kill()
        assert handle.wait(10)
        assert handle.killed
        assert handle.returncode != 0

    def test_hard_timeout_kills(self, tmp_path):
        handle = ProcessWorkerHandle(
            role=ROLE_REVIEWER, command=["sleep", "30"],
            cwd=str(tmp_path), result_path=tmp_path / "result.json", timeout=0.2,
        ).start()
        assert handle.wait(10)
        assert handle.killed

    def test_spawn_failure(self, tmp_path):
        handle = ProcessWorkerHandle(
            role=ROLE_CODER, command=["/nonexistent/agent-cli"],
            cwd=str(tmp_path), result_path=tmp_path / "result.json",
        )
        with pytest.raises(WorkerSpawnError):
            handle.start()


class TestAdoptedWorkerHandle:
    def test_detects_exit(self, tmp_path):
        proc = subprocess.Popen(["sleep", "30"], start_new_session=True)
        exits = []
        exit_seen = threading.Event()
        handle = AdoptedWorkerHandle(
            ROLE_CODER, proc.pid, tmp_path / "result.json", poll_interval=0.05,
            on_exit=lambda rc: (exits.append(rc), exit_seen.set()),
        ).start()
        assert not handle.wait(0.2)
        proc.terminate()
        proc.wait()
        assert handle.wait(5)
        assert exit_seen.wait(5)
        assert exits == [None]
        assert handle.returncode is None

    def test_kill(self, tmp_path):
        proc = subprocess.Popen(["sleep", "30"], start_new_session=True)
        handle = AdoptedWorkerHandle(ROLE_CODER, proc.pid, tmp_path / "result.json", poll_interval=0.05)
        handle.kill()
        proc.wait(timeout=5)
        assert handle.killed
        assert proc.returncode != 0

    def test_stop_watching(self, tmp_path):
        proc = subprocess.Popen(["sleep", "30"], start_new_session=True)
        try:
            handle = AdoptedWorkerHandle(
                ROLE_CODER, proc.pid, tmp_path / "result.json", poll_interval=0.05,
            ).start()
            handle.stop_watching()
            assert not handle.wait(0.2)
        finally:
            proc.kill()
            proc.wait()


class TestWorkerInvoker:
    def test_build_command(self):
        invoker = WorkerInvoker(WorkerConfig(command="agent", model="opus", max_turns=7, extra_args=["--verbose"]))
        assert invoker._build_command("do it") == [
            "agent", "-p", "do it", "--model", "opus", "--max-turns", "7", "--verbose",
        ]

    def test_prepare_writes_prompt_and_clears_stale_result(self, tmp_path):
        invoker = WorkerInvoker(WorkerConfig())
        task_dir = active_dir(str(tmp_path), "proj-1")
        task_dir.mkdir(parents=True)
        (task_dir / "result.json").write_text('{"status": "success"}')

        result_path = invoker.prepare(ROLE_CODER, "the prompt", str(tmp_path), "proj-1")

        assert result_path == tmp_path / ".autosprint" / "active" / "proj-1" / "result.json"
        assert not result_path.exists()
        assert (task_dir / "prompt.md").read_text() == "the prompt"
        assert invoker.result_path_for(str(tmp_path), "proj-1") == result_path

    def test_spawn_sets_environment(self, tmp_path, monkeypatch):
        invoker = WorkerInvoker(WorkerConfig(timeout_seconds=30))
        script = 'echo "{\\"status\\": \\"$AUTOSPRINT_ROLE\\", \\"task\\": \\"$AUTOSPRINT_TASK_ID\\"}" > "$AUTOSPRINT_RESULT_FILE"'
        monkeypatch.setattr(invoker, "_build_command", lambda prompt: ["sh", "-c", script])

        result = invoker.run_to_completion(ROLE_REVIEWER, "p", str(tmp_path), "proj-2")

        assert result == {"status": "reviewer", "task": "proj-2"}

    def test_adopt_points_at_result_path(self, tmp_path):
        invoker = WorkerInvoker(WorkerConfig())
        proc = subprocess.Popen(["true"])
        proc.wait()
        handle = invoker.adopt(ROLE_CODER, proc.pid, str(tmp_path), "proj-3", poll_interval=0.05)
        assert handle.wait(5)
        assert handle.result_path == Path(tmp_path) / ".autosprint" / "active" / "proj-3" / "result.json"
