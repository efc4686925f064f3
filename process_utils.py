"""Process-group helpers shared by git, validation, hooks and worker handles.

Every child is started in its own session so that a kill also reaches
whatever it spawned (shells, test runners, agent subprocesses). Crash
recovery only has a pid to go on, so liveness and kill work without a
Popen object as well.
"""

from __future__ import annotations

import errno
import os
import signal
import subprocess
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

# Seconds to wait for a killed child to be reaped and its pipes drained.
REAP_TIMEOUT = 5


@dataclass
class RunResult:
    """Outcome of run_with_group_kill(); quacks like CompletedProcess."""
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


def pid_alive(pid: Optional[int]) -> bool:
    """Return True if a process with this pid exists.

    Signal 0 runs the existence and permission checks without delivering
    anything. EPERM means the process is there but owned by someone else.
    """
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except OSError as e:
        return e.errno == errno.EPERM
    return True


def _signal_group(pid: int, sig: int) -> bool:
    try:
        os.killpg(os.getpgid(pid), sig)
    except (OSError, ProcessLookupError):
        return False
    return True


def kill_pid_group(pid: int) -> None:
    """SIGKILL the group led by pid, or pid alone when its group is gone."""
    if _signal_group(pid, signal.SIGKILL):
        return
    try:
        os.kill(pid, signal.SIGKILL)
    except (OSError, ProcessLookupError):
        pass


def kill_process_group(proc: subprocess.Popen) -> None:
    """Kill a child we spawned together with its group, then reap it."""
    _signal_group(proc.pid, signal.SIGKILL)
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=REAP_TIMEOUT)
    except (subprocess.TimeoutExpired, OSError):
        pass


def _drain(proc: subprocess.Popen) -> Tuple[str, str]:
    try:
        out, err = proc.communicate(timeout=REAP_TIMEOUT)
    except (subprocess.TimeoutExpired, OSError, ValueError):
        return "", ""
    return out or "", err or ""


def run_with_group_kill(
    command,
    *,
    shell: bool = False,
    cwd: Optional[str] = None,
    timeout: Optional[float] = None,
    env: Optional[Mapping[str, str]] = None,
) -> RunResult:
    """Run a command to completion in a fresh session.

    ``env`` is layered over the current environment. On timeout the whole
    session is killed and whatever output it produced is returned behind a
    ``[TIMEOUT after Ns]`` marker, with returncode -1 and ``timed_out`` set.
    """
    child_env = None
    if env:
        child_env = dict(os.environ)
        child_env.update(env)
    proc = subprocess.Popen(
        command,
        shell=shell,
        cwd=cwd,
        env=child_env,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        start_new_session=True,
    )
    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        kill_process_group(proc)
        stdout, stderr = _drain(proc)
        marker = f"[TIMEOUT after {timeout}s] "
        return RunResult(
            returncode=-1,
            stdout=marker + stdout,
            stderr=marker + stderr if stderr else "",
            timed_out=True,
        )
    return RunResult(returncode=proc.returncode, stdout=stdout or "", stderr=stderr or "")
