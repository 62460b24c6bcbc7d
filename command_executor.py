"""Command executor: runs one approved command as a subprocess.

Public API:
    executor = CommandExecutor(timeout_seconds=30)
    observation = executor.run("lsof -i :80 -P -n")

The command is split with shlex and run without a shell. Output is returned
exactly as captured; the executor never retries and never rewrites output.
On timeout the process is killed and the Observation is flagged timed_out.
terminate() kills the in-flight process from another thread (cancellation).
Output is decoded as UTF-8; undecodable bytes become U+FFFD.
"""

import shlex
import subprocess
import threading
import time
from typing import Callable, Optional

from agent_models import ExecutionError, Observation


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_TIMEOUT_SECONDS = 30
EXIT_COMMAND_NOT_FOUND = 127
EXIT_PERMISSION_DENIED = 126

# Grace period for collecting output after a kill
_KILL_GRACE_SECONDS = 5


class CommandExecutor:
    def __init__(self, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS):
        if timeout_seconds is None or timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self._timeout = timeout_seconds
        self._lock = threading.Lock()
        self._process: Optional[subprocess.Popen] = None
        self._terminated = False

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    def run(self, command_str: str, should_cancel: Optional[Callable[[], bool]] = None) -> Observation:
        """Execute `command_str` and return its Observation.

        `should_cancel` is checked once the process is registered, so a cancel
        that lands while the process is starting still kills it.

        Raises ExecutionError only when the process cannot be started for a
        reason other than a missing binary or missing permission.
        """
        try:
            exec_args = shlex.split(command_str)
        except ValueError:
            exec_args = command_str.split()
        if not exec_args:
            raise ExecutionError("empty command")

        start_time = time.monotonic()
        try:
            proc = subprocess.Popen(
                exec_args,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                shell=False,
            )
        except FileNotFoundError:
            return Observation(
                stdout="",
                stderr=f"command not found: {exec_args[0]}",
                exit_code=EXIT_COMMAND_NOT_FOUND,
                duration_seconds=round(time.monotonic() - start_time, 3),
            )
        except PermissionError:
            return Observation(
                stdout="",
                stderr=f"permission denied: {exec_args[0]}",
                exit_code=EXIT_PERMISSION_DENIED,
                duration_seconds=round(time.monotonic() - start_time, 3),
            )
        except OSError as e:
            raise ExecutionError(f"could not start {exec_args[0]}: {e}") from e

        with self._lock:
            self._process = proc
            self._terminated = bool(should_cancel and should_cancel())
            kill_now = self._terminated
        if kill_now:
            proc.kill()

        timed_out = False
        try:
            stdout_str, stderr_str = proc.communicate(timeout=self._timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            proc.kill()
            stdout_str, stderr_str = self._drain(proc)
        finally:
            with self._lock:
                self._process = None
                cancelled = self._terminated

        duration = round(time.monotonic() - start_time, 3)
        return Observation(
            stdout=stdout_str or "",
            stderr=stderr_str or "",
            exit_code=None if timed_out else proc.returncode,
            duration_seconds=duration,
            timed_out=timed_out,
            cancelled=cancelled and not timed_out,
        )

    def terminate(self) -> bool:
        """Kill the in-flight process, if any. Returns True when one was killed."""
        with self._lock:
            proc = self._process
            if proc is None or proc.poll() is not None:
                return False
            self._terminated = True
        proc.kill()
        return True

    @staticmethod
    def _drain(proc: subprocess.Popen) -> tuple[str, str]:
        try:
            return proc.communicate(timeout=_KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            # Orphaned grandchildren can hold the pipes open
            return "", ""
