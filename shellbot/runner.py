from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import tempfile
import threading
import time
from typing import IO, Mapping

from .types import CommandOutcome
from .utils import one_line

logger = logging.getLogger(__name__)

DEFAULT_SHELL = "/bin/sh"
DEFAULT_MAX_OUTPUT_BYTES = 64 * 1024
TIMEOUT_EXIT_CODE = 124
NOT_EXECUTABLE_EXIT_CODE = 126
NOT_FOUND_EXIT_CODE = 127
CANCELLED_EXIT_CODE = 130
KILL_GRACE_SECONDS = 2.0


class ProcessRunner:
    def __init__(
        self,
        *,
        activate_venv: str | None = None,
        shell: str = DEFAULT_SHELL,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        kill_grace_seconds: float = KILL_GRACE_SECONDS,
    ) -> None:
        self.activate_venv = activate_venv
        self.shell = shell
        self.max_output_bytes = max(1, max_output_bytes)
        self.kill_grace_seconds = kill_grace_seconds
        self._live: dict[int, subprocess.Popen[bytes]] = {}
        self._lock = threading.Lock()
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> int:
        """Refuse new commands and kill the running ones; returns how many were signalled."""
        self._closed.set()
        return self.terminate_all()

    def activation_script(self) -> str | None:
        venv = (self.activate_venv or "").strip()
        if not venv:
            return None
        if venv.endswith("activate"):
            return venv
        return venv.rstrip("/") + "/bin/activate"

    def wrap_command(self, command: str) -> str:
        script = self.activation_script()
        if script is None:
            return command
        return f". {shlex.quote(script)} 2>/dev/null && {command}"

    def run(
        self,
        command: str,
        *,
        working_dir: str,
        timeout_seconds: float,
        env_overrides: Mapping[str, str] | None = None,
    ) -> CommandOutcome:
        if self._closed.is_set():
            logger.warning("Runner closed; not starting cmd=%s", one_line(command))
            return CommandOutcome(
                command=command,
                exit_code=CANCELLED_EXIT_CODE,
                stdout="",
                stderr="Command not started: the service is shutting down",
                duration_seconds=0.0,
                cancelled=True,
            )

        shell_command = self.wrap_command(command)
        env = dict(os.environ)
        env.update(env_overrides or {})

        logger.info(
            "Executing command cwd=%s timeout=%ss cmd=%s",
            working_dir,
            timeout_seconds,
            one_line(shell_command, 300),
        )
        started = time.perf_counter()

        with tempfile.TemporaryFile() as out_file, tempfile.TemporaryFile() as err_file:
            try:
                proc = subprocess.Popen(
                    [self.shell, "-c", shell_command],
                    cwd=working_dir,
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=out_file,
                    stderr=err_file,
                    start_new_session=True,
                )
            except OSError as exc:
                return self._spawn_failure(command, exc, started)

            with self._lock:
                self._live[proc.pid] = proc
            # close() may have taken its snapshot before this child was registered.
            if self._closed.is_set():
                self._signal_group(proc, signal.SIGKILL)

            timed_out = False
            try:
                exit_code = proc.wait(timeout=timeout_seconds)
            except subprocess.TimeoutExpired:
                timed_out = True
                self._kill_group(proc)
                exit_code = TIMEOUT_EXIT_CODE
            finally:
                with self._lock:
                    self._live.pop(proc.pid, None)

            duration = time.perf_counter() - started
            stdout, stdout_truncated = self._read_capped(out_file)
            stderr, stderr_truncated = self._read_capped(err_file)

        if exit_code < 0:
            exit_code = 128 + abs(exit_code)
        cancelled = self._closed.is_set() and exit_code != 0
        if cancelled:
            notice = "Command cancelled: the service is shutting down"
            stderr = f"{stderr.rstrip()}\n{notice}" if stderr.strip() else notice
            logger.warning("Command cancelled at shutdown exit_code=%s cmd=%s", exit_code, one_line(command))
        elif timed_out:
            exit_code = TIMEOUT_EXIT_CODE
            notice = f"Command timed out after {timeout_seconds:g} seconds"
            stderr = f"{stderr.rstrip()}\n{notice}" if stderr.strip() else notice
            logger.warning("Command timed out after %ss cmd=%s", timeout_seconds, one_line(command))
        elif exit_code == 0:
            logger.info("Command succeeded exit_code=0 duration=%.2fs", duration)
        else:
            logger.warning(
                "Command failed exit_code=%s duration=%.2fs stderr=%s",
                exit_code,
                duration,
                one_line(stderr, 500),
            )

        return CommandOutcome(
            command=command,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            duration_seconds=duration,
            timed_out=timed_out,
            cancelled=cancelled,
            stdout_truncated=stdout_truncated,
            stderr_truncated=stderr_truncated,
        )

    def terminate_all(self) -> int:
        """Kill every child process group still running; returns how many were signalled."""
        with self._lock:
            live = list(self._live.values())
        for proc in live:
            self._signal_group(proc, signal.SIGKILL)
        if live:
            logger.warning("Terminated %s in-flight command(s) at shutdown", len(live))
        return len(live)

    def active_count(self) -> int:
        with self._lock:
            return len(self._live)

    def _read_capped(self, handle: IO[bytes]) -> tuple[str, bool]:
        handle.seek(0, os.SEEK_END)
        size = handle.tell()
        handle.seek(0)
        data = handle.read(self.max_output_bytes)
        text = data.decode("utf-8", errors="replace")
        if size > self.max_output_bytes:
            return f"{text}\n... [truncated {size - self.max_output_bytes} bytes]", True
        return text, False

    def _kill_group(self, proc: subprocess.Popen[bytes]) -> None:
        self._signal_group(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=self.kill_grace_seconds)
        except subprocess.TimeoutExpired:
            self._signal_group(proc, signal.SIGKILL)
            proc.wait()
        else:
            # The shell may exit on SIGTERM while its children ignore it.
            self._signal_group(proc, signal.SIGKILL)

    def _signal_group(self, proc: subprocess.Popen[bytes], sig: signal.Signals) -> None:
        try:
            os.killpg(proc.pid, sig)
        except (ProcessLookupError, PermissionError):
            pass

    def _spawn_failure(self, command: str, exc: OSError, started: float) -> CommandOutcome:
        if isinstance(exc, PermissionError):
            exit_code = NOT_EXECUTABLE_EXIT_CODE
        elif isinstance(exc, (FileNotFoundError, NotADirectoryError)):
            exit_code = NOT_FOUND_EXIT_CODE
        else:
            exit_code = 1
        logger.error("Command failed to start exit_code=%s error=%s cmd=%s", exit_code, exc, one_line(command))
        return CommandOutcome(
            command=command,
            exit_code=exit_code,
            stdout="",
            stderr=f"Failed to start command: {exc}",
            duration_seconds=time.perf_counter() - started,
            spawn_failed=True,
        )
