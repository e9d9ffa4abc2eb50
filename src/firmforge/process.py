"""External process adapters.

This module wraps every external tool invocation (compiler, linker, size
tools, hardware programmer, debug server and client) behind a small typed
interface so the rest of firmforge never calls subprocess directly.

Design:
    - ProcessRunner.run() executes a command to completion and returns a
      ProcessResult with exit code and captured output
    - ProcessRunner.spawn() starts a long-running process (debug server,
      debugger client) and returns a ProcessHandle
    - Process trees are torn down with psutil so helper processes spawned
      by a debug server do not outlive the session
    - Tests replace the runner with a fake; no real toolchain is needed
"""

import logging
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

import psutil

logger = logging.getLogger(__name__)

CommandArg = Union[str, Path]

# Exit code reported when the executable itself cannot be found (shell convention)
COMMAND_NOT_FOUND = 127
# Exit code reported when the executable exists but cannot be started
COMMAND_NOT_EXECUTABLE = 126


@dataclass
class ProcessResult:
    """Result of running an external command to completion."""

    args: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, stderr last."""
        parts = [p for p in (self.stdout, self.stderr) if p]
        return "\n".join(p.rstrip("\n") for p in parts)


class ProcessHandle:
    """Handle to a spawned long-running process."""

    def __init__(
        self,
        args: List[str],
        popen: subprocess.Popen,
        log_file: Optional[Path] = None,
    ):
        self.args = args
        self.log_file = log_file
        self._popen = popen

    @property
    def pid(self) -> int:
        return self._popen.pid

    def poll(self) -> Optional[int]:
        """Return the exit code if the process has exited, else None."""
        return self._popen.poll()

    def wait(self, timeout: Optional[float] = None) -> int:
        return self._popen.wait(timeout=timeout)

    def read_output(self) -> str:
        """Return what the process wrote to its log file so far."""
        if self.log_file is None or not self.log_file.exists():
            return ""
        return self.log_file.read_text(encoding="utf-8", errors="replace")

    def terminate(self, timeout: float = 3.0) -> None:
        """Terminate the process and all of its children.

        Children are collected before the parent is signalled, then every
        process still alive after ``timeout`` seconds is killed.
        """
        if self._popen.poll() is not None:
            return

        try:
            root = psutil.Process(self._popen.pid)
            processes = root.children(recursive=True)
            processes.append(root)
        except psutil.NoSuchProcess:
            return

        for proc in processes:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _gone, alive = psutil.wait_procs(processes, timeout=timeout)
        for proc in alive:
            try:
                proc.kill()
                logger.warning(f"Force killed stubborn process {proc.pid}")
            except psutil.NoSuchProcess:
                pass

        # Reap the Popen object so no zombie is left behind
        try:
            self._popen.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Process {self._popen.pid} did not exit after kill")


class ProcessRunner:
    """Runs external commands on the build host."""

    def run(
        self,
        cmd: Sequence[CommandArg],
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None,
        shield_interrupts: bool = False,
    ) -> ProcessResult:
        """Run a command to completion and capture its output.

        Args:
            cmd: Command and arguments
            cwd: Working directory
            timeout: Seconds before the command is killed (None = no limit)
            shield_interrupts: Keep Ctrl-C away from the child and defer any
                KeyboardInterrupt until the child has exited. Used for
                operations that must not be interrupted mid-way, such as
                writing flash.

        Returns:
            ProcessResult with exit code and captured output. A missing
            executable is reported as exit code 127, one that cannot
            be started (permissions, bad format) as 126.
        """
        args = [str(c) for c in cmd]
        logger.debug(f"Running: {' '.join(args)}")

        try:
            popen = subprocess.Popen(
                args,
                cwd=str(cwd) if cwd else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                **_isolation_kwargs(shield_interrupts),
            )
        except FileNotFoundError as e:
            return ProcessResult(args=args, returncode=COMMAND_NOT_FOUND, stderr=str(e))
        except OSError as e:
            return ProcessResult(args=args, returncode=COMMAND_NOT_EXECUTABLE, stderr=str(e))

        interrupted = False
        while True:
            try:
                stdout, stderr = popen.communicate(timeout=timeout)
                break
            except subprocess.TimeoutExpired:
                popen.kill()
                stdout, stderr = popen.communicate()
                stderr = (stderr or "") + f"\nTimed out after {timeout}s"
                break
            except KeyboardInterrupt:
                if not shield_interrupts:
                    popen.kill()
                    popen.communicate()
                    raise
                logger.warning(
                    f"Interrupt received, waiting for {Path(args[0]).name} to finish"
                )
                interrupted = True

        result = ProcessResult(
            args=args,
            returncode=popen.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
        )
        if interrupted:
            raise DeferredInterrupt(result)
        return result

    def spawn(
        self,
        cmd: Sequence[CommandArg],
        cwd: Optional[Path] = None,
        log_file: Optional[Path] = None,
    ) -> ProcessHandle:
        """Start a long-running process.

        Without a log file the process inherits the terminal, so interactive
        clients (gdb) work. With one, stdout and stderr go to that file,
        which keeps chatty servers from filling a pipe.

        Raises:
            FileNotFoundError: If the executable does not exist
        """
        args = [str(c) for c in cmd]
        logger.debug(f"Spawning: {' '.join(args)}")

        if log_file is None:
            popen = subprocess.Popen(args, cwd=str(cwd) if cwd else None, text=True)
            return ProcessHandle(args, popen)

        log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(log_file, "w", encoding="utf-8") as log:
            popen = subprocess.Popen(
                args,
                cwd=str(cwd) if cwd else None,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                text=True,
            )
        return ProcessHandle(args, popen, log_file)


class DeferredInterrupt(KeyboardInterrupt):
    """KeyboardInterrupt raised only after a shielded command finished.

    Carries the command's result so the caller can still report it.
    """

    def __init__(self, result: ProcessResult):
        super().__init__("interrupted")
        self.result = result


def _isolation_kwargs(shield_interrupts: bool) -> dict:
    if not shield_interrupts:
        return {}
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}

