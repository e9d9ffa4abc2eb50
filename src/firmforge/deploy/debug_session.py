"""
Debug session bootstrap.

Starts a GDB server bound to the probe (OpenOCD, ST-LINK_gdbserver or
pyOCD), then attaches arm-none-eabi-gdb to it with the artifact loaded. The
probe lock is held for the whole session and released by stop().
"""

import logging
import time
from pathlib import Path
from typing import List, Optional, Union

from ..build.orchestrator import Artifact
from ..config import DebugServerConfig
from ..process import ProcessHandle, ProcessRunner
from .probe_lock import ProbeLock, ResourceBusyError

logger = logging.getLogger(__name__)

DEFAULT_SERVER_TOOLS = {
    "openocd": "openocd",
    "stlink": "ST-LINK_gdbserver",
    "pyocd": "pyocd",
}
DEFAULT_GDB = "arm-none-eabi-gdb"
SERVER_LOG_NAME = "debug-server.log"

_POLL_INTERVAL = 0.05


class DebugSessionError(Exception):
    """The debug server or the debugger client could not be started.

    Attributes:
        stage: 'debug-server' or 'debug-client'
        output: What the failing process printed, unmodified
        returncode: Exit code, when the process started and then exited
    """

    def __init__(self, message: str, stage: str, output: str = "", returncode: Optional[int] = None):
        super().__init__(message)
        self.stage = stage
        self.output = output
        self.returncode = returncode


def server_command(config: DebugServerConfig) -> List[str]:
    """Command line for the GDB server described by config."""
    tool = config.server_path or DEFAULT_SERVER_TOOLS[config.server]
    if config.server == "openocd":
        cmd = [tool]
        for script in config.openocd_scripts():
            cmd.extend(["-f", script])
        cmd.extend(["-c", f"gdb_port {config.gdb_port}"])
    elif config.server == "stlink":
        cmd = [tool, "-p", str(config.gdb_port)]
        if config.interface == "swd":
            cmd.append("-d")
    else:
        cmd = [tool, "gdbserver", "--port", str(config.gdb_port), "--target", config.chip.lower()]
    cmd.extend(config.server_args)
    return cmd


def client_command(elf_path: Path, gdb_port: int, gdb_path: str) -> List[str]:
    """gdb command line that attaches to the server, halts the core and loads the image."""
    return [
        gdb_path,
        str(elf_path),
        "-ex",
        f"target extended-remote localhost:{gdb_port}",
        "-ex",
        "monitor reset halt",
        "-ex",
        "load",
    ]


class DebugSession:
    """
    A running debug server plus attached gdb client.

    Holds the probe lock until stop() is called. stop() is idempotent.

    Example usage:
        with bootstrap.start(artifact, server_config) as session:
            session.wait()
    """

    def __init__(
        self,
        artifact_path: Path,
        config: DebugServerConfig,
        server: ProcessHandle,
        client: ProcessHandle,
        probe_lock: ProbeLock,
    ):
        self.artifact_path = artifact_path
        self.config = config
        self.server = server
        self.client = client
        self._probe_lock = probe_lock
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def wait(self) -> int:
        """Block until the gdb client exits, then stop the server.

        Returns:
            The client's exit code
        """
        while True:
            try:
                returncode = self.client.wait()
                break
            except KeyboardInterrupt:
                # Ctrl-C is gdb's: it halts the target, the session goes on
                logger.debug("Interrupt forwarded to debugger")
        logger.info(f"Debugger exited with code {returncode}")
        self.stop()
        return returncode

    def stop(self) -> None:
        """Terminate client then server (with their child processes) and release the probe."""
        if self._stopped:
            return
        self._stopped = True
        try:
            self.client.terminate()
            self.server.terminate()
        finally:
            self._probe_lock.release()
        logger.info("Debug session stopped")

    def __enter__(self) -> "DebugSession":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()


class DebugSessionBootstrap:
    """Starts debug sessions on the shared hardware probe."""

    def __init__(
        self,
        probe_lock: ProbeLock,
        runner: Optional[ProcessRunner] = None,
        startup_timeout: float = 1.0,
        gdb_path: Optional[str] = None,
    ):
        """
        Initialize debug session bootstrap.

        Args:
            probe_lock: Lock shared with the deployment driver
            runner: External process adapter
            startup_timeout: Seconds the server must stay up before gdb attaches
            gdb_path: Debugger client (default: launch config gdbPath, then arm-none-eabi-gdb)
        """
        self.probe_lock = probe_lock
        self.runner = runner or ProcessRunner()
        self.startup_timeout = startup_timeout
        self.gdb_path = gdb_path

    def start(self, artifact: Union[Artifact, Path], server_config: DebugServerConfig) -> DebugSession:
        """
        Start a debug server on the probe and attach a client to it.

        Raises:
            ResourceBusyError: The probe is held by a deployment or another debug session
            DebugSessionError: The server or client failed to start
        """
        elf_path = Path(getattr(artifact, "path", artifact))
        if not elf_path.is_file():
            raise DebugSessionError(
                f"Firmware not found at {elf_path}. Run 'firmforge build' first.", "debug-client"
            )

        self.probe_lock.acquire("debug", ResourceBusyError)
        try:
            server = self._start_server(elf_path, server_config)
            try:
                client = self._start_client(elf_path, server_config)
            except BaseException:
                server.terminate()
                raise
        except BaseException:
            self.probe_lock.release()
            raise

        logger.info(f"Debug session started (server PID {server.pid}, gdb PID {client.pid})")
        return DebugSession(elf_path, server_config, server, client, self.probe_lock)

    def _start_server(self, elf_path: Path, config: DebugServerConfig) -> ProcessHandle:
        cmd = server_command(config)
        log_file = elf_path.parent / SERVER_LOG_NAME
        logger.info(f"Starting {config.server} debug server on port {config.gdb_port}")
        try:
            server = self.runner.spawn(cmd, cwd=elf_path.parent, log_file=log_file)
        except OSError as e:
            raise DebugSessionError(f"Could not start debug server '{cmd[0]}': {e}", "debug-server") from e

        deadline = time.monotonic() + self.startup_timeout
        while True:
            returncode = server.poll()
            if returncode is not None:
                raise DebugSessionError(
                    f"Debug server exited during startup with code {returncode}",
                    "debug-server",
                    server.read_output(),
                    returncode,
                )
            if time.monotonic() >= deadline:
                return server
            time.sleep(_POLL_INTERVAL)

    def _start_client(self, elf_path: Path, config: DebugServerConfig) -> ProcessHandle:
        gdb = config.gdb_path or self.gdb_path or DEFAULT_GDB
        cmd = client_command(elf_path, config.gdb_port, gdb)
        try:
            return self.runner.spawn(cmd, cwd=elf_path.parent)
        except OSError as e:
            raise DebugSessionError(f"Could not start debugger '{gdb}': {e}", "debug-client") from e
