"""
Firmware deployment module for flashing ARM Cortex-M devices.

This module handles writing a built ELF to the target through a hardware
probe, using STM32CubeProgrammer (STM32_Programmer_CLI) or OpenOCD.

A flash write is never retried automatically: after a failed or partial
write the device state is unknown, so retrying is left to the user.
"""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

from ..build.orchestrator import Artifact
from ..config import ConfigurationError
from ..process import COMMAND_NOT_FOUND, DeferredInterrupt, ProcessRunner
from .probe_detect import detect_probe_serial
from .probe_lock import BusyError, ProbeLock

logger = logging.getLogger(__name__)

SUPPORTED_PROGRAMMERS = ("stm32cubeprogrammer", "openocd")
SUPPORTED_INTERFACES = ("SWD", "JTAG")

DEFAULT_TOOLS = {
    "stm32cubeprogrammer": "STM32_Programmer_CLI",
    "openocd": "openocd",
}

# Flashing a large image over a slow probe can take a while
DEFAULT_DEPLOY_TIMEOUT = 300.0


class DeploymentError(Exception):
    """Raised when deployment operations fail.

    Attributes:
        stage: Always 'deploy'
        returncode: Programmer exit code, if the programmer ran
        output: Programmer output, unmodified
    """

    def __init__(
        self,
        message: str,
        returncode: Optional[int] = None,
        output: str = "",
        stage: str = "deploy",
    ):
        super().__init__(message)
        self.stage = stage
        self.returncode = returncode
        self.output = output


class DeploymentCancelledError(DeploymentError):
    """The deployment was cancelled before the programmer was started."""

    pass


@dataclass(frozen=True)
class ProgrammerConfig:
    """How to reach the device: which flashing tool, probe and interface."""

    kind: str = "stm32cubeprogrammer"
    tool: Optional[str] = None
    interface: str = "SWD"
    serial: Optional[str] = None
    frequency_khz: Optional[int] = None
    openocd_scripts: Tuple[str, ...] = ()

    def __post_init__(self):
        kind = self.kind.strip().lower()
        if kind not in SUPPORTED_PROGRAMMERS:
            raise ConfigurationError(
                f"Unsupported programmer '{self.kind}'. "
                + f"Supported: {', '.join(SUPPORTED_PROGRAMMERS)}"
            )
        object.__setattr__(self, "kind", kind)
        object.__setattr__(self, "tool", self.tool or DEFAULT_TOOLS[kind])
        object.__setattr__(self, "interface", validate_interface(self.interface))
        object.__setattr__(self, "openocd_scripts", tuple(self.openocd_scripts))

    @classmethod
    def from_settings(cls, settings: Dict[str, str]) -> "ProgrammerConfig":
        """
        Create a programmer config from the [programmer] section.

        Recognized keys: kind, tool, interface, serial, frequency (kHz),
        scripts (whitespace separated OpenOCD config files).
        """
        frequency = settings.get("frequency")
        if frequency is not None:
            try:
                frequency_khz: Optional[int] = int(frequency)
            except ValueError:
                raise ConfigurationError(
                    f"Invalid programmer frequency '{frequency}' (expected kHz as an integer)"
                ) from None
        else:
            frequency_khz = None

        return cls(
            kind=settings.get("kind", "stm32cubeprogrammer"),
            tool=settings.get("tool"),
            interface=settings.get("interface", "SWD"),
            serial=settings.get("serial"),
            frequency_khz=frequency_khz,
            openocd_scripts=tuple(settings.get("scripts", "").split()),
        )

    def command(
        self,
        elf_path: Path,
        interface: str,
        reset_after: bool = True,
        serial: Optional[str] = None,
    ) -> List[str]:
        """
        Programmer command line that writes and verifies elf_path.

        Args:
            elf_path: Firmware image
            interface: 'SWD' or 'JTAG'
            reset_after: Reset and run the target after programming
            serial: Probe serial number (first probe when None)
        """
        if self.kind == "openocd":
            return self._openocd_command(elf_path, reset_after, serial)

        connect = ["-c", f"port={interface}"]
        if serial:
            connect.append(f"sn={serial}")
        if self.frequency_khz:
            connect.append(f"freq={self.frequency_khz}")

        cmd = [self.tool, *connect, "-w", str(elf_path), "-v"]
        if reset_after:
            cmd.append("-rst")
        return cmd

    def _openocd_command(self, elf_path: Path, reset_after: bool, serial: Optional[str]) -> List[str]:
        if not self.openocd_scripts:
            raise ConfigurationError(
                "OpenOCD programmer needs config scripts: set [programmer] scripts, "
                + "e.g. 'interface/stlink.cfg target/stm32f4x.cfg'"
            )
        cmd = [self.tool]
        for script in self.openocd_scripts:
            cmd.extend(["-f", script])
        if serial:
            cmd.extend(["-c", f"adapter serial {serial}"])
        if self.frequency_khz:
            cmd.extend(["-c", f"adapter speed {self.frequency_khz}"])

        # OpenOCD parses the program command as Tcl, so always forward slashes
        program = f"program {Path(elf_path).as_posix()} verify"
        if reset_after:
            program += " reset"
        program += " exit"
        cmd.extend(["-c", program])
        return cmd


def validate_interface(interface: str) -> str:
    normalized = (interface or "").strip().upper()
    if normalized not in SUPPORTED_INTERFACES:
        raise ConfigurationError(
            f"Unsupported debug interface '{interface}'. "
            + f"Supported: {', '.join(SUPPORTED_INTERFACES)}"
        )
    return normalized


class DeploymentSession:
    """
    One flash operation on one artifact.

    cancel() can be called from any thread. Before the programmer starts it
    aborts the deployment; once the write is in flight the request is only
    recorded and honoured after the programmer returns.
    """

    def __init__(self, artifact_path: Path):
        self.artifact_path = Path(artifact_path)
        self._cancelled = threading.Event()
        self.in_flight = False

    def cancel(self) -> None:
        if self.in_flight:
            logger.warning("Cancellation requested during flash write; finishing the write first")
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()


@dataclass
class DeploymentResult:
    """Result of a firmware deployment operation."""

    success: bool
    returncode: int
    artifact_path: Path
    command: List[str] = field(default_factory=list)
    stdout: str = ""
    stderr: str = ""
    cancelled: bool = False


class DeploymentDriver:
    """Flashes artifacts through the shared hardware probe."""

    def __init__(
        self,
        programmer: ProgrammerConfig,
        probe_lock: ProbeLock,
        runner: Optional[ProcessRunner] = None,
        timeout: float = DEFAULT_DEPLOY_TIMEOUT,
        probe_detector: Callable[[], Optional[str]] = detect_probe_serial,
    ):
        """Initialize deployment driver.

        Args:
            programmer: Programmer tool and probe settings
            probe_lock: Lock shared with debug sessions
            runner: External process adapter
            timeout: Seconds before the programmer is killed
            probe_detector: Returns a probe serial when none is configured
        """
        self.programmer = programmer
        self.probe_lock = probe_lock
        self.runner = runner or ProcessRunner()
        self.timeout = timeout
        self.probe_detector = probe_detector
        self._session: Optional[DeploymentSession] = None

    @property
    def session(self) -> Optional[DeploymentSession]:
        """The in-flight deployment session, if any."""
        return self._session

    def cancel(self) -> bool:
        """Request cancellation of the in-flight deployment.

        Returns:
            True if a deployment was in flight
        """
        session = self._session
        if session is None:
            return False
        session.cancel()
        return True

    def deploy(
        self,
        artifact: Union[Artifact, Path],
        interface: Optional[str] = None,
        reset_after: bool = True,
        session: Optional[DeploymentSession] = None,
    ) -> DeploymentResult:
        """
        Write an artifact to the device.

        Args:
            artifact: Artifact (or path to the ELF) to flash
            interface: 'SWD' or 'JTAG' (default: the programmer's interface)
            reset_after: Reset and run the target after programming
            session: Session handle for cancellation (created when None)

        Returns:
            DeploymentResult; cancelled is True when cancellation was
            requested while the write was in flight

        Raises:
            BusyError: The probe is held by another deployment or debug session
            DeploymentError: Missing artifact or programmer failure
            DeploymentCancelledError: Cancelled before the write started
            ConfigurationError: Invalid interface or programmer settings
        """
        elf_path = Path(getattr(artifact, "path", artifact))
        if not elf_path.is_file():
            raise DeploymentError(f"Firmware not found at {elf_path}. Run 'firmforge build' first.")

        interface = validate_interface(interface or self.programmer.interface)
        session = session or DeploymentSession(elf_path)

        with self.probe_lock.hold("deploy", BusyError):
            self._session = session
            try:
                return self._flash(elf_path, interface, reset_after, session)
            finally:
                self._session = None
                session.in_flight = False

    def _flash(
        self,
        elf_path: Path,
        interface: str,
        reset_after: bool,
        session: DeploymentSession,
    ) -> DeploymentResult:
        if session.cancelled:
            raise DeploymentCancelledError("Deployment cancelled before flashing started")

        serial = self.programmer.serial or self.probe_detector()
        cmd = self.programmer.command(elf_path, interface, reset_after, serial)
        logger.info(f"Flashing {elf_path.name} via {self.programmer.kind} ({interface})")
        logger.debug(f"Running: {' '.join(cmd)}")

        session.in_flight = True
        interrupt: Optional[DeferredInterrupt] = None
        try:
            result = self.runner.run(
                cmd, cwd=elf_path.parent, timeout=self.timeout, shield_interrupts=True
            )
        except DeferredInterrupt as e:
            # Ctrl-C arrived mid-write; the programmer was allowed to finish
            interrupt = e
            result = e.result
            session.cancel()
        session.in_flight = False

        if result.returncode == COMMAND_NOT_FOUND:
            raise DeploymentError(
                f"Programmer '{self.programmer.tool}' not found. Install it or set [programmer] tool.",
                result.returncode,
                result.output,
            )
        if not result.ok:
            raise DeploymentError(
                f"Programmer exited with code {result.returncode}",
                result.returncode,
                result.output,
            )

        logger.info("Firmware flashed successfully")
        if interrupt is not None:
            raise interrupt

        return DeploymentResult(
            success=True,
            returncode=result.returncode,
            artifact_path=elf_path,
            command=cmd,
            stdout=result.stdout,
            stderr=result.stderr,
            cancelled=session.cancelled,
        )
