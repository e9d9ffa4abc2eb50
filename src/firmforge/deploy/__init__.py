"""
Firmware deployment and debugging for firmforge.

This module provides flashing and debug-session startup through the one
hardware probe, which both share under a ProbeLock.
"""

from .debug_session import DebugSession, DebugSessionBootstrap, DebugSessionError
from .deployer import (
    DeploymentCancelledError,
    DeploymentDriver,
    DeploymentError,
    DeploymentResult,
    DeploymentSession,
    ProgrammerConfig,
)
from .probe_detect import ProbeInfo, detect_probe_serial, list_probes
from .probe_lock import BusyError, LockHolder, ProbeLock, ResourceBusyError

__all__ = [
    "BusyError",
    "DebugSession",
    "DebugSessionBootstrap",
    "DebugSessionError",
    "DeploymentCancelledError",
    "DeploymentDriver",
    "DeploymentError",
    "DeploymentResult",
    "DeploymentSession",
    "LockHolder",
    "ProbeInfo",
    "ProbeLock",
    "ProgrammerConfig",
    "ResourceBusyError",
    "detect_probe_serial",
    "list_probes",
]
