"""
Debug probe discovery.

ST-LINK/V2-1 and V3 probes expose a virtual COM port, so pyserial's port
enumeration also tells us which probes are plugged in and their serial
numbers. The serial number is what STM32_Programmer_CLI (sn=) and OpenOCD
(adapter serial) use to pick one probe when several are attached.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import serial.tools.list_ports

logger = logging.getLogger(__name__)

STLINK_VID = 0x0483
STLINK_PIDS = {0x3748, 0x374B, 0x374E, 0x374F, 0x3752, 0x3753, 0x3754}


@dataclass(frozen=True)
class ProbeInfo:
    """A connected debug probe."""

    device: str
    serial_number: Optional[str]
    description: str


def list_probes() -> List[ProbeInfo]:
    """List connected ST-LINK probes, sorted by port name."""
    probes = []
    for port in serial.tools.list_ports.comports():
        if port.vid != STLINK_VID:
            continue
        if port.pid is not None and port.pid not in STLINK_PIDS:
            logger.debug(f"Ignoring ST device {port.device} with PID {port.pid:#06x}")
            continue
        probes.append(
            ProbeInfo(
                device=port.device,
                serial_number=port.serial_number,
                description=port.description or "ST-LINK",
            )
        )
    return sorted(probes, key=lambda p: p.device)


def detect_probe_serial() -> Optional[str]:
    """
    Serial number of the connected probe.

    Returns:
        The serial number when exactly one ST-LINK is connected, otherwise
        None (no probe, several probes, or a probe that reports no serial);
        the programmer then falls back to its own default probe.
    """
    probes = list_probes()
    if len(probes) == 1:
        logger.debug(f"Detected probe {probes[0].description} on {probes[0].device}")
        return probes[0].serial_number
    if len(probes) > 1:
        names = ", ".join(p.serial_number or p.device for p in probes)
        logger.warning(f"Several probes connected ({names}); set [programmer] serial to choose one")
    return None
