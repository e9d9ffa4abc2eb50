"""
Debug server configuration loading.

Reads the probe adapter type, target chip and server settings from a VS Code
launch.json (cortex-debug launch entries). The file is read once per debug
session start.
"""

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .toolchain_profile import ConfigurationError

SUPPORTED_SERVERS = ("openocd", "stlink", "pyocd")
SUPPORTED_INTERFACES = ("swd", "jtag")

DEFAULT_GDB_PORT = 3333


@dataclass(frozen=True)
class DebugServerConfig:
    """Settings needed to start a debug server and attach gdb to it."""

    server: str
    adapter: str
    chip: str
    gdb_port: int = DEFAULT_GDB_PORT
    config_files: Tuple[str, ...] = ()
    server_path: Optional[str] = None
    gdb_path: Optional[str] = None
    server_args: Tuple[str, ...] = ()
    interface: str = "swd"

    @property
    def target_family(self) -> str:
        """OpenOCD target family for an STM32 part number.

        Example: STM32F407VG -> stm32f4x, STM32H743ZI -> stm32h7x
        """
        chip = self.chip.lower()
        if chip.startswith("stm32") and len(chip) >= 7:
            return chip[:7] + "x"
        return chip

    def openocd_scripts(self) -> List[str]:
        """Config scripts for OpenOCD, derived from adapter/chip when not given."""
        if self.config_files:
            return list(self.config_files)
        return [f"interface/{self.adapter}.cfg", f"target/{self.target_family}.cfg"]


def _strip_jsonc(text: str) -> str:
    """Remove // and /* */ comments and trailing commas outside strings."""
    result = []
    i = 0
    in_string = False
    while i < len(text):
        ch = text[i]
        if in_string:
            result.append(ch)
            if ch == "\\" and i + 1 < len(text):
                result.append(text[i + 1])
                i += 1
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
            result.append(ch)
        elif text.startswith("//", i):
            end = text.find("\n", i)
            i = len(text) if end == -1 else end
            continue
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            i = len(text) if end == -1 else end + 2
            continue
        else:
            result.append(ch)
        i += 1
    return re.sub(r",(\s*[}\]])", r"\1", "".join(result))


def _select_entry(entries: List[Dict[str, Any]], name: Optional[str]) -> Dict[str, Any]:
    candidates = [e for e in entries if e.get("type") == "cortex-debug"] or entries
    if name:
        for entry in candidates:
            if entry.get("name") == name:
                return entry
        available = ", ".join(str(e.get("name")) for e in candidates)
        raise ConfigurationError(
            f"Debug configuration '{name}' not found. Available: {available or 'none'}"
        )
    if not candidates:
        raise ConfigurationError("No debug configurations found in launch file")
    return candidates[0]


def load_debug_config(launch_path: Path, name: Optional[str] = None) -> DebugServerConfig:
    """
    Load debug server settings from a launch.json file.

    Args:
        launch_path: Path to launch.json
        name: Launch configuration name (default: first cortex-debug entry)

    Returns:
        DebugServerConfig

    Raises:
        ConfigurationError: If the file is missing, malformed, or lacks the
            server type or device
    """
    launch_path = Path(launch_path)
    if not launch_path.exists():
        raise ConfigurationError(f"Debug launch file not found: {launch_path}")

    try:
        data = json.loads(_strip_jsonc(launch_path.read_text(encoding="utf-8")))
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Failed to parse {launch_path}: {e}") from e

    entry = _select_entry(data.get("configurations", []), name)

    server = str(entry.get("servertype", "")).lower()
    if server not in SUPPORTED_SERVERS:
        raise ConfigurationError(
            f"Unsupported debug server type '{server}'. "
            + f"Supported: {', '.join(SUPPORTED_SERVERS)}"
        )

    chip = entry.get("device")
    if not chip:
        raise ConfigurationError(f"Debug configuration '{entry.get('name')}' has no device")

    interface = str(entry.get("interface", "swd")).lower()
    if interface not in SUPPORTED_INTERFACES:
        raise ConfigurationError(
            f"Unsupported debug interface '{interface}'. Supported: {', '.join(SUPPORTED_INTERFACES)}"
        )

    config_files = tuple(entry.get("configFiles", []))
    adapter = _adapter_from_config_files(config_files) or "stlink"

    return DebugServerConfig(
        server=server,
        adapter=adapter,
        chip=chip,
        gdb_port=int(entry.get("gdbPort", DEFAULT_GDB_PORT)),
        config_files=config_files,
        server_path=entry.get("serverpath"),
        gdb_path=entry.get("gdbPath"),
        server_args=tuple(entry.get("serverArgs", [])),
        interface=interface,
    )


def _adapter_from_config_files(config_files: Tuple[str, ...]) -> Optional[str]:
    for cfg in config_files:
        path = Path(cfg)
        if path.parent.name == "interface":
            return path.stem
    return None
