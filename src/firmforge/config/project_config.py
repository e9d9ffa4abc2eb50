"""
firmforge.ini configuration parser.

This module parses the project file that declares the toolchain, the source
roots, the build targets, the programmer and the debug launch configuration
of a firmware project.
"""

import configparser
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .toolchain_profile import (
    BuildConfiguration,
    CompilerPaths,
    ConfigurationError,
    ToolchainProfile,
)

PROJECT_FILE = "firmforge.ini"


class ProjectConfigError(ConfigurationError):
    """Exception raised for firmforge.ini configuration errors."""

    pass


@dataclass(frozen=True)
class TargetDeclaration:
    """A [target:<name>] section as written in firmforge.ini."""

    name: str
    sources: str
    output_name: str
    link_libs: Tuple[str, ...] = ()


class ProjectConfig:
    """
    Parser for firmforge.ini project files.

    Example firmforge.ini:
        [toolchain]
        prefix = arm-none-eabi-
        c = ${prefix}gcc
        arch_flags = -mcpu=cortex-m4 -mthumb
        linker_script = STM32F407VGTX_FLASH.ld

        [sources:firmware]
        roots =
            Core/Src/*.c recursive
        include_dirs =
            Core/Inc

        [target:main]
        sources = firmware
        output = firmware

    Usage:
        config = ProjectConfig(Path("firmforge.ini"))
        profile = config.get_toolchain_profile()
        targets = config.get_targets()
    """

    REQUIRED_TARGET_FIELDS = {"sources"}

    def __init__(self, ini_path: Path):
        """
        Initialize the parser with a firmforge.ini file.

        Args:
            ini_path: Path to the firmforge.ini file

        Raises:
            ProjectConfigError: If the file doesn't exist or cannot be parsed
        """
        self.ini_path = Path(ini_path)
        self.project_dir = self.ini_path.parent.resolve()

        if not self.ini_path.exists():
            raise ProjectConfigError(f"Configuration file not found: {ini_path}")

        self.config = configparser.ConfigParser(
            allow_no_value=True,
            inline_comment_prefixes=(";",),
            interpolation=configparser.ExtendedInterpolation(),
        )

        try:
            self.config.read(self.ini_path, encoding="utf-8")
        except configparser.Error as e:
            raise ProjectConfigError(f"Failed to parse {ini_path}: {e}") from e

    @classmethod
    def from_project_dir(cls, project_dir: Path) -> "ProjectConfig":
        return cls(Path(project_dir) / PROJECT_FILE)

    def _get(self, section: str, key: str, default: Optional[str] = None) -> Optional[str]:
        if section not in self.config:
            return default
        try:
            value = self.config[section].get(key, default)
        except configparser.Error as e:
            raise ProjectConfigError(f"Invalid value for [{section}] {key}: {e}") from e
        if value is None:
            return default
        value = value.strip()
        return value if value else default

    def _get_lines(self, section: str, key: str) -> List[str]:
        value = self._get(section, key, "")
        return [line.strip() for line in value.splitlines() if line.strip()]

    def _get_flags(self, section: str, key: str) -> List[str]:
        # shlex keeps quoted values such as -DNAME="a b" together
        value = self._get(section, key, "")
        try:
            return shlex.split(value)
        except ValueError as e:
            raise ProjectConfigError(f"Invalid flag string for [{section}] {key}: {e}") from e

    def _resolve_path(self, value: str) -> Path:
        path = Path(value)
        return path if path.is_absolute() else self.project_dir / path

    def get_toolchain_profile(self) -> ToolchainProfile:
        """
        Build the ToolchainProfile from the [toolchain] and
        [configuration:<name>] sections.

        Tool paths default to <prefix><tool> when a prefix is given, so a
        minimal [toolchain] section only needs prefix, arch_flags and
        linker_script. Paths are not checked for existence here.

        Raises:
            ProjectConfigError: If the [toolchain] section is missing
        """
        if "toolchain" not in self.config:
            raise ProjectConfigError(f"[toolchain] section missing from {self.ini_path}")

        prefix = self._get("toolchain", "prefix", "")

        def tool(key: str, default_name: str) -> Optional[str]:
            return self._get("toolchain", key) or (f"{prefix}{default_name}" if prefix else None)

        linker_script = self._get("toolchain", "linker_script")

        configuration_flags = {}
        for config in BuildConfiguration:
            section = f"configuration:{config.value}"
            if section in self.config:
                configuration_flags[config] = tuple(self._get_flags(section, "flags"))

        return ToolchainProfile(
            compiler_paths=CompilerPaths(
                c=tool("c", "gcc"),
                cpp=tool("cpp", "g++"),
                asm=tool("asm", "gcc"),
            ),
            objcopy_path=tool("objcopy", "objcopy"),
            size_tool_path=tool("size", "size"),
            nm_path=tool("nm", "nm"),
            gdb_path=tool("gdb", "gdb"),
            arch_flags=tuple(self._get_flags("toolchain", "arch_flags")),
            global_compile_flags=tuple(self._get_flags("toolchain", "compile_flags")),
            global_link_flags=tuple(self._get_flags("toolchain", "link_flags")),
            linker_script_path=self._resolve_path(linker_script) if linker_script else None,
            defines=frozenset(self._get_flags("toolchain", "defines")),
            configuration_flags=configuration_flags,
        )

    def get_source_set_names(self) -> List[str]:
        """Names of all [sources:<name>] sections, in file order."""
        return [
            section.split(":", 1)[1]
            for section in self.config.sections()
            if section.startswith("sources:")
        ]

    def get_source_roots(self, name: str) -> List[Tuple[str, bool]]:
        """
        Parse the roots of a source set.

        Each line is '<glob pattern> [recursive]'.

        Returns:
            List of (pattern, recursive) tuples in declaration order

        Example:
            For roots =
                Core/Src/*.c recursive
                Core/Startup/*.s
            Returns: [('Core/Src/*.c', True), ('Core/Startup/*.s', False)]
        """
        section = self._require_section(f"sources:{name}")
        roots = []
        for line in self._get_lines(section, "roots"):
            parts = line.split()
            recursive = len(parts) > 1 and parts[-1].lower() == "recursive"
            pattern = " ".join(parts[:-1]) if recursive else line
            roots.append((pattern, recursive))
        return roots

    def get_include_dirs(self, name: str) -> List[str]:
        """Include directories of a source set, exactly as declared."""
        section = self._require_section(f"sources:{name}")
        return self._get_lines(section, "include_dirs")

    def get_targets(self) -> List[TargetDeclaration]:
        """
        Get all [target:<name>] declarations in file order.

        Raises:
            ProjectConfigError: If a target misses required fields or names an
                undeclared source set
        """
        targets = []
        source_sets = set(self.get_source_set_names())
        for section in self.config.sections():
            if not section.startswith("target:"):
                continue
            name = section.split(":", 1)[1]

            missing = [f for f in sorted(self.REQUIRED_TARGET_FIELDS) if not self._get(section, f)]
            if missing:
                raise ProjectConfigError(
                    f"Target '{name}' is missing required fields: {', '.join(missing)}"
                )

            sources = self._get(section, "sources")
            if sources not in source_sets:
                raise ProjectConfigError(
                    f"Target '{name}' uses undeclared source set '{sources}'. "
                    + f"Declared: {', '.join(sorted(source_sets)) or 'none'}"
                )

            targets.append(
                TargetDeclaration(
                    name=name,
                    sources=sources,
                    output_name=self._get(section, "output", name),
                    link_libs=tuple(self._get_flags(section, "link_libs")),
                )
            )
        return targets

    def get_programmer_settings(self) -> Dict[str, str]:
        """Raw [programmer] settings (empty values dropped)."""
        if "programmer" not in self.config:
            return {}
        return {
            key: value
            for key in self.config["programmer"]
            if (value := self._get("programmer", key))
        }

    def get_debug_launch(self) -> Tuple[Optional[Path], Optional[str]]:
        """
        Location of the debug launch file and the configuration name to use.

        Returns:
            (launch_path, name); launch_path defaults to .vscode/launch.json
        """
        launch = self._get("debug", "launch", ".vscode/launch.json")
        return self._resolve_path(launch), self._get("debug", "name")

    def get_build_dir(self) -> Path:
        return self._resolve_path(self._get("project", "build_dir", "build"))

    def _require_section(self, section: str) -> str:
        if section not in self.config:
            raise ProjectConfigError(f"Section [{section}] not found in {self.ini_path}")
        return section
