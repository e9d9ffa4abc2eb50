"""
Cross-compilation toolchain profile.

The profile is the single source of ABI-affecting settings for a firmware
project: tool paths, architecture flags (CPU/FPU/float ABI/instruction set),
global compile and link flags, preprocessor defines and the linker script.
Build configurations (Release/Debug) only layer optimization and debug-info
flags on top of it and are not allowed to touch the architecture flags.
"""

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple


class ConfigurationError(Exception):
    """Raised for missing/invalid toolchain settings or duplicate targets."""

    def __init__(self, message: str, stage: str = "configure"):
        super().__init__(message)
        self.stage = stage


class BuildConfiguration(Enum):
    """Named build variant layered over the shared toolchain profile."""

    RELEASE = "Release"
    DEBUG = "Debug"

    @classmethod
    def parse(cls, text: str) -> "BuildConfiguration":
        for config in cls:
            if config.value.lower() == text.strip().lower():
                return config
        choices = ", ".join(c.value for c in cls)
        raise ConfigurationError(f"Unknown configuration '{text}'. Expected one of: {choices}")

    def __str__(self) -> str:
        return self.value


# Optimization and debug-info flags per configuration, as in the vendor CMake presets
DEFAULT_CONFIGURATION_FLAGS: Dict[BuildConfiguration, Tuple[str, ...]] = {
    BuildConfiguration.DEBUG: ("-O0", "-g3", "-DDEBUG"),
    BuildConfiguration.RELEASE: ("-Os", "-g0", "-DNDEBUG"),
}

# Flag prefixes that select CPU, FPU, float ABI or instruction set
ARCH_FLAG_PREFIXES = (
    "-mcpu=",
    "-march=",
    "-mtune=",
    "-mfpu=",
    "-mfloat-abi=",
    "-mabi=",
    "-mthumb",
    "-marm",
)


def is_arch_flag(flag: str) -> bool:
    return flag.startswith(ARCH_FLAG_PREFIXES)


@dataclass(frozen=True)
class CompilerPaths:
    """Compiler driver per source language."""

    c: Optional[str] = None
    cpp: Optional[str] = None
    asm: Optional[str] = None


@dataclass(frozen=True)
class EffectiveFlags:
    """Flag set resolved for one build configuration.

    The same instance is handed to every compile and link call of a build,
    so all translation units see identical architecture flags.
    """

    configuration: BuildConfiguration
    arch_flags: Tuple[str, ...]
    compile_flags: Tuple[str, ...]
    configuration_flags: Tuple[str, ...]
    define_flags: Tuple[str, ...]
    link_flags: Tuple[str, ...]

    def compile_command_flags(self) -> List[str]:
        """Flags for a compiler invocation, in a fixed order."""
        return [
            *self.arch_flags,
            *self.compile_flags,
            *self.configuration_flags,
            *self.define_flags,
        ]

    def link_command_flags(self) -> List[str]:
        """Flags for the link step (the driver needs the arch flags to pick multilibs)."""
        return [*self.arch_flags, *self.configuration_flags, *self.link_flags]

    def all_flags(self) -> FrozenSet[str]:
        """Union of global, arch and configuration flags."""
        return frozenset(self.compile_flags) | frozenset(self.arch_flags) | frozenset(
            self.configuration_flags
        )


@dataclass(frozen=True)
class ToolchainProfile:
    """
    Immutable toolchain description shared by every target and configuration.

    Example:
        profile = ToolchainProfile(
            compiler_paths=CompilerPaths(c="arm-none-eabi-gcc",
                                         cpp="arm-none-eabi-g++",
                                         asm="arm-none-eabi-gcc"),
            objcopy_path="arm-none-eabi-objcopy",
            size_tool_path="arm-none-eabi-size",
            arch_flags=("-mcpu=cortex-m4", "-mthumb"),
            linker_script_path=Path("STM32F407VGTX_FLASH.ld"),
        )
        flags = profile.resolve(BuildConfiguration.DEBUG)
    """

    compiler_paths: CompilerPaths = field(default_factory=CompilerPaths)
    objcopy_path: Optional[str] = None
    size_tool_path: Optional[str] = None
    nm_path: Optional[str] = None
    gdb_path: Optional[str] = None
    arch_flags: Tuple[str, ...] = ()
    global_compile_flags: Tuple[str, ...] = ()
    global_link_flags: Tuple[str, ...] = ()
    linker_script_path: Optional[Path] = None
    defines: FrozenSet[str] = frozenset()
    configuration_flags: Mapping[BuildConfiguration, Tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_CONFIGURATION_FLAGS), hash=False
    )

    def __post_init__(self):
        # Normalize sequences so callers may pass lists
        object.__setattr__(self, "arch_flags", tuple(self.arch_flags))
        object.__setattr__(self, "global_compile_flags", tuple(self.global_compile_flags))
        object.__setattr__(self, "global_link_flags", tuple(self.global_link_flags))
        object.__setattr__(self, "defines", frozenset(self.defines))
        merged = dict(DEFAULT_CONFIGURATION_FLAGS)
        merged.update({k: tuple(v) for k, v in self.configuration_flags.items()})
        object.__setattr__(self, "configuration_flags", merged)

    def validate(self) -> None:
        """
        Check that every required tool and the linker script are set.

        Raises:
            ConfigurationError: Listing every missing setting, or naming a
                configuration whose flags try to change the architecture
        """
        required = {
            "c compiler": self.compiler_paths.c,
            "c++ compiler": self.compiler_paths.cpp,
            "assembler": self.compiler_paths.asm,
            "objcopy": self.objcopy_path,
            "size tool": self.size_tool_path,
            "linker script": self.linker_script_path,
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ConfigurationError(
                f"Toolchain profile is missing required settings: {', '.join(missing)}"
            )

        for config, flags in sorted(self.configuration_flags.items(), key=lambda kv: kv[0].value):
            offending = [f for f in flags if is_arch_flag(f)]
            if offending:
                raise ConfigurationError(
                    f"Configuration '{config.value}' must not change architecture flags: "
                    + " ".join(offending)
                )

    def resolve(self, configuration: BuildConfiguration) -> EffectiveFlags:
        """
        Resolve the effective flag set for a build configuration.

        Args:
            configuration: Release or Debug

        Returns:
            EffectiveFlags whose arch_flags are identical for every configuration

        Raises:
            ConfigurationError: If the profile is incomplete
        """
        self.validate()
        return EffectiveFlags(
            configuration=configuration,
            arch_flags=self.arch_flags,
            compile_flags=self.global_compile_flags,
            configuration_flags=tuple(self.configuration_flags[configuration]),
            define_flags=tuple(f"-D{d}" for d in sorted(self.defines)),
            link_flags=self.global_link_flags,
        )

    def compiler_for(self, language: str) -> str:
        """Return the compiler driver for 'c', 'cpp' or 'asm'."""
        path = getattr(self.compiler_paths, language, None)
        if not path:
            raise ConfigurationError(f"No compiler configured for language '{language}'")
        return path

    def fingerprint(self) -> str:
        """Stable hash over every field, used to detect profile changes."""
        payload = {
            "compilers": [self.compiler_paths.c, self.compiler_paths.cpp, self.compiler_paths.asm],
            "objcopy": self.objcopy_path,
            "size": self.size_tool_path,
            "nm": self.nm_path,
            "gdb": self.gdb_path,
            "arch": list(self.arch_flags),
            "compile": list(self.global_compile_flags),
            "link": list(self.global_link_flags),
            "linker_script": str(self.linker_script_path) if self.linker_script_path else None,
            "defines": sorted(self.defines),
            "configurations": {k.value: list(v) for k, v in self.configuration_flags.items()},
        }
        encoded = json.dumps(payload, sort_keys=True).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()
