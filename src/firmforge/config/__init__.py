"""Configuration parsing modules for firmforge."""

from .debug_config import DebugServerConfig, load_debug_config
from .project_config import PROJECT_FILE, ProjectConfig, ProjectConfigError, TargetDeclaration
from .toolchain_profile import (
    BuildConfiguration,
    CompilerPaths,
    ConfigurationError,
    EffectiveFlags,
    ToolchainProfile,
)

__all__ = [
    "BuildConfiguration",
    "CompilerPaths",
    "ConfigurationError",
    "DebugServerConfig",
    "EffectiveFlags",
    "PROJECT_FILE",
    "ProjectConfig",
    "ProjectConfigError",
    "TargetDeclaration",
    "ToolchainProfile",
    "load_debug_config",
]
