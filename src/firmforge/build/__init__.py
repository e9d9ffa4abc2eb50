"""
Build system components for firmforge.

This module provides the build system implementation including:
- Source set resolution from declared roots
- Build target registry
- Compilation and linking (arm-none-eabi-gcc, objcopy)
- Artifact size and symbol analysis
- Build orchestration
"""

from .artifact_analyzer import (
    AnalysisError,
    AnalysisResult,
    ArtifactAnalyzer,
    MemoryRegion,
    RegionUsage,
    SizeExceededWarning,
    SizeReport,
    SymbolReport,
    format_size_report,
    format_symbol_report,
    parse_linker_script,
)
from .compiler import Compiler, CompilerError, CompileResult
from .diagnostics import Diagnostic, collect_distinct, parse_diagnostics
from .orchestrator import (
    Artifact,
    BuildError,
    BuildOrchestrator,
    BuildResult,
    BuildState,
    BuildStateError,
    CompileError,
    LinkError,
)
from .source_resolver import (
    FileSystem,
    LocalFileSystem,
    MemoryFileSystem,
    ResolvedSources,
    SourceResolutionWarning,
    SourceResolver,
    SourceRoot,
    SourceSet,
)
from .targets import BuildTarget, BuildTargetRegistry

__all__ = [
    "AnalysisError",
    "AnalysisResult",
    "Artifact",
    "ArtifactAnalyzer",
    "BuildError",
    "BuildOrchestrator",
    "BuildResult",
    "BuildState",
    "BuildStateError",
    "BuildTarget",
    "BuildTargetRegistry",
    "CompileError",
    "CompileResult",
    "Compiler",
    "CompilerError",
    "Diagnostic",
    "FileSystem",
    "LinkError",
    "LocalFileSystem",
    "MemoryFileSystem",
    "MemoryRegion",
    "RegionUsage",
    "ResolvedSources",
    "SizeExceededWarning",
    "SizeReport",
    "SourceResolutionWarning",
    "SourceResolver",
    "SourceRoot",
    "SourceSet",
    "SymbolReport",
    "collect_distinct",
    "format_size_report",
    "format_symbol_report",
    "parse_diagnostics",
    "parse_linker_script",
]
