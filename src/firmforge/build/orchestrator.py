"""
Build orchestration for firmforge projects.

This module drives one (target, configuration) build from configuration to
an analyzed firmware artifact:
- Configuration (toolchain validation, output directory layout)
- Compilation of every translation unit, in parallel
- Linking against the profile's linker script
- Post-build images (.bin, .hex)
- Size and symbol analysis of the produced ELF
"""

import hashlib
import logging
import os
import shutil
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from tqdm import tqdm

from ..config import BuildConfiguration, ConfigurationError, EffectiveFlags, ToolchainProfile
from ..process import ProcessRunner
from .artifact_analyzer import (
    AnalysisError,
    ArtifactAnalyzer,
    SizeReport,
    SymbolReport,
)
from .compiler import CompileResult, Compiler, CompilerError
from .diagnostics import Diagnostic, collect_distinct
from .source_resolver import source_language
from .targets import BuildTarget, BuildTargetRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_DIAGNOSTICS = 20


class BuildState(Enum):
    UNCONFIGURED = "unconfigured"
    CONFIGURED = "configured"
    BUILT = "built"
    ANALYZED = "analyzed"
    FAILED = "failed"


_TRANSITIONS = {
    BuildState.UNCONFIGURED: {BuildState.CONFIGURED, BuildState.FAILED},
    BuildState.CONFIGURED: {BuildState.CONFIGURED, BuildState.BUILT, BuildState.FAILED},
    BuildState.BUILT: {BuildState.ANALYZED, BuildState.FAILED},
    BuildState.ANALYZED: {BuildState.CONFIGURED, BuildState.FAILED},
    BuildState.FAILED: {BuildState.CONFIGURED, BuildState.FAILED},
}


class BuildError(Exception):
    """Base class for build failures.

    Attributes:
        stage: Sub-step that failed ('configure', 'compile', 'link', 'objcopy')
        output: Raw tool output, unmodified
        returncode: Exit code of the failing tool, if a tool failed
        diagnostics: Distinct error diagnostics extracted from the output
    """

    def __init__(
        self,
        message: str,
        stage: str,
        output: str = "",
        returncode: Optional[int] = None,
        diagnostics: Sequence[Diagnostic] = (),
    ):
        super().__init__(message)
        self.stage = stage
        self.output = output
        self.returncode = returncode
        self.diagnostics = list(diagnostics)


class CompileError(BuildError):
    """One or more translation units failed to compile."""

    def __init__(self, message: str, outputs: Dict[Path, str], returncode: Optional[int], diagnostics: Sequence[Diagnostic]):
        combined = "\n".join(f"--- {source} ---\n{text}" for source, text in outputs.items())
        super().__init__(message, "compile", combined, returncode, diagnostics)
        self.outputs = outputs


class LinkError(BuildError):
    """The link or a post-link image conversion failed."""

    pass


class BuildStateError(BuildError):
    """An operation was requested in a state that does not allow it."""

    def __init__(self, message: str):
        super().__init__(message, "orchestrate")


@dataclass
class Artifact:
    """The linked firmware image of one (target, configuration)."""

    path: Path
    target: str
    configuration: BuildConfiguration
    size_report: Optional[SizeReport] = None
    symbol_report: Optional[SymbolReport] = None
    bin_path: Optional[Path] = None
    hex_path: Optional[Path] = None
    map_path: Optional[Path] = None


@dataclass
class BuildResult:
    """Result of a complete build operation."""

    target: str
    configuration: BuildConfiguration
    artifact: Artifact
    state: BuildState
    build_time: float
    warnings: List[Warning] = field(default_factory=list)


class BuildOrchestrator:
    """
    Drives configure -> compile/link -> analyze for registered targets.

    States: UNCONFIGURED -> CONFIGURED -> BUILT -> {ANALYZED, FAILED}

    A test firmware is just another registered target; nothing here branches
    on the target beyond picking it from the registry.

    Example usage:
        orchestrator = BuildOrchestrator(profile, registry, project_dir)
        result = orchestrator.build("main", BuildConfiguration.DEBUG)
        print(result.artifact.size_report.total_flash_bytes)
    """

    def __init__(
        self,
        profile: ToolchainProfile,
        registry: BuildTargetRegistry,
        project_dir: Path,
        runner: Optional[ProcessRunner] = None,
        analyzer: Optional[ArtifactAnalyzer] = None,
        jobs: Optional[int] = None,
        max_diagnostics: int = DEFAULT_MAX_DIAGNOSTICS,
        show_progress: bool = False,
    ):
        """
        Initialize build orchestrator.

        Args:
            profile: Shared toolchain profile
            registry: Registered build targets
            project_dir: Project root; tools run here and object paths mirror it
            runner: External process adapter (fake in tests)
            analyzer: Artifact analyzer (defaults to one using the same runner)
            jobs: Parallel compile workers (default: CPU count)
            max_diagnostics: Maximum distinct diagnostics reported per failure
            show_progress: Show a progress bar while compiling
        """
        self.profile = profile
        self.registry = registry
        self.project_dir = Path(project_dir).resolve()
        self.runner = runner or ProcessRunner()
        self.analyzer = analyzer or ArtifactAnalyzer(profile, self.runner, self.project_dir)
        self.jobs = max(1, jobs or os.cpu_count() or 1)
        self.max_diagnostics = max_diagnostics
        self.show_progress = show_progress

        self._state = BuildState.UNCONFIGURED
        self._configured: Dict[BuildConfiguration, str] = {}
        self._artifacts: Dict[Tuple[str, BuildConfiguration], Artifact] = {}

    @property
    def state(self) -> BuildState:
        return self._state

    def _transition(self, new_state: BuildState) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            raise BuildStateError(
                f"Illegal build state transition {self._state.name} -> {new_state.name}"
            )
        logger.debug(f"Build state {self._state.name} -> {new_state.name}")
        self._state = new_state

    def _reset(self) -> None:
        self._state = BuildState.UNCONFIGURED
        self._configured.clear()

    def update_inputs(
        self,
        profile: Optional[ToolchainProfile] = None,
        registry: Optional[BuildTargetRegistry] = None,
    ) -> None:
        """Swap the profile and/or registry; the next configure() re-validates."""
        if profile is not None:
            self.profile = profile
            self.analyzer = ArtifactAnalyzer(profile, self.runner, self.project_dir)
        if registry is not None:
            self.registry = registry
        self._reset()

    def _input_fingerprint(self) -> str:
        digest = hashlib.sha256(self.profile.fingerprint().encode("utf-8"))
        for target in self.registry:
            digest.update(target.name.encode("utf-8") + b"\0")
            digest.update(target.source_set.fingerprint().encode("utf-8"))
            digest.update(target.output_name.encode("utf-8") + b"\0")
            digest.update("\0".join(target.extra_link_libs).encode("utf-8") + b"\1")
        return digest.hexdigest()

    def configure(self, configuration: BuildConfiguration) -> bool:
        """
        Validate the toolchain and materialize the configuration's output tree.

        Args:
            configuration: Release or Debug

        Returns:
            True if configuration work was done, False if the inputs were
            unchanged since the last configure() for this configuration

        Raises:
            ConfigurationError: If the toolchain profile is invalid
        """
        fingerprint = self._input_fingerprint()
        config_dir = self.registry.configuration_dir(configuration)
        if (
            self._configured.get(configuration) == fingerprint
            and config_dir.is_dir()
            and self._state is not BuildState.UNCONFIGURED
        ):
            if self._state in (BuildState.ANALYZED, BuildState.FAILED):
                self._transition(BuildState.CONFIGURED)
            return False

        logger.info(f"Configuring {configuration.value} in {config_dir}")
        try:
            self.profile.validate()
        except ConfigurationError:
            self._configured.pop(configuration, None)
            self._state = BuildState.FAILED
            raise

        config_dir.mkdir(parents=True, exist_ok=True)
        self._configured[configuration] = fingerprint
        self._state = BuildState.CONFIGURED
        return True

    def build(self, target_name: str, configuration: BuildConfiguration) -> BuildResult:
        """
        Build, link and analyze one target for one configuration.

        Args:
            target_name: Registered target name
            configuration: Release or Debug

        Returns:
            BuildResult in state ANALYZED with the stored Artifact

        Raises:
            ConfigurationError: Invalid profile or unknown target
            CompileError: Any translation unit failed (all are attempted)
            LinkError: Link or image conversion failed
            AnalysisError: The size or symbol tool failed on the artifact
        """
        start_time = time.time()

        logger.info(f"[1/5] Configuring {target_name} ({configuration.value})")
        self.configure(configuration)

        try:
            target = self.registry.get(target_name)
            if not target.source_set.files:
                raise ConfigurationError(f"Target '{target.name}' has no source files")

            flags = self.profile.resolve(configuration)
            compiler = Compiler(self.profile, self.runner, self.project_dir)

            logger.info(f"[2/5] Compiling {len(target.source_set.files)} sources")
            objects = self._compile_target(compiler, target, configuration, flags)

            logger.info("[3/5] Linking")
            artifact = self._link_target(compiler, target, configuration, flags, objects)
        except Exception:
            self._state = BuildState.FAILED
            raise

        self._transition(BuildState.BUILT)
        self._artifacts[(target.name, configuration)] = artifact

        logger.info("[4/5] Analyzing artifact")
        try:
            analysis = self.analyzer.analyze(artifact.path)
            artifact.size_report = analysis.size_report
            artifact.symbol_report = analysis.symbol_report
            ArtifactAnalyzer.write_reports(analysis, artifact.path)
        except OSError as e:
            self._transition(BuildState.FAILED)
            raise AnalysisError(f"Could not write reports for {artifact.path.name}: {e}") from e
        except Exception:
            self._transition(BuildState.FAILED)
            raise
        self._transition(BuildState.ANALYZED)

        build_time = time.time() - start_time
        logger.info(f"[5/5] Build complete: {artifact.path} ({build_time:.2f}s)")

        return BuildResult(
            target=target.name,
            configuration=configuration,
            artifact=artifact,
            state=self._state,
            build_time=build_time,
            warnings=[*self.registry.warnings, *analysis.warnings],
        )

    def artifact(self, target_name: str, configuration: BuildConfiguration) -> Optional[Artifact]:
        """Artifact of the last successful build of (target, configuration)."""
        return self._artifacts.get((target_name, configuration))

    def clean(self, configuration: Optional[BuildConfiguration] = None) -> Path:
        """
        Remove build outputs for one configuration, or the whole build directory.

        Returns:
            The directory that was removed
        """
        if configuration is None:
            path = self.registry.build_dir
            self._artifacts.clear()
        else:
            path = self.registry.configuration_dir(configuration)
            for key in [k for k in self._artifacts if k[1] is configuration]:
                del self._artifacts[key]

        if path.exists():
            logger.info(f"Removing {path}")
            shutil.rmtree(path)
        self._reset()
        return path

    def object_path(self, source: Path, object_dir: Path) -> Path:
        """
        Distinct object path for a source file.

        Sources inside the project mirror their relative path; the full file
        name is kept (main.c -> main.c.o) so main.c and main.s never collide.
        Sources outside the project go under _ext/<hash of their directory>/.
        """
        source = Path(source)
        try:
            relative = source.resolve().relative_to(self.project_dir)
        except ValueError:
            digest = hashlib.sha1(source.parent.as_posix().encode("utf-8")).hexdigest()[:10]
            relative = Path("_ext") / digest / source.name
        return object_dir / relative.parent / f"{relative.name}.o"

    def _compile_target(
        self,
        compiler: Compiler,
        target: BuildTarget,
        configuration: BuildConfiguration,
        flags: EffectiveFlags,
    ) -> List[Path]:
        output_dir = self.registry.output_dir(target, configuration)
        object_dir = self.registry.object_dir(target, configuration)
        response_file = Compiler.write_response_file(
            target.source_set.include_dirs, output_dir / "includes.rsp"
        )

        sources = list(target.source_set.files)
        object_paths = [self.object_path(src, object_dir) for src in sources]
        results = self._run_compiles(compiler, sources, object_paths, flags, response_file)

        failures = [r for r in results if not r.success]
        if failures:
            diagnostics = collect_distinct([r.output for r in failures], self.max_diagnostics)
            raise CompileError(
                f"Compilation failed for {len(failures)} of {len(sources)} files "
                + f"in target '{target.name}' ({configuration.value})",
                outputs={r.source: r.output for r in failures},
                returncode=failures[0].returncode,
                diagnostics=diagnostics,
            )

        for result in results:
            if result.stderr:
                # Warnings from successful compiles
                logger.debug(result.stderr.rstrip())

        return object_paths

    def _run_compiles(
        self,
        compiler: Compiler,
        sources: List[Path],
        object_paths: List[Path],
        flags: EffectiveFlags,
        response_file: Path,
    ) -> List[CompileResult]:
        """Compile every source; results come back in source order.

        Every translation unit is attempted even after a failure so that
        independent errors are all reported in one run.
        """
        results: List[Optional[CompileResult]] = [None] * len(sources)

        with ThreadPoolExecutor(max_workers=self.jobs) as executor:
            futures = {
                executor.submit(self._compile_one, compiler, src, obj, flags, response_file): index
                for index, (src, obj) in enumerate(zip(sources, object_paths))
            }
            progress = tqdm(
                total=len(futures),
                desc="Compiling",
                unit="file",
                disable=not self.show_progress,
            )
            with progress:
                for future in as_completed(futures):
                    results[futures[future]] = future.result()
                    progress.update(1)

        return [r for r in results if r is not None]

    @staticmethod
    def _compile_one(
        compiler: Compiler,
        source: Path,
        object_path: Path,
        flags: EffectiveFlags,
        response_file: Path,
    ) -> CompileResult:
        try:
            return compiler.compile(source, object_path, flags, response_file)
        except CompilerError as e:
            return CompileResult(source, None, 1, "", str(e))

    def _link_target(
        self,
        compiler: Compiler,
        target: BuildTarget,
        configuration: BuildConfiguration,
        flags: EffectiveFlags,
        objects: List[Path],
    ) -> Artifact:
        elf_path = self.registry.artifact_path(target, configuration)
        map_path = elf_path.with_suffix(".map")
        staging_elf = elf_path.with_name(elf_path.name + ".tmp")
        use_cpp = any(source_language(src) == "cpp" for src in target.source_set.files)

        result = compiler.link(
            objects,
            staging_elf,
            flags,
            libs=target.extra_link_libs,
            map_file=map_path,
            use_cpp_driver=use_cpp,
        )
        if not result.ok:
            staging_elf.unlink(missing_ok=True)
            raise LinkError(
                f"Linking failed for target '{target.name}' ({configuration.value})",
                "link",
                result.output,
                result.returncode,
                collect_distinct([result.output], self.max_diagnostics),
            )

        images = {}
        for fmt, suffix in (("binary", ".bin"), ("ihex", ".hex")):
            image = elf_path.with_suffix(suffix)
            staging_image = image.with_name(image.name + ".tmp")
            converted = compiler.objcopy(staging_elf, staging_image, fmt)
            if not converted.ok:
                staging_elf.unlink(missing_ok=True)
                staging_image.unlink(missing_ok=True)
                raise LinkError(
                    f"objcopy -O {fmt} failed for target '{target.name}'",
                    "objcopy",
                    converted.output,
                    converted.returncode,
                )
            images[suffix] = (staging_image, image)

        # Publish only once every output exists, replacing any previous build
        os.replace(staging_elf, elf_path)
        for staging_image, image in images.values():
            os.replace(staging_image, image)

        return Artifact(
            path=elf_path,
            target=target.name,
            configuration=configuration,
            bin_path=images[".bin"][1],
            hex_path=images[".hex"][1],
            map_path=map_path,
        )
