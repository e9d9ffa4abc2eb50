"""
Cross-compiler wrapper for firmware builds.

This module builds and runs the compiler, linker and objcopy command lines
for one translation unit or one link step. Every call receives the same
EffectiveFlags object for a given build, which is what keeps architecture
flags identical across all object files.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from ..config import EffectiveFlags, ToolchainProfile
from ..process import ProcessResult, ProcessRunner
from .source_resolver import source_language

logger = logging.getLogger(__name__)


class CompilerError(Exception):
    """Raised when a source file cannot be handed to the compiler at all."""

    pass


@dataclass
class CompileResult:
    """Result of compiling one translation unit."""

    source: Path
    object_file: Optional[Path]
    returncode: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        parts = [p.rstrip("\n") for p in (self.stdout, self.stderr) if p]
        return "\n".join(parts)


class Compiler:
    """
    Wrapper for a GCC-style cross toolchain (arm-none-eabi-gcc and friends).

    Compiles C, C++ and assembler sources to object files, links them with
    the profile's linker script and converts the ELF to raw/Intel HEX images.
    """

    def __init__(
        self,
        profile: ToolchainProfile,
        runner: Optional[ProcessRunner] = None,
        cwd: Optional[Path] = None,
        timeout: float = 120.0,
    ):
        """
        Initialize compiler.

        Args:
            profile: Toolchain profile providing tool paths and linker script
            runner: External process adapter
            cwd: Working directory for tool invocations (project directory)
            timeout: Per-invocation timeout in seconds
        """
        self.profile = profile
        self.runner = runner or ProcessRunner()
        self.cwd = cwd
        self.timeout = timeout

    @staticmethod
    def write_response_file(include_dirs: Sequence[Path], response_file: Path) -> Path:
        """Write include paths to a response file.

        Response files avoid command line length limits when there are many
        include paths (vendor HAL trees easily have dozens). Order is kept
        exactly as given.
        """
        response_file.parent.mkdir(parents=True, exist_ok=True)
        lines = [f'-I"{Path(inc).as_posix()}"' for inc in include_dirs]
        response_file.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return response_file

    def compile_command(
        self,
        source: Path,
        output: Path,
        flags: EffectiveFlags,
        response_file: Optional[Path] = None,
    ) -> List[str]:
        language = source_language(source)
        if language is None:
            raise CompilerError(f"Unknown source file type: {source.suffix} ({source})")

        cmd = [self.profile.compiler_for(language)]
        if language == "asm":
            cmd.extend(["-x", "assembler-with-cpp"])
        cmd.extend(flags.compile_command_flags())
        if response_file is not None:
            cmd.append(f"@{response_file}")
        cmd.extend(["-c", str(source), "-o", str(output)])
        return cmd

    def compile(
        self,
        source: Path,
        output: Path,
        flags: EffectiveFlags,
        response_file: Optional[Path] = None,
    ) -> CompileResult:
        """
        Compile one source file (language picked from its extension).

        Args:
            source: Source file
            output: Object file to write; its directory is created
            flags: Flags resolved for the current configuration
            response_file: Include-path response file

        Returns:
            CompileResult with the compiler's exit code and raw output
        """
        cmd = self.compile_command(source, output, flags, response_file)
        output.parent.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Compiling {source}")

        result = self.runner.run(cmd, cwd=self.cwd, timeout=self.timeout)
        return CompileResult(
            source=source,
            object_file=output if result.ok else None,
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    def link_command(
        self,
        objects: Sequence[Path],
        output_elf: Path,
        flags: EffectiveFlags,
        libs: Sequence[str] = (),
        map_file: Optional[Path] = None,
        use_cpp_driver: bool = False,
    ) -> List[str]:
        driver = self.profile.compiler_for("cpp" if use_cpp_driver else "c")
        cmd = [driver]
        cmd.extend(flags.link_command_flags())
        cmd.append(f"-T{self.profile.linker_script_path}")
        if map_file is not None:
            cmd.append(f"-Wl,-Map={map_file}")
        cmd.extend(["-o", str(output_elf)])
        cmd.extend(str(obj) for obj in objects)
        if libs:
            # Group for circular dependencies between libc/libm/libnosys
            cmd.append("-Wl,--start-group")
            cmd.extend(f"-l{lib}" for lib in libs)
            cmd.append("-Wl,--end-group")
        return cmd

    def link(
        self,
        objects: Sequence[Path],
        output_elf: Path,
        flags: EffectiveFlags,
        libs: Sequence[str] = (),
        map_file: Optional[Path] = None,
        use_cpp_driver: bool = False,
    ) -> ProcessResult:
        """
        Link object files into an ELF.

        Objects are passed in the order given; callers pass them in
        canonical order so the link is reproducible.
        """
        output_elf.parent.mkdir(parents=True, exist_ok=True)
        cmd = self.link_command(objects, output_elf, flags, libs, map_file, use_cpp_driver)
        logger.debug(f"Linking {output_elf.name} from {len(objects)} objects")
        return self.runner.run(cmd, cwd=self.cwd, timeout=self.timeout)

    def objcopy(self, elf_path: Path, output: Path, output_format: str) -> ProcessResult:
        """Convert an ELF to 'binary' or 'ihex'."""
        cmd = [
            self.profile.objcopy_path,
            "-O",
            output_format,
            str(elf_path),
            str(output),
        ]
        return self.runner.run(cmd, cwd=self.cwd, timeout=self.timeout)
