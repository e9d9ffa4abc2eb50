"""
Shared fixtures for firmforge unit tests.

FakeRunner stands in for ProcessRunner so builds, analysis and deployment
run without a cross toolchain or a probe attached.
"""

import threading
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from firmforge.build import BuildTarget, BuildTargetRegistry, SourceSet
from firmforge.config import CompilerPaths, ToolchainProfile
from firmforge.process import ProcessResult

LINKER_SCRIPT = """\
/* Generated by STM32CubeIDE */
_estack = ORIGIN(RAM) + LENGTH(RAM);

MEMORY
{
  RAM    (xrw)    : ORIGIN = 0x20000000,   LENGTH = 128K
  FLASH    (rx)    : ORIGIN = 0x8000000,   LENGTH = 1024K
}
"""

# arm-none-eabi-size -A output (decimal addresses)
SIZE_OUTPUT = """\
firmware.elf  :
section               size        addr
.isr_vector            392   134217728
.text                12000   134218120
.rodata               1200   134230120
.ARM.attributes         46           0
.init_array              4   134231320
.data                  100   536870912
.bss                  1600   536871012
._user_heap_stack     1536   536872612
.comment                67           0
.debug_info          50000           0
Total                66945
"""

NM_OUTPUT = """\
20000064 00000004 b uwTick
08000194 00000074 T Reset_Handler
080001f0 00000400 T HAL_RCC_OscConfig
20000070 00000400 B rx_buffer
08000600 00000010 T main
"""


class FakeRunner:
    """
    Scripted replacement for ProcessRunner.

    Compiles write an object file whose content is the command line; links
    concatenate the objects in the order given; objcopy copies the ELF.
    size and nm return canned output. Individual sources can be made to
    fail through `compile_failures`, the link through `link_failure`, and any
    tool can be overridden with a fixed result through `results`.
    """

    def __init__(self, size_output: str = SIZE_OUTPUT, nm_output: str = NM_OUTPUT):
        self.size_output = size_output
        self.nm_output = nm_output
        self.compile_failures: Dict[str, ProcessResult] = {}
        self.results: Dict[str, ProcessResult] = {}
        self.link_failure: Optional[ProcessResult] = None
        self.calls: List[List[str]] = []
        self._lock = threading.Lock()

    def run(self, cmd, cwd=None, timeout=None, shield_interrupts=False) -> ProcessResult:
        args = [str(c) for c in cmd]
        with self._lock:
            self.calls.append(args)
        tool = Path(args[0]).name

        if tool in self.results:
            scripted = self.results[tool]
            return ProcessResult(args, scripted.returncode, scripted.stdout, scripted.stderr)
        if tool.endswith("size"):
            return ProcessResult(args, 0, self.size_output)
        if tool.endswith("nm"):
            return ProcessResult(args, 0, self.nm_output)
        if tool.endswith("objcopy"):
            Path(args[-1]).write_bytes(Path(args[-2]).read_bytes())
            return ProcessResult(args, 0)
        if "-c" in args:
            return self._compile(args)
        return self._link(args)

    def calls_for(self, suffix: str) -> List[List[str]]:
        return [c for c in self.calls if Path(c[0]).name.endswith(suffix)]

    @property
    def compile_calls(self) -> List[List[str]]:
        return [c for c in self.calls if "-c" in c]

    @property
    def link_calls(self) -> List[List[str]]:
        return [c for c in self.calls if "-c" not in c and Path(c[0]).name.endswith(("gcc", "g++"))]

    def _compile(self, args: List[str]) -> ProcessResult:
        source = Path(args[args.index("-c") + 1])
        output = Path(args[args.index("-o") + 1])
        failure = self.compile_failures.get(source.name)
        if failure is not None:
            return ProcessResult(args, failure.returncode, failure.stdout, failure.stderr)
        output.write_text("\n".join(args[:-2]) + "\n", encoding="utf-8")
        return ProcessResult(args, 0)

    def _link(self, args: List[str]) -> ProcessResult:
        if self.link_failure is not None:
            return ProcessResult(args, self.link_failure.returncode, self.link_failure.stdout, self.link_failure.stderr)
        output = Path(args[args.index("-o") + 1])
        objects = [Path(a) for a in args if a.endswith(".o")]
        output.write_bytes(b"ELF\n" + b"".join(o.read_bytes() for o in objects))
        return ProcessResult(args, 0)


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def linker_script_text() -> str:
    return LINKER_SCRIPT


@pytest.fixture
def size_output() -> str:
    return SIZE_OUTPUT


@pytest.fixture
def nm_output() -> str:
    return NM_OUTPUT


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """A small CubeMX-style project tree."""
    root = tmp_path / "project"
    for rel in (
        "Core/Src/main.c",
        "Core/Src/gpio.c",
        "Core/Src/stm32f4xx_it.c",
        "Core/Startup/startup_stm32f407vgtx.s",
        "Core/Inc/main.h",
        "Drivers/CMSIS/Include/core_cm4.h",
    ):
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"/* {rel} */\n", encoding="utf-8")
    (root / "STM32F407VGTX_FLASH.ld").write_text(LINKER_SCRIPT, encoding="utf-8")
    return root


@pytest.fixture
def profile(project_dir: Path) -> ToolchainProfile:
    return _make_profile(project_dir / "STM32F407VGTX_FLASH.ld")


def _make_profile(linker_script: Optional[Path], **overrides) -> ToolchainProfile:
    settings = dict(
        compiler_paths=CompilerPaths(
            c="arm-none-eabi-gcc", cpp="arm-none-eabi-g++", asm="arm-none-eabi-gcc"
        ),
        objcopy_path="arm-none-eabi-objcopy",
        size_tool_path="arm-none-eabi-size",
        nm_path="arm-none-eabi-nm",
        gdb_path="arm-none-eabi-gdb",
        arch_flags=("-mcpu=cortex-m4", "-mthumb", "-mfpu=fpv4-sp-d16", "-mfloat-abi=hard"),
        global_compile_flags=("-Wall", "-ffunction-sections", "-fdata-sections"),
        global_link_flags=("-Wl,--gc-sections", "--specs=nano.specs"),
        linker_script_path=linker_script,
        defines=frozenset({"USE_HAL_DRIVER", "STM32F407xx"}),
    )
    settings.update(overrides)
    return ToolchainProfile(**settings)


@pytest.fixture
def firmware_sources(project_dir: Path) -> SourceSet:
    files = sorted(
        [
            project_dir / "Core/Src/gpio.c",
            project_dir / "Core/Src/main.c",
            project_dir / "Core/Src/stm32f4xx_it.c",
            project_dir / "Core/Startup/startup_stm32f407vgtx.s",
        ],
        key=lambda p: p.as_posix(),
    )
    return SourceSet(
        files=tuple(files),
        include_dirs=(project_dir / "Core/Inc", project_dir / "Drivers/CMSIS/Include"),
    )


@pytest.fixture
def registry(project_dir: Path, firmware_sources: SourceSet) -> BuildTargetRegistry:
    registry = BuildTargetRegistry(project_dir / "build")
    registry.register(BuildTarget("main", firmware_sources, "firmware", ("c", "m", "nosys")))
    registry.register(
        BuildTarget(
            "test",
            SourceSet(files=(project_dir / "Core/Src/gpio.c",), include_dirs=(project_dir / "Core/Inc",)),
            "test_firmware",
        )
    )
    return registry


@pytest.fixture
def profile_factory():
    """Build a ToolchainProfile with selected fields overridden."""
    return _make_profile
