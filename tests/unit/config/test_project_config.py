"""
Unit tests for the firmforge.ini parser.
"""

from pathlib import Path

import pytest

from firmforge.config import (
    BuildConfiguration,
    ProjectConfig,
    ProjectConfigError,
    TargetDeclaration,
)

FULL_INI = """\
[project]
build_dir = out

[toolchain]
prefix = arm-none-eabi-
arch_flags = -mcpu=cortex-m4 -mthumb -mfpu=fpv4-sp-d16 -mfloat-abi=hard
compile_flags = -Wall -ffunction-sections -fdata-sections
link_flags = -Wl,--gc-sections --specs=nano.specs
defines = USE_HAL_DRIVER STM32F407xx
linker_script = STM32F407VGTX_FLASH.ld

[configuration:Release]
flags = -O2 -g0 -DNDEBUG

[sources:firmware]
roots =
    Core/Src/*.c recursive
    Core/Startup/*.s
include_dirs =
    Core/Inc
    Drivers/CMSIS/Include

[sources:tests]
roots =
    Tests/*.c

[target:main]
sources = firmware
output = firmware
link_libs = c m nosys

[target:test]
sources = tests

[programmer]
kind = openocd   ; flashing backend
interface = SWD
serial =
scripts = interface/stlink.cfg target/stm32f4x.cfg

[debug]
launch = .vscode/launch.json
name = Debug STM32F407
"""


@pytest.fixture
def ini_file(tmp_path: Path) -> Path:
    path = tmp_path / "firmforge.ini"
    path.write_text(FULL_INI, encoding="utf-8")
    return path


def write_ini(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "firmforge.ini"
    path.write_text(content, encoding="utf-8")
    return path


class TestProjectConfig:
    """Test suite for ProjectConfig."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(ProjectConfigError, match="not found"):
            ProjectConfig(tmp_path / "firmforge.ini")

    def test_malformed_file(self, tmp_path):
        path = write_ini(tmp_path, "prefix = arm-none-eabi-\n[toolchain]\n")

        with pytest.raises(ProjectConfigError, match="Failed to parse"):
            ProjectConfig(path)

    def test_from_project_dir(self, ini_file):
        config = ProjectConfig.from_project_dir(ini_file.parent)
        assert config.ini_path == ini_file

    def test_toolchain_tools_default_to_prefix(self, ini_file):
        profile = ProjectConfig(ini_file).get_toolchain_profile()

        assert profile.compiler_paths.c == "arm-none-eabi-gcc"
        assert profile.compiler_paths.cpp == "arm-none-eabi-g++"
        assert profile.compiler_paths.asm == "arm-none-eabi-gcc"
        assert profile.objcopy_path == "arm-none-eabi-objcopy"
        assert profile.size_tool_path == "arm-none-eabi-size"
        assert profile.nm_path == "arm-none-eabi-nm"
        assert profile.gdb_path == "arm-none-eabi-gdb"

    def test_toolchain_flags_and_defines(self, ini_file):
        profile = ProjectConfig(ini_file).get_toolchain_profile()

        assert profile.arch_flags == ("-mcpu=cortex-m4", "-mthumb", "-mfpu=fpv4-sp-d16", "-mfloat-abi=hard")
        assert profile.global_compile_flags == ("-Wall", "-ffunction-sections", "-fdata-sections")
        assert profile.global_link_flags == ("-Wl,--gc-sections", "--specs=nano.specs")
        assert profile.defines == frozenset({"USE_HAL_DRIVER", "STM32F407xx"})

    def test_linker_script_relative_to_project(self, ini_file):
        profile = ProjectConfig(ini_file).get_toolchain_profile()
        assert profile.linker_script_path == ini_file.parent.resolve() / "STM32F407VGTX_FLASH.ld"

    def test_configuration_section_overrides_one_configuration(self, ini_file):
        profile = ProjectConfig(ini_file).get_toolchain_profile()

        assert profile.configuration_flags[BuildConfiguration.RELEASE] == ("-O2", "-g0", "-DNDEBUG")
        assert profile.configuration_flags[BuildConfiguration.DEBUG] == ("-O0", "-g3", "-DDEBUG")

    def test_explicit_tool_with_interpolation(self, tmp_path):
        path = write_ini(
            tmp_path,
            "[toolchain]\n"
            "bin = /opt/gcc-arm/bin\n"
            "c = ${bin}/arm-none-eabi-gcc\n"
            "arch_flags = -mcpu=cortex-m0 -mthumb\n",
        )
        profile = ProjectConfig(path).get_toolchain_profile()

        assert profile.compiler_paths.c == "/opt/gcc-arm/bin/arm-none-eabi-gcc"
        # no prefix, so unset tools stay unset
        assert profile.compiler_paths.cpp is None
        assert profile.linker_script_path is None

    def test_quoted_define_kept_together(self, tmp_path):
        path = write_ini(tmp_path, '[toolchain]\ndefines = "BOARD_NAME=disco f4" USE_HAL_DRIVER\n')
        profile = ProjectConfig(path).get_toolchain_profile()

        assert profile.defines == frozenset({"BOARD_NAME=disco f4", "USE_HAL_DRIVER"})

    def test_missing_toolchain_section(self, tmp_path):
        path = write_ini(tmp_path, "[sources:firmware]\nroots = Core/Src/*.c\n")

        with pytest.raises(ProjectConfigError, match=r"\[toolchain\]"):
            ProjectConfig(path).get_toolchain_profile()

    def test_source_set_names_in_file_order(self, ini_file):
        assert ProjectConfig(ini_file).get_source_set_names() == ["firmware", "tests"]

    def test_source_roots(self, ini_file):
        roots = ProjectConfig(ini_file).get_source_roots("firmware")
        assert roots == [("Core/Src/*.c", True), ("Core/Startup/*.s", False)]

    def test_include_dirs_keep_declared_order(self, ini_file):
        assert ProjectConfig(ini_file).get_include_dirs("firmware") == ["Core/Inc", "Drivers/CMSIS/Include"]
        assert ProjectConfig(ini_file).get_include_dirs("tests") == []

    def test_unknown_source_set(self, ini_file):
        with pytest.raises(ProjectConfigError, match=r"\[sources:drivers\]"):
            ProjectConfig(ini_file).get_source_roots("drivers")

    def test_targets(self, ini_file):
        targets = ProjectConfig(ini_file).get_targets()

        assert targets == [
            TargetDeclaration("main", "firmware", "firmware", ("c", "m", "nosys")),
            TargetDeclaration("test", "tests", "test", ()),
        ]

    def test_target_with_undeclared_source_set(self, tmp_path):
        path = write_ini(tmp_path, "[sources:firmware]\nroots = a/*.c\n\n[target:main]\nsources = drivers\n")

        with pytest.raises(ProjectConfigError, match="undeclared source set 'drivers'"):
            ProjectConfig(path).get_targets()

    def test_target_missing_sources(self, tmp_path):
        path = write_ini(tmp_path, "[target:main]\noutput = firmware\n")

        with pytest.raises(ProjectConfigError, match="missing required fields: sources"):
            ProjectConfig(path).get_targets()

    def test_programmer_settings_drop_empty_values_and_comments(self, ini_file):
        settings = ProjectConfig(ini_file).get_programmer_settings()

        assert settings == {
            "kind": "openocd",
            "interface": "SWD",
            "scripts": "interface/stlink.cfg target/stm32f4x.cfg",
        }

    def test_programmer_settings_absent(self, tmp_path):
        path = write_ini(tmp_path, "[toolchain]\nprefix = arm-none-eabi-\n")
        assert ProjectConfig(path).get_programmer_settings() == {}

    def test_debug_launch(self, ini_file):
        launch, name = ProjectConfig(ini_file).get_debug_launch()

        assert launch == ini_file.parent.resolve() / ".vscode" / "launch.json"
        assert name == "Debug STM32F407"

    def test_debug_launch_defaults(self, tmp_path):
        path = write_ini(tmp_path, "[toolchain]\nprefix = arm-none-eabi-\n")
        launch, name = ProjectConfig(path).get_debug_launch()

        assert launch == tmp_path.resolve() / ".vscode" / "launch.json"
        assert name is None

    def test_build_dir(self, ini_file, tmp_path):
        assert ProjectConfig(ini_file).get_build_dir() == tmp_path.resolve() / "out"

    def test_build_dir_default(self, tmp_path):
        path = write_ini(tmp_path, "[toolchain]\nprefix = arm-none-eabi-\n")
        assert ProjectConfig(path).get_build_dir() == tmp_path.resolve() / "build"
