"""
Unit tests for the build target registry.
"""

from pathlib import Path

import pytest

from firmforge.build import BuildTarget, BuildTargetRegistry, SourceResolutionWarning, SourceSet
from firmforge.config import BuildConfiguration, ConfigurationError, ProjectConfig

PROJECT_INI = """\
[toolchain]
prefix = arm-none-eabi-
arch_flags = -mcpu=cortex-m4 -mthumb
linker_script = STM32F407VGTX_FLASH.ld

[sources:firmware]
roots =
    Core/Src/*.c
    Core/Startup/*.s
    Middlewares/*.c
include_dirs =
    Core/Inc

[target:main]
sources = firmware
output = firmware
link_libs = c m

[target:test]
sources = firmware
output = test_firmware
"""


class TestBuildTargetRegistry:
    """Test suite for BuildTargetRegistry."""

    def test_register_and_get(self, registry):
        target = registry.get("main")

        assert target.output_name == "firmware"
        assert target.extra_link_libs == ("c", "m", "nosys")
        assert registry.names() == ["main", "test"]
        assert "main" in registry
        assert len(registry) == 2

    def test_duplicate_name_rejected(self, registry):
        with pytest.raises(ConfigurationError, match="Duplicate build target name: 'main'"):
            registry.register(BuildTarget("main", SourceSet(), "other"))

    def test_unknown_target(self, registry):
        with pytest.raises(ConfigurationError, match="Available targets: main, test"):
            registry.get("bootloader")

    def test_artifact_paths_namespaced_by_configuration(self, registry, project_dir):
        target = registry.get("main")

        release = registry.artifact_path(target, BuildConfiguration.RELEASE)
        debug = registry.artifact_path(target, BuildConfiguration.DEBUG)

        assert release == project_dir / "build" / "Release" / "main" / "firmware.elf"
        assert debug == project_dir / "build" / "Debug" / "main" / "firmware.elf"
        assert registry.object_dir(target, BuildConfiguration.DEBUG) == debug.parent / "obj"

    def test_targets_are_immutable(self, registry):
        with pytest.raises(AttributeError):
            registry.get("main").output_name = "renamed"

    def test_from_project(self, project_dir):
        (project_dir / "firmforge.ini").write_text(PROJECT_INI, encoding="utf-8")
        config = ProjectConfig(project_dir / "firmforge.ini")

        with pytest.warns(SourceResolutionWarning, match="Middlewares"):
            registry = BuildTargetRegistry.from_project(config)

        main = registry.get("main")
        test = registry.get("test")
        names = [f.name for f in main.source_set.files]

        assert names == ["gpio.c", "main.c", "stm32f4xx_it.c", "startup_stm32f407vgtx.s"]
        assert main.source_set.include_dirs == (config.project_dir / "Core/Inc",)
        # shared source set resolved once, so its warning is recorded once
        assert test.source_set is main.source_set
        assert len(registry.warnings) == 1
        assert registry.build_dir == config.project_dir / "build"
        assert main.extra_link_libs == ("c", "m")
        assert test.output_name == "test_firmware"

    def test_from_project_build_dir_override(self, project_dir, tmp_path):
        (project_dir / "firmforge.ini").write_text(PROJECT_INI, encoding="utf-8")
        config = ProjectConfig(project_dir / "firmforge.ini")

        with pytest.warns(SourceResolutionWarning):
            registry = BuildTargetRegistry.from_project(config, build_dir=tmp_path / "out")

        assert registry.build_dir == Path(tmp_path / "out")
