"""
Unit tests for the cross-compiler wrapper.
"""

from pathlib import Path

import pytest

from firmforge.build import Compiler, CompilerError
from firmforge.config import BuildConfiguration
from firmforge.process import ProcessResult


class TestCompiler:
    """Test suite for Compiler."""

    @pytest.fixture
    def compiler(self, profile, fake_runner, project_dir):
        return Compiler(profile, runner=fake_runner, cwd=project_dir)

    @pytest.fixture
    def flags(self, profile):
        return profile.resolve(BuildConfiguration.DEBUG)

    def test_write_response_file_keeps_order(self, tmp_path):
        rsp = Compiler.write_response_file(
            [tmp_path / "Drivers" / "CMSIS", tmp_path / "Core" / "Inc"], tmp_path / "out" / "includes.rsp"
        )

        lines = rsp.read_text(encoding="utf-8").splitlines()
        assert lines == [
            f'-I"{(tmp_path / "Drivers" / "CMSIS").as_posix()}"',
            f'-I"{(tmp_path / "Core" / "Inc").as_posix()}"',
        ]

    def test_c_compile_command(self, compiler, flags, project_dir):
        source = project_dir / "Core/Src/main.c"
        cmd = compiler.compile_command(source, Path("main.o"), flags, Path("includes.rsp"))

        assert cmd[0] == "arm-none-eabi-gcc"
        assert cmd[1 : 1 + len(flags.compile_command_flags())] == flags.compile_command_flags()
        assert "@includes.rsp" in cmd
        assert cmd[-4:] == ["-c", str(source), "-o", "main.o"]

    def test_asm_uses_preprocessor(self, compiler, flags, project_dir):
        cmd = compiler.compile_command(project_dir / "Core/Startup/startup_stm32f407vgtx.s", Path("s.o"), flags)

        assert cmd[:3] == ["arm-none-eabi-gcc", "-x", "assembler-with-cpp"]

    def test_cpp_uses_cpp_driver(self, compiler, flags):
        cmd = compiler.compile_command(Path("app.cpp"), Path("app.o"), flags)
        assert cmd[0] == "arm-none-eabi-g++"

    def test_unknown_extension(self, compiler, flags):
        with pytest.raises(CompilerError, match=r"\.h"):
            compiler.compile_command(Path("main.h"), Path("main.o"), flags)

    def test_compile_success(self, compiler, flags, project_dir, tmp_path):
        output = tmp_path / "obj" / "Core" / "Src" / "main.o"
        result = compiler.compile(project_dir / "Core/Src/main.c", output, flags)

        assert result.success
        assert result.object_file == output
        assert output.exists()

    def test_compile_failure_keeps_raw_output(self, compiler, flags, fake_runner, project_dir, tmp_path):
        fake_runner.compile_failures["main.c"] = ProcessResult(
            [], 1, "", "Core/Src/main.c:3:1: error: expected ';' before '}' token\n"
        )

        result = compiler.compile(project_dir / "Core/Src/main.c", tmp_path / "main.o", flags)

        assert not result.success
        assert result.object_file is None
        assert result.returncode == 1
        assert result.output == "Core/Src/main.c:3:1: error: expected ';' before '}' token"

    def test_link_command(self, compiler, flags, profile, tmp_path):
        objects = [tmp_path / "a.o", tmp_path / "b.o"]
        cmd = compiler.link_command(objects, tmp_path / "fw.elf", flags, libs=("c", "m"), map_file=tmp_path / "fw.map")

        assert cmd[0] == "arm-none-eabi-gcc"
        assert f"-T{profile.linker_script_path}" in cmd
        assert f"-Wl,-Map={tmp_path / 'fw.map'}" in cmd
        obj_index = cmd.index(str(objects[0]))
        assert cmd[obj_index : obj_index + 2] == [str(o) for o in objects]
        assert cmd[-4:] == ["-Wl,--start-group", "-lc", "-lm", "-Wl,--end-group"]

    def test_link_command_cpp_driver_without_libs(self, compiler, flags, tmp_path):
        cmd = compiler.link_command([tmp_path / "a.o"], tmp_path / "fw.elf", flags, use_cpp_driver=True)

        assert cmd[0] == "arm-none-eabi-g++"
        assert "-Wl,--start-group" not in cmd

    def test_objcopy(self, compiler, fake_runner, tmp_path):
        elf = tmp_path / "fw.elf"
        elf.write_bytes(b"ELF\n")

        result = compiler.objcopy(elf, tmp_path / "fw.bin", "binary")

        assert result.ok
        assert fake_runner.calls[-1] == ["arm-none-eabi-objcopy", "-O", "binary", str(elf), str(tmp_path / "fw.bin")]
        assert (tmp_path / "fw.bin").read_bytes() == b"ELF\n"
