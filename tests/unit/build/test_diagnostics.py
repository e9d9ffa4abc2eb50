"""Tests for compiler diagnostic extraction."""

from firmforge.build import Diagnostic, collect_distinct, parse_diagnostics

GPIO_OUTPUT = """\
Core/Src/gpio.c: In function 'MX_GPIO_Init':
Core/Src/gpio.c:42:5: error: 'GPIOZ' undeclared (first use in this function)
Core/Src/gpio.c:42:5: note: each undeclared identifier is reported only once
Core/Src/gpio.c:50:12: warning: unused variable 'tmp' [-Wunused-variable]
"""

MAIN_OUTPUT = """\
In file included from Core/Src/main.c:3:
Core/Inc/board.h:10:10: fatal error: missing_header.h: No such file or directory
compilation terminated.
"""


class TestParseDiagnostics:
    def test_errors_only_by_default(self):
        diags = parse_diagnostics(GPIO_OUTPUT)

        assert diags == [Diagnostic("Core/Src/gpio.c", 42, 5, "error", "'GPIOZ' undeclared (first use in this function)")]

    def test_fatal_error(self):
        diags = parse_diagnostics(MAIN_OUTPUT)

        assert len(diags) == 1
        assert diags[0].severity == "fatal error"
        assert diags[0].file == "Core/Inc/board.h"

    def test_warnings_on_request(self):
        diags = parse_diagnostics(GPIO_OUTPUT, severities=("warning",))

        assert [d.line for d in diags] == [50]

    def test_windows_drive_letter(self):
        diags = parse_diagnostics("C:\\proj\\Core\\Src\\main.c:7:1: error: expected ';'\n")

        assert diags[0].file == "C:\\proj\\Core\\Src\\main.c"
        assert diags[0].line == 7

    def test_no_column(self):
        diags = parse_diagnostics("startup.s:12: error: bad instruction `mvo r0,r1'\n")

        assert diags[0].column is None
        assert str(diags[0]) == "startup.s:12: error: bad instruction `mvo r0,r1'"

    def test_linker_error(self):
        output = (
            "/opt/gcc-arm/bin/../lib/gcc/arm-none-eabi/13.2.1/../../../../arm-none-eabi/bin/ld: "
            "cannot find -lfoo: No such file or directory\n"
            "collect2: error: ld returned 1 exit status\n"
        )
        diags = parse_diagnostics(output)

        assert diags[0] == Diagnostic(None, None, None, "error", "cannot find -lfoo: No such file or directory")
        assert str(diags[0]) == "error: cannot find -lfoo: No such file or directory"

    def test_linker_warning_ignored(self):
        output = "arm-none-eabi/bin/ld: warning: firmware.elf has a LOAD segment with RWX permissions\n"

        assert parse_diagnostics(output) == []


class TestCollectDistinct:
    def test_dedup_in_first_seen_order(self):
        diags = collect_distinct([GPIO_OUTPUT, MAIN_OUTPUT, GPIO_OUTPUT], limit=20)

        assert [d.file for d in diags] == ["Core/Src/gpio.c", "Core/Inc/board.h"]

    def test_limit(self):
        output = "".join(f"a.c:{i}:1: error: e{i}\n" for i in range(1, 30))

        assert len(collect_distinct([output], limit=5)) == 5

    def test_zero_limit(self):
        output = "a.c:1:1: error: e1\n"

        assert collect_distinct([output], limit=0) == []
