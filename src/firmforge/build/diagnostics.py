"""Compiler diagnostic extraction.

GCC/Clang report problems as 'file:line:col: severity: message'. When a
build has several failing translation units we want to report every
distinct error once, in the order first seen, without losing the raw
compiler output (which is kept separately and shown verbatim).
"""

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

_DIAGNOSTIC_RE = re.compile(
    r"^(?P<file>[^:\n]+(?::\\[^:\n]+)?):(?P<line>\d+):(?:(?P<column>\d+):)?\s*"
    r"(?P<severity>fatal error|error|warning|note):\s*(?P<message>.*)$"
)
_LINKER_RE = re.compile(r"^.*?\bld(?:\.exe)?:\s*(?P<message>.+)$")


@dataclass(frozen=True)
class Diagnostic:
    file: Optional[str]
    line: Optional[int]
    column: Optional[int]
    severity: str
    message: str

    def __str__(self) -> str:
        if self.file is None:
            return f"{self.severity}: {self.message}"
        location = f"{self.file}:{self.line}"
        if self.column is not None:
            location += f":{self.column}"
        return f"{location}: {self.severity}: {self.message}"


def parse_diagnostics(output: str, severities: Iterable[str] = ("error", "fatal error")) -> List[Diagnostic]:
    """Extract diagnostics of the given severities from compiler output."""
    wanted = set(severities)
    found = []
    for raw in output.splitlines():
        match = _DIAGNOSTIC_RE.match(raw.strip())
        if match and match.group("severity") in wanted:
            column = match.group("column")
            found.append(
                Diagnostic(
                    file=match.group("file"),
                    line=int(match.group("line")),
                    column=int(column) if column else None,
                    severity=match.group("severity"),
                    message=match.group("message").strip(),
                )
            )
            continue
        linker = _LINKER_RE.match(raw.strip())
        if linker and "error" in wanted and not linker.group("message").startswith("warning"):
            found.append(Diagnostic(None, None, None, "error", linker.group("message").strip()))
    return found


def collect_distinct(outputs: Iterable[str], limit: int) -> List[Diagnostic]:
    """
    Collect distinct error diagnostics across several tool outputs.

    Args:
        outputs: Raw outputs, in report order
        limit: Maximum number of diagnostics returned

    Returns:
        Deduplicated diagnostics in first-seen order, at most ``limit``
    """
    seen = set()
    distinct: List[Diagnostic] = []
    for output in outputs:
        for diag in parse_diagnostics(output):
            if len(distinct) >= limit:
                return distinct
            if diag in seen:
                continue
            seen.add(diag)
            distinct.append(diag)
    return distinct
