"""
Firmware artifact analysis.

This module inspects a linked ELF:
- Section sizes from `size -A`, summed per memory class (flash / RAM)
- Symbol sizes from `nm -S --size-sort`, largest first
- Memory region capacities from the linker script's MEMORY block, with
  per-region usage and a non-fatal warning when a region overflows

Reports are rendered as plain text tables with a fixed ordering so they can
be diffed across builds to track size regressions.
"""

import logging
import re
import warnings
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..config import ToolchainProfile
from ..process import ProcessRunner

logger = logging.getLogger(__name__)


class SizeExceededWarning(UserWarning):
    """A memory region is used beyond its declared capacity."""

    pass


class AnalysisError(Exception):
    """Raised when the size or symbol tool fails on an artifact."""

    def __init__(self, message: str, output: str = "", returncode: Optional[int] = None):
        super().__init__(message)
        self.stage = "analyze"
        self.output = output
        self.returncode = returncode


class MemoryClass(Enum):
    FLASH = "flash"
    RAM = "ram"
    # Initialized data: stored in flash, copied to RAM at startup
    FLASH_AND_RAM = "flash+ram"


# Sections that occupy no target memory
_NON_ALLOC_PREFIXES = (
    ".debug",
    ".comment",
    ".ARM.attributes",
    ".riscv.attributes",
    ".gnu.attributes",
    ".stab",
    ".symtab",
    ".strtab",
    ".shstrtab",
)
_RAM_MARKERS = ("bss", "noinit", "heap", "stack")
_DATA_SECTIONS = (".data", ".tdata", ".ramfunc", ".ccmram", ".sdata")


def classify_section(name: str) -> Optional[MemoryClass]:
    """Return the memory class of an output section, None if not allocated."""
    if name.startswith(_NON_ALLOC_PREFIXES):
        return None
    lowered = name.lower()
    if any(marker in lowered for marker in _RAM_MARKERS):
        return MemoryClass.RAM
    if any(name == s or name.startswith(s + ".") for s in _DATA_SECTIONS):
        return MemoryClass.FLASH_AND_RAM
    return MemoryClass.FLASH


def percent_of(used: int, capacity: int) -> float:
    """Usage percentage rounded to two decimals (0.0 for zero capacity)."""
    if capacity <= 0:
        return 0.0
    return round(used * 100.0 / capacity, 2)


@dataclass(frozen=True)
class MemoryRegion:
    """A named memory area declared in the linker script."""

    name: str
    origin: int
    length: int
    attributes: str = ""

    @property
    def end(self) -> int:
        return self.origin + self.length

    @property
    def is_flash(self) -> bool:
        attrs = self.attributes.lower()
        if "x" in attrs and "w" not in attrs:
            return True
        upper = self.name.upper()
        return "FLASH" in upper or "ROM" in upper

    def contains(self, address: int) -> bool:
        return self.origin <= address < self.end


_MEMORY_BLOCK_RE = re.compile(r"\bMEMORY\s*\{(?P<body>.*?)\}", re.DOTALL)
_REGION_RE = re.compile(
    r"(?P<name>[A-Za-z_][\w.]*)\s*(?:\((?P<attrs>[^)]*)\))?\s*:\s*"
    r"(?:ORIGIN|org|o)\s*=\s*(?P<origin>[^,]+?)\s*,\s*"
    r"(?:LENGTH|len|l)\s*=\s*(?P<length>[^\n;]+)"
)
_SIZE_TERM_RE = re.compile(r"^(0[xX][0-9a-fA-F]+|\d+)\s*([KkMm]?)$")


def _parse_size_expr(expr: str) -> int:
    """Evaluate 'a [+|- b ...]' where each term is hex/decimal with optional K/M."""
    total = 0
    for sign, term in re.findall(r"([+-]?)\s*([^+-]+)", expr.strip()):
        match = _SIZE_TERM_RE.match(term.strip())
        if not match:
            raise ValueError(f"Unsupported linker script expression: {expr!r}")
        value = int(match.group(1), 0)
        suffix = match.group(2).upper()
        if suffix == "K":
            value *= 1024
        elif suffix == "M":
            value *= 1024 * 1024
        total = total - value if sign == "-" else total + value
    return total


def parse_linker_script(text: str) -> List[MemoryRegion]:
    """
    Extract memory regions from a linker script.

    Example:
        MEMORY
        {
          RAM   (xrw) : ORIGIN = 0x20000000, LENGTH = 128K
          FLASH (rx)  : ORIGIN = 0x8000000,  LENGTH = 1024K
        }
        -> [MemoryRegion('RAM', 0x20000000, 131072, 'xrw'),
            MemoryRegion('FLASH', 0x8000000, 1048576, 'rx')]
    """
    text = re.sub(r"/\*.*?\*/", " ", text, flags=re.DOTALL)
    block = _MEMORY_BLOCK_RE.search(text)
    if not block:
        return []

    regions = []
    for match in _REGION_RE.finditer(block.group("body")):
        regions.append(
            MemoryRegion(
                name=match.group("name"),
                origin=_parse_size_expr(match.group("origin")),
                length=_parse_size_expr(match.group("length")),
                attributes=(match.group("attrs") or "").strip(),
            )
        )
    return regions


@dataclass(frozen=True)
class SectionSize:
    name: str
    size: int
    address: int
    memory_class: MemoryClass
    region: Optional[str] = None


@dataclass(frozen=True)
class RegionUsage:
    name: str
    used_bytes: int
    capacity_bytes: int

    @property
    def percent(self) -> float:
        return percent_of(self.used_bytes, self.capacity_bytes)

    @property
    def exceeded(self) -> bool:
        return self.used_bytes > self.capacity_bytes


@dataclass
class SizeReport:
    """Section sizes, per-class totals and per-region usage of an artifact."""

    sections: Dict[str, int]
    total_flash_bytes: int
    total_ram_bytes: int
    regions: List[RegionUsage] = field(default_factory=list)
    section_details: List[SectionSize] = field(default_factory=list)

    @staticmethod
    def parse(size_output: str, regions: Optional[List[MemoryRegion]] = None) -> "SizeReport":
        """
        Parse `size -A` output.

        Args:
            size_output: Output of `<prefix>size -A firmware.elf`
            regions: Memory regions from the linker script

        Returns:
            SizeReport. Sections keep the tool's (section header) order.
        """
        regions = regions or []
        details: List[SectionSize] = []

        for line in size_output.splitlines():
            parts = line.split()
            if len(parts) < 3 or not parts[0].startswith("."):
                continue
            try:
                size = int(parts[1])
                address = int(parts[2])
            except ValueError:
                continue
            memory_class = classify_section(parts[0])
            if memory_class is None:
                continue
            home = next((r for r in regions if r.contains(address)), None)
            details.append(
                SectionSize(parts[0], size, address, memory_class, home.name if home else None)
            )

        flash_total = sum(
            s.size for s in details if s.memory_class in (MemoryClass.FLASH, MemoryClass.FLASH_AND_RAM)
        )
        ram_total = sum(
            s.size for s in details if s.memory_class in (MemoryClass.RAM, MemoryClass.FLASH_AND_RAM)
        )

        return SizeReport(
            sections={s.name: s.size for s in details},
            total_flash_bytes=flash_total,
            total_ram_bytes=ram_total,
            regions=_region_usage(details, regions),
            section_details=details,
        )

    def usage(self, region_name: Optional[str]) -> Optional[RegionUsage]:
        return next((r for r in self.regions if r.name == region_name), None)

    @property
    def exceeded_regions(self) -> List[RegionUsage]:
        return [r for r in self.regions if r.exceeded]


def _region_usage(details: List[SectionSize], regions: List[MemoryRegion]) -> List[RegionUsage]:
    """Charge each section to the region holding its address.

    Initialized-data sections are also charged to the first flash region,
    where their load image lives.
    """
    used = {r.name: 0 for r in regions}
    flash_region = next((r for r in regions if r.is_flash), None)

    for section in details:
        if section.region is not None:
            used[section.region] += section.size
        if (
            section.memory_class is MemoryClass.FLASH_AND_RAM
            and flash_region is not None
            and section.region != flash_region.name
        ):
            used[flash_region.name] += section.size

    return [RegionUsage(r.name, used[r.name], r.length) for r in regions]


@dataclass(frozen=True)
class SymbolEntry:
    name: str
    size: int
    kind: str = "?"


@dataclass
class SymbolReport:
    """Symbols sorted by size descending, ties broken by name."""

    symbols: List[SymbolEntry] = field(default_factory=list)

    @staticmethod
    def parse(nm_output: str) -> "SymbolReport":
        """
        Parse `nm -S --size-sort -C` output.

        Lines look like '08000194 00000074 T Reset_Handler'; demangled C++
        names may contain spaces. Symbols without a size are skipped.
        """
        entries = []
        for line in nm_output.splitlines():
            parts = line.strip().split(maxsplit=3)
            if len(parts) < 4:
                continue
            _addr, size_str, kind, name = parts
            try:
                size = int(size_str, 16)
            except ValueError:
                continue
            entries.append(SymbolEntry(name=name, size=size, kind=kind))
        entries.sort(key=lambda s: (-s.size, s.name, s.kind))
        return SymbolReport(entries)

    def top(self, count: int) -> List[SymbolEntry]:
        return self.symbols[:count]

    def __iter__(self):
        return iter(self.symbols)

    def __len__(self) -> int:
        return len(self.symbols)


@dataclass
class AnalysisResult:
    size_report: SizeReport
    symbol_report: SymbolReport
    warnings: List[SizeExceededWarning] = field(default_factory=list)


class ArtifactAnalyzer:
    """
    Inspects a linked firmware image.

    Example usage:
        analyzer = ArtifactAnalyzer(profile)
        result = analyzer.analyze(Path("build/Debug/main/firmware.elf"))
        print(format_size_report(result.size_report))
    """

    def __init__(
        self,
        profile: ToolchainProfile,
        runner: Optional[ProcessRunner] = None,
        cwd: Optional[Path] = None,
    ):
        self.profile = profile
        self.runner = runner or ProcessRunner()
        self.cwd = cwd

    def load_regions(self) -> List[MemoryRegion]:
        script = self.profile.linker_script_path
        if script is None or not Path(script).exists():
            logger.warning(f"Linker script not readable, region usage skipped: {script}")
            return []
        try:
            return parse_linker_script(Path(script).read_text(encoding="utf-8", errors="replace"))
        except (OSError, ValueError) as e:
            logger.warning(f"Linker script MEMORY block not understood, region usage skipped: {e}")
            return []

    def analyze(self, elf_path: Path) -> AnalysisResult:
        """
        Analyze an artifact.

        Args:
            elf_path: Linked ELF file

        Returns:
            AnalysisResult with size report, symbol report and any
            SizeExceededWarning issued (region overflow never fails here;
            the linker is authoritative for hard overflows)

        Raises:
            AnalysisError: If the size or nm tool fails
        """
        size_result = self.runner.run([self.profile.size_tool_path, "-A", str(elf_path)], cwd=self.cwd)
        if not size_result.ok:
            raise AnalysisError(
                f"Size tool failed on {elf_path.name}",
                size_result.output,
                size_result.returncode,
            )
        size_report = SizeReport.parse(size_result.stdout, self.load_regions())

        symbol_report = SymbolReport()
        if self.profile.nm_path:
            nm_result = self.runner.run(
                [self.profile.nm_path, "-S", "--size-sort", "-C", str(elf_path)], cwd=self.cwd
            )
            if not nm_result.ok:
                raise AnalysisError(
                    f"Symbol tool failed on {elf_path.name}",
                    nm_result.output,
                    nm_result.returncode,
                )
            symbol_report = SymbolReport.parse(nm_result.stdout)
        else:
            logger.info("No nm tool configured, symbol report skipped")

        issued = []
        for usage in size_report.exceeded_regions:
            warning = SizeExceededWarning(
                f"Region {usage.name} overflow: {usage.used_bytes} bytes used of "
                f"{usage.capacity_bytes} ({usage.percent:.2f}%)"
            )
            warnings.warn(warning, stacklevel=2)
            logger.warning(str(warning))
            issued.append(warning)

        return AnalysisResult(size_report, symbol_report, issued)

    @staticmethod
    def write_reports(result: AnalysisResult, elf_path: Path) -> Tuple[Path, Path]:
        """Write <name>.size.txt and <name>.symbols.txt next to the artifact."""
        size_path = elf_path.with_suffix(".size.txt")
        symbols_path = elf_path.with_suffix(".symbols.txt")
        size_path.write_text(format_size_report(result.size_report), encoding="utf-8")
        symbols_path.write_text(format_symbol_report(result.symbol_report), encoding="utf-8")
        return size_path, symbols_path


def format_size_report(report: SizeReport) -> str:
    """Render the section table followed by the region table."""
    lines = [f"{'Section':<24} {'Bytes':>10}  {'Region':<12} {'% of region':>11}"]
    for section in report.section_details:
        usage = report.usage(section.region)
        percent = f"{percent_of(section.size, usage.capacity_bytes):.2f}" if usage else "-"
        lines.append(
            f"{section.name:<24} {section.size:>10}  {section.region or '-':<12} {percent:>11}"
        )

    lines.append("")
    lines.append(f"{'Region':<12} {'Used':>10} {'Capacity':>10} {'Percent':>8}")
    for usage in report.regions:
        flag = "  OVERFLOW" if usage.exceeded else ""
        lines.append(
            f"{usage.name:<12} {usage.used_bytes:>10} {usage.capacity_bytes:>10} "
            f"{usage.percent:>7.2f}%{flag}"
        )

    lines.append("")
    lines.append(f"Total flash: {report.total_flash_bytes} bytes")
    lines.append(f"Total RAM:   {report.total_ram_bytes} bytes")
    return "\n".join(lines) + "\n"


def format_symbol_report(report: SymbolReport, limit: Optional[int] = None) -> str:
    """Render symbols as 'rank size type name' lines, largest first."""
    symbols = report.symbols if limit is None else report.top(limit)
    lines = [f"{'#':>5} {'Bytes':>10} {'T':>1}  Symbol"]
    for rank, symbol in enumerate(symbols, start=1):
        lines.append(f"{rank:>5} {symbol.size:>10} {symbol.kind:>1}  {symbol.name}")
    return "\n".join(lines) + "\n"
