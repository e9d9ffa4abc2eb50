"""
Source set resolution.

This module handles:
- Expanding declared source roots ('<dir>/<glob> [recursive]') into files
- Keeping include directories exactly in declared order
- Producing a canonical, sorted file list so repeated resolutions over an
  unchanged tree are identical whatever order the filesystem lists entries
- Warning (not failing) when a declared root matches nothing

Directory traversal goes through a FileSystem interface so tests can run
against a virtual tree.
"""

import fnmatch
import hashlib
import logging
import os
import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

logger = logging.getLogger(__name__)

# Directories never descended into by a recursive root
EXCLUDED_DIRS = {".git", ".svn", "build", "__pycache__", "node_modules", ".vscode", ".settings"}

C_EXTENSIONS = {".c"}
CPP_EXTENSIONS = {".cpp", ".cc", ".cxx"}
ASM_EXTENSIONS = {".s", ".S", ".asm"}


class SourceResolutionWarning(UserWarning):
    """A declared source root matched no files."""

    pass


def source_language(path: Path) -> Optional[str]:
    """Return 'c', 'cpp' or 'asm' for a source file, None for anything else."""
    suffix = Path(path).suffix
    if suffix in C_EXTENSIONS:
        return "c"
    if suffix in CPP_EXTENSIONS:
        return "cpp"
    if suffix in ASM_EXTENSIONS:
        return "asm"
    return None


class FileSystem(ABC):
    """Minimal directory-listing interface used by the resolver."""

    @abstractmethod
    def is_dir(self, path: Path) -> bool:
        ...

    @abstractmethod
    def list_dir(self, path: Path) -> Tuple[List[str], List[str]]:
        """Return (file names, directory names) directly inside path.

        No ordering is guaranteed.
        """
        ...


class LocalFileSystem(FileSystem):
    """The real filesystem of the build host."""

    def is_dir(self, path: Path) -> bool:
        return Path(path).is_dir()

    def list_dir(self, path: Path) -> Tuple[List[str], List[str]]:
        files, dirs = [], []
        with os.scandir(path) as entries:
            for entry in entries:
                if entry.is_dir():
                    dirs.append(entry.name)
                elif entry.is_file():
                    files.append(entry.name)
        return files, dirs


class MemoryFileSystem(FileSystem):
    """
    Virtual directory tree built from a list of file paths.

    Listing order follows insertion order, so tests can feed the same tree
    in different orders and check the resolver output does not change.

    Example:
        fs = MemoryFileSystem(["/p/Core/Src/main.c", "/p/Core/Inc/main.h"])
    """

    def __init__(self, files: Iterable[str] = ()):
        self._dirs: Dict[PurePosixPath, Dict[str, None]] = {}
        self._files: Dict[PurePosixPath, Dict[str, None]] = {}
        for f in files:
            self.add_file(f)

    def add_file(self, path: str) -> None:
        p = PurePosixPath(Path(path).as_posix())
        self._files.setdefault(p.parent, {})[p.name] = None
        child = p.parent
        self._dirs.setdefault(child, {})
        while child.parent != child:
            self._dirs.setdefault(child.parent, {})[child.name] = None
            child = child.parent

    def add_dir(self, path: str) -> None:
        p = PurePosixPath(Path(path).as_posix())
        self._dirs.setdefault(p, {})
        while p.parent != p:
            self._dirs.setdefault(p.parent, {})[p.name] = None
            p = p.parent

    def is_dir(self, path: Path) -> bool:
        return PurePosixPath(Path(path).as_posix()) in self._dirs

    def list_dir(self, path: Path) -> Tuple[List[str], List[str]]:
        p = PurePosixPath(Path(path).as_posix())
        if p not in self._dirs:
            raise FileNotFoundError(str(path))
        return list(self._files.get(p, {})), list(self._dirs[p])


@dataclass(frozen=True)
class SourceRoot:
    """A declared source root: a glob under a directory, optionally recursive."""

    pattern: str
    recursive: bool = False

    @classmethod
    def parse(cls, text: str) -> "SourceRoot":
        """Parse '<pattern> [recursive]'."""
        parts = text.split()
        if len(parts) > 1 and parts[-1].lower() == "recursive":
            return cls(" ".join(parts[:-1]), True)
        return cls(text.strip(), False)

    @property
    def directory(self) -> str:
        head, _, _ = self.pattern.replace("\\", "/").rpartition("/")
        return head or "."

    @property
    def file_glob(self) -> str:
        return self.pattern.replace("\\", "/").rpartition("/")[2]

    def __str__(self) -> str:
        return f"{self.pattern} (recursive)" if self.recursive else self.pattern


@dataclass(frozen=True)
class SourceSet:
    """Immutable, canonically ordered set of source files plus include search order."""

    files: Tuple[Path, ...] = ()
    include_dirs: Tuple[Path, ...] = ()

    def __post_init__(self):
        files = tuple(Path(f) for f in self.files)
        if len(set(files)) != len(files):
            dupes = sorted({str(f) for f in files if files.count(f) > 1})
            raise ValueError(f"Duplicate source files: {', '.join(dupes)}")
        object.__setattr__(self, "files", files)
        object.__setattr__(self, "include_dirs", tuple(Path(d) for d in self.include_dirs))

    def __len__(self) -> int:
        return len(self.files)

    def fingerprint(self) -> str:
        digest = hashlib.sha256()
        for f in self.files:
            digest.update(b"F" + f.as_posix().encode("utf-8") + b"\0")
        for d in self.include_dirs:
            digest.update(b"I" + d.as_posix().encode("utf-8") + b"\0")
        return digest.hexdigest()


@dataclass
class ResolvedSources:
    """Result of a resolution: the source set plus any non-fatal warnings."""

    source_set: SourceSet
    warnings: List[SourceResolutionWarning] = field(default_factory=list)


class SourceResolver:
    """
    Resolves declared source roots into a SourceSet.

    The resolver:
    1. Splits each root into directory + file glob
    2. Lists matching files (descending subdirectories for recursive roots)
    3. Deduplicates and sorts the files by POSIX path
    4. Keeps include directories in declared order, never inferring any
    5. Warns about roots that match nothing
    """

    def __init__(self, project_dir: Path, filesystem: Optional[FileSystem] = None):
        """
        Initialize source resolver.

        Args:
            project_dir: Directory relative roots are resolved against
            filesystem: Filesystem to list (defaults to the local disk)
        """
        self.project_dir = Path(project_dir)
        self.filesystem = filesystem or LocalFileSystem()

    def resolve(
        self,
        roots: Sequence[SourceRoot],
        include_dirs: Sequence[str] = (),
    ) -> ResolvedSources:
        """
        Resolve source roots into a SourceSet.

        Args:
            roots: Declared roots, as SourceRoot or (pattern, recursive) tuples
            include_dirs: Include directories in search order

        Returns:
            ResolvedSources with the source set and collected warnings
        """
        collected: Set[Path] = set()
        issued: List[SourceResolutionWarning] = []

        for root in roots:
            if not isinstance(root, SourceRoot):
                root = SourceRoot(*root)
            matches = self._expand(root)
            if not matches:
                warning = SourceResolutionWarning(f"Source root matched no files: {root}")
                warnings.warn(warning, stacklevel=2)
                logger.warning(str(warning))
                issued.append(warning)
                continue
            logger.debug(f"Source root {root}: {len(matches)} files")
            collected.update(matches)

        ordered_includes: List[Path] = []
        for inc in include_dirs:
            path = self._absolute(inc)
            if path not in ordered_includes:
                ordered_includes.append(path)

        files = sorted(collected, key=lambda p: p.as_posix())
        return ResolvedSources(
            source_set=SourceSet(files=tuple(files), include_dirs=tuple(ordered_includes)),
            warnings=issued,
        )

    def _absolute(self, path: str) -> Path:
        p = Path(path)
        return p if p.is_absolute() else self.project_dir / p

    def _expand(self, root: SourceRoot) -> Set[Path]:
        base = self._absolute(root.directory)
        if not self.filesystem.is_dir(base):
            return set()

        matches: Set[Path] = set()
        pending = [base]
        while pending:
            directory = pending.pop()
            files, dirs = self.filesystem.list_dir(directory)
            for name in files:
                if fnmatch.fnmatchcase(name, root.file_glob):
                    matches.add(directory / name)
            if root.recursive:
                pending.extend(directory / d for d in dirs if d not in EXCLUDED_DIRS)
        return matches
