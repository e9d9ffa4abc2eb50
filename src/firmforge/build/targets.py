"""
Build target registry.

A build target is a named executable (main firmware, test firmware, ...)
bound to one SourceSet. Every target shares the project's ToolchainProfile.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from ..config import BuildConfiguration, ConfigurationError, ProjectConfig
from .source_resolver import SourceResolutionWarning, SourceResolver, SourceSet


@dataclass(frozen=True)
class BuildTarget:
    """A named buildable executable definition."""

    name: str
    source_set: SourceSet
    output_name: str
    extra_link_libs: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "extra_link_libs", tuple(self.extra_link_libs))


class BuildTargetRegistry:
    """
    Holds the targets of one build session.

    Targets are immutable once registered and names are unique. Artifact
    paths are namespaced by configuration so Release and Debug outputs of
    the same target coexist on disk.

    Layout:
        <build_dir>/<Configuration>/<target>/<output>.elf
        <build_dir>/<Configuration>/<target>/obj/...
    """

    def __init__(self, build_dir: Path):
        self.build_dir = Path(build_dir)
        self._targets: Dict[str, BuildTarget] = {}
        self.warnings: List[SourceResolutionWarning] = []

    @classmethod
    def from_project(
        cls,
        config: ProjectConfig,
        build_dir: Optional[Path] = None,
        resolver: Optional[SourceResolver] = None,
    ) -> "BuildTargetRegistry":
        """
        Create a registry from the [target:*] and [sources:*] sections.

        Each source set is resolved once even when several targets share it.
        Resolution warnings are kept on the registry.
        """
        registry = cls(build_dir or config.get_build_dir())
        resolver = resolver or SourceResolver(config.project_dir)

        resolved = {}
        for declaration in config.get_targets():
            if declaration.sources not in resolved:
                result = resolver.resolve(
                    config.get_source_roots(declaration.sources),
                    config.get_include_dirs(declaration.sources),
                )
                registry.warnings.extend(result.warnings)
                resolved[declaration.sources] = result.source_set

            registry.register(
                BuildTarget(
                    name=declaration.name,
                    source_set=resolved[declaration.sources],
                    output_name=declaration.output_name,
                    extra_link_libs=declaration.link_libs,
                )
            )
        return registry

    def register(self, target: BuildTarget) -> None:
        """
        Register a target.

        Raises:
            ConfigurationError: If a target with the same name already exists
        """
        if target.name in self._targets:
            raise ConfigurationError(f"Duplicate build target name: '{target.name}'")
        self._targets[target.name] = target

    def get(self, name: str) -> BuildTarget:
        try:
            return self._targets[name]
        except KeyError:
            available = ", ".join(self._targets) or "none"
            raise ConfigurationError(
                f"Unknown build target '{name}'. Available targets: {available}"
            ) from None

    def names(self) -> List[str]:
        return list(self._targets)

    def __contains__(self, name: object) -> bool:
        return name in self._targets

    def __iter__(self) -> Iterator[BuildTarget]:
        return iter(self._targets.values())

    def __len__(self) -> int:
        return len(self._targets)

    def configuration_dir(self, configuration: BuildConfiguration) -> Path:
        return self.build_dir / configuration.value

    def output_dir(self, target: BuildTarget, configuration: BuildConfiguration) -> Path:
        return self.configuration_dir(configuration) / target.name

    def object_dir(self, target: BuildTarget, configuration: BuildConfiguration) -> Path:
        return self.output_dir(target, configuration) / "obj"

    def artifact_path(self, target: BuildTarget, configuration: BuildConfiguration) -> Path:
        """Path of the linked ELF for (target, configuration)."""
        return self.output_dir(target, configuration) / f"{target.output_name}.elf"
