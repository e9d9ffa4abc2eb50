"""
Command-line interface for firmforge.

This module provides the `firmforge` CLI tool for building, flashing and
debugging ARM Cortex-M firmware projects.
"""

import argparse
import sys
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from firmforge import __version__
from firmforge.build import (
    AnalysisError,
    BuildError,
    BuildOrchestrator,
    BuildResult,
    BuildTargetRegistry,
    SizeExceededWarning,
    SourceResolutionWarning,
    format_size_report,
    format_symbol_report,
)
from firmforge.cli_utils import (
    LOG_FILE_NAME,
    BannerFormatter,
    ErrorFormatter,
    PathValidator,
    setup_logging,
)
from firmforge.config import (
    BuildConfiguration,
    ConfigurationError,
    ProjectConfig,
    load_debug_config,
)
from firmforge.deploy import (
    BusyError,
    DebugSessionBootstrap,
    DebugSessionError,
    DeploymentDriver,
    DeploymentError,
    ProbeLock,
    ProgrammerConfig,
)
from firmforge.deploy.probe_lock import DEFAULT_LOCK_DIR

TOP_SYMBOLS = 10


@dataclass
class BuildArgs:
    """Arguments shared by every command that builds."""

    project_dir: Path
    build_dir: Optional[Path] = None
    configuration: str = "Debug"
    target: Optional[str] = None
    jobs: Optional[int] = None
    verbose: bool = False


@dataclass
class FlashArgs(BuildArgs):
    """Arguments for the flash and test commands."""

    interface: Optional[str] = None
    no_reset: bool = False


@dataclass
class DebugArgs(BuildArgs):
    """Arguments for the debug command."""

    launch: Optional[Path] = None
    launch_name: Optional[str] = None


@dataclass
class CleanArgs:
    """Arguments for the clean command."""

    project_dir: Path
    build_dir: Optional[Path] = None
    configuration: str = "Debug"
    all: bool = False
    verbose: bool = False


def _load_project(args, resolve_targets: bool = True) -> Tuple[ProjectConfig, BuildOrchestrator]:
    config = ProjectConfig.from_project_dir(args.project_dir)
    build_dir = Path(args.build_dir) if args.build_dir else config.get_build_dir()
    setup_logging(args.verbose, build_dir / LOG_FILE_NAME)

    if resolve_targets:
        registry = BuildTargetRegistry.from_project(config, build_dir)
    else:
        registry = BuildTargetRegistry(build_dir)

    orchestrator = BuildOrchestrator(
        config.get_toolchain_profile(),
        registry,
        config.project_dir,
        jobs=getattr(args, "jobs", None),
        show_progress=not args.verbose,
    )
    return config, orchestrator


def _default_target(registry: BuildTargetRegistry) -> str:
    if "main" in registry or not registry.names():
        return "main"
    return registry.names()[0]


def _run_build(args: BuildArgs, default_target: Optional[str] = None) -> Tuple[ProjectConfig, BuildResult]:
    """Build and analyze one target, printing the summary.

    Without --target the build uses default_target, which must exist. With
    neither, it uses 'main', or the first declared target.
    """
    configuration = BuildConfiguration.parse(args.configuration)
    config, orchestrator = _load_project(args)
    target = args.target or default_target or _default_target(orchestrator.registry)

    if args.verbose:
        print(f"Building project: {config.project_dir}")
        print(f"Target: {target}")
        print(f"Configuration: {configuration}")
        print()
    else:
        print(f"Building {target} ({configuration})...")

    result = orchestrator.build(target, configuration)

    ErrorFormatter.print_success("Build successful!")
    print()
    print(f"Firmware: {result.artifact.path}")
    if result.artifact.size_report is not None:
        print()
        print(format_size_report(result.artifact.size_report), end="")
    if result.artifact.symbol_report is not None and len(result.artifact.symbol_report):
        print()
        print(f"Largest symbols (top {TOP_SYMBOLS}):")
        print(format_symbol_report(result.artifact.symbol_report, limit=TOP_SYMBOLS), end="")
    for warning in result.warnings:
        ErrorFormatter.print_warning(str(warning))
    print()
    print(f"Build time: {result.build_time:.2f}s")
    return config, result


def _handle_failure(error: Exception, verbose: bool) -> None:
    if isinstance(error, ConfigurationError):
        ErrorFormatter.handle_tool_error("Configuration error", error)
    elif isinstance(error, (BuildError, AnalysisError)):
        ErrorFormatter.handle_tool_error("Build failed!", error)
    elif isinstance(error, BusyError):
        ErrorFormatter.handle_tool_error("Probe busy", error)
    elif isinstance(error, DeploymentError):
        ErrorFormatter.handle_tool_error("Deployment failed!", error)
    elif isinstance(error, DebugSessionError):
        ErrorFormatter.handle_tool_error("Debug session failed!", error)
    else:
        ErrorFormatter.handle_unexpected_error(error, verbose)


def build_command(args: BuildArgs) -> None:
    """Build and analyze firmware.

    Examples:
        firmforge build                    # Build 'main' in Debug
        firmforge build -c Release         # Release build
        firmforge build -t test            # Build the test firmware
        firmforge build -j 8 --verbose     # 8 parallel compiles, verbose output
    """
    BannerFormatter.print_banner(f"firmforge {__version__}")
    print()

    try:
        _run_build(args)
        sys.exit(0)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        _handle_failure(e, args.verbose)


def flash_command(args: FlashArgs, default_target: Optional[str] = None) -> None:
    """Build firmware, then write it to the device.

    Examples:
        firmforge flash                    # Build and flash 'main'
        firmforge flash -c Release         # Flash the Release build
        firmforge flash --interface JTAG   # Use JTAG instead of SWD
        firmforge flash --no-reset         # Leave the core halted after programming
    """
    BannerFormatter.print_banner(f"firmforge {__version__}")
    print()

    try:
        config, result = _run_build(args, default_target)

        programmer = ProgrammerConfig.from_settings(config.get_programmer_settings())
        driver = DeploymentDriver(programmer, ProbeLock(DEFAULT_LOCK_DIR))

        print()
        print(f"Flashing {result.artifact.path.name} with {programmer.tool}...")
        deployment = driver.deploy(
            result.artifact,
            interface=args.interface,
            reset_after=not args.no_reset,
        )
        if args.verbose and deployment.stdout:
            print(deployment.stdout)

        ErrorFormatter.print_success("Deployment successful!")
        sys.exit(0)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        _handle_failure(e, args.verbose)


def flash_test_command(args: FlashArgs) -> None:
    """Build the test firmware and flash it.

    Examples:
        firmforge test                     # Build and flash target 'test'
        firmforge test -t unit_tests       # Another test target
    """
    flash_command(args, default_target="test")


def debug_command(args: DebugArgs) -> None:
    """Build firmware, start a debug server and attach gdb.

    Examples:
        firmforge debug                            # Uses .vscode/launch.json
        firmforge debug --launch-name "Debug F4"   # Pick a launch configuration
    """
    BannerFormatter.print_banner(f"firmforge {__version__}")
    print()

    try:
        config, result = _run_build(args)

        launch_path, launch_name = config.get_debug_launch()
        server_config = load_debug_config(
            args.launch or launch_path,
            args.launch_name or launch_name,
        )
        profile = config.get_toolchain_profile()
        bootstrap = DebugSessionBootstrap(ProbeLock(DEFAULT_LOCK_DIR), gdb_path=profile.gdb_path)

        print()
        print(f"Starting {server_config.server} debug server on port {server_config.gdb_port}...")
        with bootstrap.start(result.artifact, server_config) as session:
            returncode = session.wait()
        sys.exit(returncode)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        _handle_failure(e, args.verbose)


def clean_command(args: CleanArgs) -> None:
    """Remove build outputs.

    Examples:
        firmforge clean                    # Remove the Debug tree
        firmforge clean -c Release         # Remove the Release tree
        firmforge clean --all              # Remove the whole build directory
    """
    try:
        configuration = None if args.all else BuildConfiguration.parse(args.configuration)
        _config, orchestrator = _load_project(args, resolve_targets=False)
        removed = orchestrator.clean(configuration)
        ErrorFormatter.print_success(f"Removed {removed}")
        sys.exit(0)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        _handle_failure(e, args.verbose)


def _add_common_arguments(parser: argparse.ArgumentParser, builds: bool = True) -> None:
    parser.add_argument(
        "project_dir",
        nargs="?",
        type=Path,
        default=Path.cwd(),
        help="Project directory containing firmforge.ini (default: current directory)",
    )
    parser.add_argument(
        "-b",
        "--build-dir",
        type=Path,
        default=None,
        help="Build directory (default: [project] build_dir, or build/)",
    )
    parser.add_argument(
        "-c",
        "--configuration",
        default="Debug",
        help="Build configuration: Debug or Release (default: Debug)",
    )
    if builds:
        parser.add_argument(
            "-t",
            "--target",
            default=None,
            help="Build target (default: main, or the first declared target)",
        )
        parser.add_argument(
            "-j",
            "--jobs",
            type=int,
            default=None,
            help="Parallel compile jobs (default: CPU count)",
        )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show verbose output",
    )


def _add_flash_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--interface",
        default=None,
        help="Probe interface: SWD or JTAG (default: [programmer] interface)",
    )
    parser.add_argument(
        "--no-reset",
        action="store_true",
        help="Do not reset the target after programming",
    )


def main() -> None:
    """firmforge - firmware build and deployment for ARM Cortex-M projects."""
    parser = argparse.ArgumentParser(
        prog="firmforge",
        description="firmforge - build, flash and debug ARM Cortex-M firmware",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"firmforge {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    build_parser = subparsers.add_parser("build", help="Build and analyze firmware")
    _add_common_arguments(build_parser)

    flash_parser = subparsers.add_parser("flash", help="Build and flash firmware")
    _add_common_arguments(flash_parser)
    _add_flash_arguments(flash_parser)

    test_parser = subparsers.add_parser("test", help="Build and flash the test firmware")
    _add_common_arguments(test_parser)
    _add_flash_arguments(test_parser)

    debug_parser = subparsers.add_parser("debug", help="Build firmware and start a debug session")
    _add_common_arguments(debug_parser)
    debug_parser.add_argument(
        "--launch",
        type=Path,
        default=None,
        help="launch.json to read the debug server from (default: [debug] launch)",
    )
    debug_parser.add_argument(
        "--launch-name",
        default=None,
        help="Launch configuration name (default: first cortex-debug entry)",
    )

    clean_parser = subparsers.add_parser("clean", help="Remove build outputs")
    _add_common_arguments(clean_parser, builds=False)
    clean_parser.add_argument(
        "--all",
        action="store_true",
        help="Remove the whole build directory",
    )

    parsed_args = parser.parse_args()

    if not parsed_args.command:
        parser.print_help()
        sys.exit(0)

    PathValidator.validate_project_dir(parsed_args.project_dir)

    # Logged and collected on the results; the CLI prints them itself
    warnings.simplefilter("ignore", SourceResolutionWarning)
    warnings.simplefilter("ignore", SizeExceededWarning)

    common = dict(
        project_dir=parsed_args.project_dir,
        build_dir=parsed_args.build_dir,
        configuration=parsed_args.configuration,
        verbose=parsed_args.verbose,
    )

    if parsed_args.command == "build":
        build_command(BuildArgs(target=parsed_args.target, jobs=parsed_args.jobs, **common))
    elif parsed_args.command in ("flash", "test"):
        flash_args = FlashArgs(
            target=parsed_args.target,
            jobs=parsed_args.jobs,
            interface=parsed_args.interface,
            no_reset=parsed_args.no_reset,
            **common,
        )
        if parsed_args.command == "flash":
            flash_command(flash_args)
        else:
            flash_test_command(flash_args)
    elif parsed_args.command == "debug":
        debug_command(
            DebugArgs(
                target=parsed_args.target,
                jobs=parsed_args.jobs,
                launch=parsed_args.launch,
                launch_name=parsed_args.launch_name,
                **common,
            )
        )
    elif parsed_args.command == "clean":
        clean_command(CleanArgs(all=parsed_args.all, **common))


if __name__ == "__main__":
    main()
