"""CLI utility functions for firmforge.

This module provides common utilities used across CLI commands including:
- Logging setup (console plus rotating log file in the build directory)
- Error handling and formatting
- Project path validation
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FILE_NAME = "firmforge.log"


def setup_logging(verbose: bool = False, log_file: Optional[Path] = None) -> None:
    """Setup logging for a CLI invocation.

    Args:
        verbose: Log DEBUG to the console instead of WARNING
        log_file: Rotating log file that always receives DEBUG and up
    """
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)

    # Re-running main() in one process (tests) must not stack handlers
    for handler in list(logger.handlers):
        if getattr(handler, "_firmforge", False):
            logger.removeHandler(handler)
            handler.close()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    console_handler._firmforge = True  # type: ignore[attr-defined]
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            str(log_file),
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_handler._firmforge = True  # type: ignore[attr-defined]
        logger.addHandler(file_handler)


def exit_code_for(error: BaseException) -> int:
    """Process exit code for a failed command.

    The failing tool's own exit code is passed through when the error carries
    one; anything else maps to 1.
    """
    returncode = getattr(error, "returncode", None)
    if isinstance(returncode, int) and 0 < returncode < 256:
        return returncode
    return 1


class ErrorFormatter:
    """Formats and displays error messages with ANSI color codes."""

    # ANSI color codes
    RED = "\033[1;31m"
    GREEN = "\033[1;32m"
    YELLOW = "\033[1;33m"
    RESET = "\033[0m"

    @staticmethod
    def print_error(title: str, message: str) -> None:
        """Print formatted error message.

        Args:
            title: Error title (e.g., "Configuration error", "Build failed")
            message: Error message details
        """
        print()
        print(f"{ErrorFormatter.RED}✗ {title}{ErrorFormatter.RESET}")
        print()
        print(message)
        print()

    @staticmethod
    def print_success(message: str) -> None:
        print()
        print(f"{ErrorFormatter.GREEN}✓ {message}{ErrorFormatter.RESET}")

    @staticmethod
    def print_warning(message: str) -> None:
        print()
        print(f"{ErrorFormatter.YELLOW}! {message}{ErrorFormatter.RESET}")

    @staticmethod
    def handle_tool_error(title: str, error: Exception) -> None:
        """Report an error from a firmforge stage and exit.

        Prints the stage that failed, the error message and the underlying
        tool's output unmodified, then exits with the tool's exit code.

        Args:
            title: Error title (e.g., "Build failed")
            error: Error carrying optional stage, output and returncode
        """
        stage = getattr(error, "stage", None)
        heading = f"{title} ({stage})" if stage else title

        lines = [str(error)]
        diagnostics = getattr(error, "diagnostics", None)
        if diagnostics:
            lines.append("")
            lines.append("Errors:")
            lines.extend(f"  {diag}" for diag in diagnostics)
        output = getattr(error, "output", "")
        if output:
            lines.append("")
            lines.append("Tool output:")
            lines.append(output.rstrip("\n"))

        ErrorFormatter.print_error(heading, "\n".join(lines))
        sys.exit(exit_code_for(error))

    @staticmethod
    def handle_keyboard_interrupt() -> None:
        """Handle KeyboardInterrupt with standard formatting."""
        ErrorFormatter.print_warning("Interrupted")
        sys.exit(130)  # Standard exit code for SIGINT

    @staticmethod
    def handle_unexpected_error(error: Exception, verbose: bool = False) -> None:
        """Handle unexpected errors with standard formatting.

        Args:
            error: The exception to handle
            verbose: Whether to print traceback
        """
        message = f"{type(error).__name__}: {error}"
        ErrorFormatter.print_error("Unexpected error", message)

        if verbose:
            import traceback

            print("Traceback:")
            print(traceback.format_exc())

        sys.exit(1)


class BannerFormatter:
    """Formats and displays banner messages with borders."""

    DEFAULT_WIDTH = 80
    DEFAULT_BORDER_CHAR = "="

    @staticmethod
    def format_banner(
        message: str,
        width: int = DEFAULT_WIDTH,
        border_char: str = DEFAULT_BORDER_CHAR,
    ) -> str:
        """Format a banner message with top and bottom borders.

        Args:
            message: The message to display (can be multi-line)
            width: Width of the banner in characters (default: 80)
            border_char: Character to use for borders (default: "=")

        Returns:
            Formatted banner string with borders, text indented by 2 spaces
        """
        border = border_char * width
        lines = [border]
        lines.extend("  " + line for line in message.split("\n"))
        lines.append(border)
        return "\n".join(lines)

    @staticmethod
    def print_banner(message: str, width: int = DEFAULT_WIDTH) -> None:
        print()
        print(BannerFormatter.format_banner(message, width=width))


class PathValidator:
    """Validates project paths and directories."""

    @staticmethod
    def validate_project_dir(project_dir: Path) -> None:
        """Validate that project directory exists and is a directory.

        Args:
            project_dir: Path to validate

        Raises:
            SystemExit: If path doesn't exist or isn't a directory
        """
        if not project_dir.exists():
            print(f"{ErrorFormatter.RED}✗ Error: Path does not exist: {project_dir}{ErrorFormatter.RESET}")
            sys.exit(2)
        if not project_dir.is_dir():
            print(f"{ErrorFormatter.RED}✗ Error: Path is not a directory: {project_dir}{ErrorFormatter.RESET}")
            sys.exit(2)
