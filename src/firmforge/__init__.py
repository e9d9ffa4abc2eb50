"""firmforge - build, flash and debug ARM Cortex-M firmware projects."""

__version__ = "0.1.0"
