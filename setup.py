"""
Setup file.
"""

from setuptools import setup

URL = "https://github.com/firmforge/firmforge"
KEYWORDS = "embedded arm cortex-m stm32 firmware build flash debug openocd gdb"


if __name__ == "__main__":
    setup(
        keywords=KEYWORDS,
        url=URL,
    )
