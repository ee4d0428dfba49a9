"""Terminal helpers shared by the CLI and the API launcher."""

import os
import sys
from enum import Enum
from typing import Any


class AnsiColors(str, Enum):
    """
    ANSI color codes for terminal output.
    """

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[33m"
    BLUE = "\033[94m"
    RESET = "\033[0m"


def use_color() -> bool:
    """Color only interactive terminals, and honour the NO_COLOR convention."""
    return sys.stdout.isatty() and "NO_COLOR" not in os.environ


def colored_print(text: str, color: AnsiColors, *args: Any, **kwargs: Any) -> None:
    """
    Print text in color.

    Args:
        text: The text to print
        color: The color to use (AnsiColors enum)
        args: Additional positional arguments for print
        kwargs: Additional keyword arguments for print
    """
    if not use_color():
        print(text, *args, **kwargs)
        return
    print(f"{color.value}{text}{AnsiColors.RESET.value}", *args, **kwargs)
