from __future__ import annotations

import os
import sys
from datetime import datetime
from pathlib import Path
from typing import TextIO

from rich.console import Console

DEBUG_TO_STDOUT = os.getenv("DICTATO_DEBUG", "false").lower() == "true"
# the live status display and the debug trace would garble each other
OUTPUT_TO_STDOUT = not DEBUG_TO_STDOUT


class ConsoleWithLogging:
    """Terminal console doubled by a plain-text log file.

    ``print`` only reaches the terminal, ``log`` only the file, ``print_and_log``
    both. Log lines are never wrapped unless a width is asked for.
    """

    LOG_WIDTH = 5000

    def __init__(self, log_file: TextIO, terminal: Console | None = None):
        self.console = terminal or Console()
        self.log_file = log_file
        self.log_console = Console(file=log_file, force_terminal=False, legacy_windows=False, width=self.LOG_WIDTH)

    @classmethod
    def open(cls, log_path: Path, terminal: Console | None = None) -> ConsoleWithLogging:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        return cls(open(log_path, "a", encoding="utf-8"), terminal=terminal)

    def print_and_log(self, *objects, log_max_width: int | None = None, **kwargs):
        self.console.print(*objects, **kwargs)
        self.log_console.print(*objects, **kwargs, width=log_max_width)

    def print(self, *objects, **kwargs):
        self.console.print(*objects, **kwargs)

    def log(self, *objects, **kwargs):
        stamp = f"[{datetime.now():%Y-%m-%d %H:%M:%S}]"
        self.log_console.print(stamp, *objects, **kwargs)

    def close(self):
        if not self.log_file.closed:
            self.log_file.close()


def debug(*args) -> None:
    if DEBUG_TO_STDOUT:
        print(f"[{datetime.now()}]", *args, file=sys.stdout)


def errprint(*args) -> None:
    print(*args, file=sys.stderr)


def warn(scope: str, *args) -> None:
    """Report a failure the app recovers from, tagged with the vendor or component."""
    errprint(f"WARNING: [{scope}]", *args)
