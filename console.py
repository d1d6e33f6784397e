#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Colored terminal output for the claimer (colorama).

Status line format:
  HH:MM:SS:mmm | <uuid> (<name>) | <status>
"""

from __future__ import annotations

import datetime as dt
import sys
from typing import Callable, Optional, TextIO

from colorama import Fore, Style, just_fix_windows_console

# keyed by ResultKind.value so this module never imports the engine
STATUS_COLORS = {
    "rate-limited": Fore.RED,
    "claimed": Fore.GREEN,
    "claim-failed": Fore.YELLOW,
    "taken": Fore.WHITE,
    "error": Fore.WHITE,
}

DIM = Style.DIM + Fore.WHITE

BANNER_COLORS = [Fore.LIGHTYELLOW_EX, Fore.YELLOW, Fore.LIGHTRED_EX, Fore.LIGHTMAGENTA_EX, Fore.MAGENTA, Fore.BLUE]

_initialized = False


def ensure_init() -> None:
    global _initialized
    if not _initialized:
        just_fix_windows_console()
        _initialized = True


def paint(text: str, color: str) -> str:
    return f"{color}{text}{Style.RESET_ALL}"


def print_colored(text: str, color: str, *, stream: Optional[TextIO] = None) -> None:
    stream = stream or sys.stdout
    stream.write(paint(text, color))
    stream.flush()


def println_colored(text: str, color: str, *, stream: Optional[TextIO] = None) -> None:
    print_colored(text + "\n", color, stream=stream)


def format_timestamp(now: dt.datetime) -> str:
    return now.strftime("%H:%M:%S:") + f"{now.microsecond // 1000:03d}"


def format_result(result, now: Optional[dt.datetime] = None) -> str:
    """One colored status line for a RoundResult."""
    now = now or dt.datetime.now(dt.timezone.utc)
    color = STATUS_COLORS.get(result.kind.value, Fore.WHITE)
    return "".join([
        paint(format_timestamp(now), Fore.CYAN),
        paint(" | ", DIM),
        paint(result.identifier, DIM),
        paint(" (", DIM),
        paint(result.name, Fore.WHITE),
        paint(") | ", DIM),
        paint(result.status, color),
    ])


class ConsoleSink:
    """Prints each RoundResult the moment the monitor hands it over."""

    def __init__(self,
                 stream: Optional[TextIO] = None,
                 clock: Optional[Callable[[], dt.datetime]] = None):
        self.stream = stream or sys.stdout
        self.clock = clock or (lambda: dt.datetime.now(dt.timezone.utc))

    def __call__(self, result) -> None:
        self.stream.write(format_result(result, self.clock()) + "\n")
        self.stream.flush()


def render_banner(title: str) -> str:
    """Spaced-out title with one color per row of a simple frame."""
    spaced = " ".join(title.upper())
    width = len(spaced) + 4
    rows = [
        "+" + "-" * width + "+",
        "|" + " " * width + "|",
        "|  " + spaced + "  |",
        "|" + " " * width + "|",
        "+" + "-" * width + "+",
    ]
    return "\n".join(paint(row, BANNER_COLORS[i % len(BANNER_COLORS)]) for i, row in enumerate(rows))
