"""
qecho log - Console and trace output shared by the CLI and the listener.

User-facing lines go through the rich console. Trace lines are compact JSON
on stderr, tagged like `[POLL] {"commands":2}`, and only appear with
--debug or QECHO_DEBUG=1.
"""

from __future__ import annotations

import json
import os
import sys

from rich.console import Console
from rich.markup import escape

console = Console()
err_console = Console(stderr=True)

_debug = os.environ.get("QECHO_DEBUG", "") not in ("", "0")


def set_debug(enabled: bool):
    global _debug
    _debug = enabled


def debug_enabled() -> bool:
    return _debug


def log(tag: str, msg: dict):
    """Trace to stderr."""
    if not _debug:
        return
    compact = json.dumps(msg, separators=(",", ":"), default=str)
    print(f"[{tag}] {compact}", file=sys.stderr, flush=True)


def warn(msg: str, **fields):
    """Report a non-fatal failure: always on the console, traced with fields."""
    err_console.print(f"[red]error:[/red] {escape(msg)}", highlight=False)
    log("ERR", {"error": msg, **fields})


def error(msg: str):
    """Print error and exit."""
    console.print(f"[red]error:[/red] {escape(msg)}")
    sys.exit(1)
