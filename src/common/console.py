"""Coloured operator output for the runner pool CLI."""

from __future__ import annotations

import sys


class C:
    """ANSI colour codes (no-op if not a tty)."""

    _tty = sys.stdout.isatty()
    RED = "\033[0;31m" if _tty else ""
    GREEN = "\033[0;32m" if _tty else ""
    BLUE = "\033[0;34m" if _tty else ""
    YELLOW = "\033[1;33m" if _tty else ""
    DIM = "\033[2m" if _tty else ""
    BOLD = "\033[1m" if _tty else ""
    NC = "\033[0m" if _tty else ""


def info(msg: str) -> None:
    print(f"{C.BLUE}[INFO]{C.NC} {msg}")


def ok(msg: str) -> None:
    print(f"{C.GREEN}[SUCCESS]{C.NC} {msg}")


def warn(msg: str) -> None:
    print(f"{C.YELLOW}[WARNING]{C.NC} {msg}")


def error(msg: str) -> None:
    print(f"{C.RED}[ERROR]{C.NC} {msg}", file=sys.stderr)


def fail(msg: str) -> None:
    """Report *msg* and exit 1."""
    error(msg)
    sys.exit(1)


_STATE_COLOURS = {
    "running": C.GREEN,
    "online": C.GREEN,
    "idle": C.GREEN,
    "busy": C.YELLOW,
    "draining": C.YELLOW,
    "restarting": C.YELLOW,
    "created": C.DIM,
    "offline": C.RED,
    "exited": C.RED,
    "dead": C.RED,
}


def paint_state(state: str, width: int = 0) -> str:
    """Pad *state* to *width* and colour it by what it means for a runner."""
    colour = _STATE_COLOURS.get(state.lower(), "")
    return f"{colour}{state:<{width}}{C.NC if colour else ''}"


# ── Tables and banners ───────────────────────────────────────────────────────

RULE = "─" * 76
DOUBLE_RULE = "═" * 76


def banner(title: str, subtitle: str = "") -> str:
    lines = [f"{C.BOLD}{'=' * 62}{C.NC}", f"{C.BOLD}  {title}{C.NC}"]
    if subtitle:
        lines.append(f"  {subtitle}")
    lines.append(f"{C.BOLD}{'=' * 62}{C.NC}")
    return "\n".join(lines)


def header(title: str) -> str:
    return f"\n{DOUBLE_RULE}\n  {title}\n{DOUBLE_RULE}"


def section(title: str) -> str:
    return f"\n{RULE}\n  {title}\n{RULE}"
