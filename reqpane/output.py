"""reqpane output - rendering results and the save/open helpers."""

from __future__ import annotations

from pathlib import Path

import click


def format_output(
    result,  # ResponseResult from executor.py
    verbose: bool = False,
    raw: bool = False,
) -> str:
    """Format a response result for CLI output.

    Default layout:
        STATUS: 200 OK
        TIME: 45ms
        BODY:
        {...}

    verbose adds a HEADERS section, raw returns the body text alone.
    """
    if result.failed:
        return f"ERROR: {result.body_text}"

    if raw:
        return result.body_text

    lines: list[str] = [
        f"STATUS: {result.status}",
        f"TIME: {int(result.elapsed_ms)}ms",
    ]

    if verbose and result.headers:
        lines.append("HEADERS:")
        lines.append(result.headers)

    if result.is_binary:
        lines.append(f"FILE: {result.filename}")

    lines.append("BODY:")
    lines.append(result.body_text)

    return "\n".join(lines)


def safe_filename(suggested: str) -> str:
    """Reduce a server-suggested filename to a bare name in the target dir."""
    name = Path(suggested.replace("\\", "/")).name if suggested else ""
    return name if name not in ("", ".", "..") else "download"


def save_response(result, path: str | Path | None = None) -> Path:
    """Write the response body to disk.

    Binary results write body_bytes, text results write body_text. Without
    an explicit path the suggested filename is used in the current
    directory; the suggestion never selects a directory of its own.
    """
    filename = safe_filename(result.filename)
    target = Path(path) if path else Path(filename)
    if target.is_dir():
        target = target / filename
    target.parent.mkdir(parents=True, exist_ok=True)
    if result.is_binary:
        target.write_bytes(result.body_bytes)
    else:
        target.write_text(result.body_text, encoding="utf-8")
    return target


def open_saved(path: str | Path) -> int:
    """Open a saved file with the system's default application."""
    return click.launch(str(path))
