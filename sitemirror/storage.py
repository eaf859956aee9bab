"""Mirror output: file writing, redirect stubs, and the per-job run log."""

from __future__ import annotations

import html
import shutil
import threading
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath


def output_path(out_dir: Path, mirror_path: str) -> Path:
    """Filesystem path for a mirror path; refuses anything escaping out_dir."""
    rel = PurePosixPath(mirror_path)
    if rel.is_absolute() or ".." in rel.parts:
        raise ValueError(f"Mirror path escapes the output directory: {mirror_path}")
    return Path(out_dir).joinpath(*rel.parts)


def write_binary(path: Path, data: bytes) -> None:
    """Write binary data, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


def clear_output(out_dir: Path) -> bool:
    """Delete the output directory. Returns False if it did not exist."""
    out_dir = Path(out_dir)
    if not out_dir.exists():
        return False
    shutil.rmtree(out_dir)
    return True


def redirect_stub(target: str) -> bytes:
    """Minimal HTML page that sends the browser to target (a mirror-relative reference)."""
    href = html.escape(target, quote=True)
    return (
        "<!DOCTYPE html>\n"
        "<html>\n"
        "<head>\n"
        '<meta charset="utf-8">\n'
        f'<meta http-equiv="refresh" content="0; url={href}">\n'
        f'<link rel="canonical" href="{href}">\n'
        "<title>Redirecting</title>\n"
        "</head>\n"
        "<body>\n"
        f'<p>Redirecting to <a href="{href}">{href}</a></p>\n'
        "</body>\n"
        "</html>\n"
    ).encode("utf-8")


class RunLog:
    """Append-only log file: one tab-separated line per finished job."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def record(self, stage: str, outcome: str, key: str, reason: str = "") -> None:
        stamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
        reason = " ".join(reason.split())
        line = "\t".join((stamp, stage, outcome, key, reason)) + "\n"
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line)
