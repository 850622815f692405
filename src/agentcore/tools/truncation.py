"""Tool output truncation with out-of-band storage.

Output over the line or byte budget is cut to a head that fits the budget
(space for the marker is reserved) followed by a sentinel marker naming the
file holding the full output and the byte offset to continue reading from.
Text that already ends in a marker is returned unchanged, so truncating twice
gives the same result as truncating once.
"""

from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass
from pathlib import Path

from filelock import FileLock

from agentcore.logging import get_logger

_log = get_logger("tools.truncation")

MARKER_RESERVE = 512  # bytes kept free for the marker
DEFAULT_RETENTION = 7 * 24 * 3600

_MARKER_RE = re.compile(r"\n\n\[output truncated: [^\n]*\]\Z")


@dataclass(frozen=True, slots=True)
class TruncatedOutput:
    content: str
    truncated: bool
    output_path: Path | None = None


class OutputStore:
    """Directory of full tool outputs, shared between processes."""

    def __init__(self, directory: str | Path, *, retention: float = DEFAULT_RETENTION) -> None:
        self._dir = Path(directory)
        self._lock_path = self._dir / ".lock"
        self._retention = retention

    @property
    def directory(self) -> Path:
        return self._dir

    def save(self, content: str, name: str = "tool") -> Path:
        """Write ``content`` to a new file and return its path."""
        self._dir.mkdir(parents=True, exist_ok=True)
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", name) or "tool"
        path = self._dir / f"{safe}_{int(time.time())}_{uuid.uuid4().hex[:8]}.txt"
        with FileLock(self._lock_path, timeout=10):
            self.prune()
            path.write_text(content, encoding="utf-8")
        _log.debug("Stored %d bytes of %s output at %s", len(content.encode()), name, path)
        return path

    def read(self, path: str | Path, offset: int = 0, limit: int | None = None) -> str:
        """Read stored output starting at a byte offset."""
        with open(path, "rb") as f:
            f.seek(offset)
            data = f.read() if limit is None else f.read(limit)
        return data.decode("utf-8", errors="replace")

    def prune(self, now: float | None = None) -> int:
        """Delete outputs older than the retention window."""
        if not self._dir.exists():
            return 0
        cutoff = (now if now is not None else time.time()) - self._retention
        removed = 0
        for path in self._dir.glob("*.txt"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except OSError:
                continue
        return removed


def is_truncated(text: str) -> bool:
    return _MARKER_RE.search(text) is not None


def _marker(shown_lines: int, total_lines: int, offset: int, path: Path | None) -> str:
    if path is None:
        where = "full output was not stored"
    else:
        where = f"full output saved to {path}; continue reading from byte offset {offset}"
    return f"\n\n[output truncated: showing {shown_lines} of {total_lines} lines; {where}]"


def truncate_output(
    text: str,
    *,
    max_lines: int = 2000,
    max_bytes: int = 50 * 1024,
    store: OutputStore | None = None,
    name: str = "tool",
) -> TruncatedOutput:
    """Cap ``text`` at ``max_lines`` lines and ``max_bytes`` UTF-8 bytes."""
    if is_truncated(text):
        return TruncatedOutput(text, True)

    lines = text.splitlines(keepends=True)
    if len(lines) <= max_lines and len(text.encode("utf-8")) <= max_bytes:
        return TruncatedOutput(text, False)

    budget = max(max_bytes - MARKER_RESERVE, 0)
    head: list[str] = []
    size = 0
    for line in lines[:max_lines]:
        line_size = len(line.encode("utf-8"))
        if size + line_size > budget:
            break
        head.append(line)
        size += line_size

    if not head and lines and budget:
        # A single line over budget: cut inside it
        cut = lines[0].encode("utf-8")[:budget].decode("utf-8", errors="ignore")
        head.append(cut)
        size = len(cut.encode("utf-8"))

    path = store.save(text, name) if store is not None else None
    content = "".join(head).rstrip("\n")
    marker = _marker(len(head), len(lines), size, path)
    return TruncatedOutput(content + marker, True, path)
