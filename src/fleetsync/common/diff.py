"""Hash and diff helpers for configuration exports."""

from __future__ import annotations

import difflib
import hashlib
from dataclasses import dataclass
from pathlib import Path

NO_NEWLINE_MARKER = "\\ No newline at end of file\n"
HEADER_LINES = 2


@dataclass(slots=True)
class DiffOutcome:
    """Result of comparing a new export with its predecessor."""

    previous_path: Path | None
    config_changed: bool | None
    baseline_sha256: str | None = None
    current_sha256: str | None = None
    added: int = 0
    removed: int = 0
    diff_text: str | None = None

    @property
    def first_backup(self) -> bool:
        return self.previous_path is None


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 digest of the exact byte stream."""

    return hashlib.sha256(data).hexdigest()


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="surrogateescape")


def encode_diff(diff_text: str) -> bytes:
    """Encode diff text back to the bytes of the exports it was built from."""

    return diff_text.encode("utf-8", errors="surrogateescape")


def _split_lines(text: str) -> list[str]:
    """Split on ``\\n`` only, keeping each terminator (and any ``\\r`` before it)."""

    lines = [f"{line}\n" for line in text.split("\n")]
    lines[-1] = lines[-1][:-1]
    if not lines[-1]:
        lines.pop()
    return lines


def _count_added_removed(hunk_lines: list[str]) -> tuple[int, int]:
    added = sum(1 for line in hunk_lines if line.startswith("+"))
    removed = sum(1 for line in hunk_lines if line.startswith("-"))
    return added, removed


def generate_diff(prev: str, curr: str, from_label: str = "previous", to_label: str = "current") -> tuple[str, int, int]:
    """Generate a ``diff -u`` style diff along with added/removed line counts.

    Line terminators are part of the compared lines, so a CRLF/LF change or a
    missing final newline shows up in the diff. A last line without a newline
    is followed by the ``\\ No newline at end of file`` marker.
    """

    diff_lines = list(difflib.unified_diff(_split_lines(prev), _split_lines(curr), fromfile=from_label, tofile=to_label))
    added, removed = _count_added_removed(diff_lines[HEADER_LINES:])
    parts: list[str] = []
    for line in diff_lines:
        if line.endswith("\n"):
            parts.append(line)
        else:
            parts.append(f"{line}\n{NO_NEWLINE_MARKER}")
    return "".join(parts), added, removed


def compare_with_previous(previous_path: Path | None, current: bytes, current_label: str) -> DiffOutcome:
    """Diff ``current`` against the export stored at ``previous_path``."""

    current_hash = sha256_hex(current)
    if previous_path is None:
        return DiffOutcome(previous_path=None, config_changed=None, current_sha256=current_hash)

    previous = previous_path.read_bytes()
    previous_hash = sha256_hex(previous)
    diff_text, added, removed = generate_diff(_decode(previous), _decode(current), previous_path.name, current_label)
    return DiffOutcome(
        previous_path=previous_path,
        config_changed=previous_hash != current_hash,
        baseline_sha256=previous_hash,
        current_sha256=current_hash,
        added=added,
        removed=removed,
        diff_text=diff_text,
    )
