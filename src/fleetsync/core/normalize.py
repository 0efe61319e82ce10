"""Normalization helpers for raw device output."""

from __future__ import annotations

import re
import unicodedata

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_line_endings(text: str) -> str:
    """Convert CRLF/CR line endings to LF for consistent processing."""

    return text.replace("\r\n", "\n").replace("\r", "\n")


def output_lines(text: str) -> list[str]:
    """Split terminal output into right-stripped lines."""

    return [line.rstrip() for line in normalize_line_endings(text).split("\n")]


def collapse_whitespace(text: str) -> str:
    """Replace every run of whitespace with a single space."""

    return _WHITESPACE_RE.sub(" ", text).strip()


def fold_name(name: str) -> str:
    """Fold an interface name for comparison.

    Compatibility decomposition maps full-width forms to ASCII and splits
    accented letters, combining marks are dropped and the result is
    case-folded, so the comparison does not depend on locale, accents or
    character width.
    """

    decomposed = unicodedata.normalize("NFKD", name.strip())
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    return stripped.casefold()


def names_match(left: str, right: str) -> bool:
    return fold_name(left) == fold_name(right)
