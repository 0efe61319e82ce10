"""Parser for queue-rule export blocks.

Exports wrap long rules over several physical lines by ending a line with a
backslash. Each ``add`` statement is one logical rule; only rules carrying a
name, a bandwidth limit and a target are kept.
"""

from __future__ import annotations

import re

from fleetsync.core.models import ParsedLimiter
from fleetsync.core.normalize import collapse_whitespace, output_lines

BLOCK_KEYWORD = "add"
CONTINUATION = "\\"

_VALUE = r'("(?:[^"\\]|\\.)*"|\S+)'
_FIELD_PATTERNS = {
    "name": re.compile(rf"(?<!\S)name={_VALUE}"),
    "bandwidth": re.compile(rf"(?<!\S)max-limit={_VALUE}"),
    "port": re.compile(rf"(?<!\S)target={_VALUE}"),
}


def _clean_value(raw: str) -> str:
    value = raw.strip()
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        value = value[1:-1]
    return value.replace("\\", "").strip()


def _split_blocks(text: str) -> list[str]:
    blocks: list[list[str]] = []
    in_block = False
    continued = False

    for raw_line in output_lines(text):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue

        if in_block and (continued or raw_line[:1].isspace()):
            blocks[-1].append(line)
        elif line.split(maxsplit=1)[0] == BLOCK_KEYWORD:
            blocks.append([line])
            in_block = True
        else:
            in_block = False
        continued = line.endswith(CONTINUATION)

    return [collapse_whitespace(" ".join(part.rstrip(CONTINUATION) for part in block)) for block in blocks]


def parse_limiter_block(block: str) -> ParsedLimiter | None:
    """Extract one rule from a collapsed block, or ``None`` if a field is missing."""

    values: dict[str, str] = {}
    for field, pattern in _FIELD_PATTERNS.items():
        match = pattern.search(block)
        if match is None:
            return None
        values[field] = _clean_value(match.group(1))
        if not values[field]:
            return None
    return ParsedLimiter(name=values["name"], bandwidth=values["bandwidth"], port=values["port"])


def parse_limiters(text: str) -> list[ParsedLimiter]:
    """Parse every complete rule of a queue export."""

    limiters: list[ParsedLimiter] = []
    for block in _split_blocks(text):
        limiter = parse_limiter_block(block)
        if limiter is not None:
            limiters.append(limiter)
    return limiters
