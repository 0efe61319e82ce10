"""Parsers for identity and version fields in ``key: value`` style output."""

from __future__ import annotations

import re

from fleetsync.core.normalize import output_lines

_VERSION_RE = re.compile(r"Version\s+([^,\s]+)", re.IGNORECASE)
_UPTIME_HOSTNAME_RE = re.compile(r"^(\S+)\s+uptime is\b", re.IGNORECASE)


def parse_field(text: str, label: str) -> str:
    """Return the value of the first line containing ``label``.

    The match is a case-insensitive substring test on the whole line, so a
    label that also appears inside a free-text value of an earlier line will
    match that line instead. The value is everything after the first colon.
    """

    needle = label.lower()
    for line in output_lines(text):
        if needle in line.lower():
            _, _, value = line.partition(":")
            return value.strip()
    return ""


def parse_version(text: str) -> str:
    """Extract the token following the word ``Version`` (``""`` if absent)."""

    match = _VERSION_RE.search(text)
    return match.group(1) if match else ""


def parse_uptime_hostname(text: str) -> str:
    """Extract the hostname from a ``<hostname> uptime is ...`` line."""

    for line in output_lines(text):
        match = _UPTIME_HOSTNAME_RE.match(line.strip())
        if match:
            return match.group(1)
    return ""
