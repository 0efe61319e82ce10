"""Parsers for physical interface listings."""

from __future__ import annotations

from fleetsync.core.errors import ParseError
from fleetsync.core.models import ParsedPort, PortStatus
from fleetsync.core.normalize import names_match, output_lines

PAIR_SEPARATOR = " - "


def classify_port(physical_name: str, configured_name: str) -> PortStatus:
    """A port still carrying its hardware name is free, anything else is assigned."""

    if names_match(physical_name, configured_name):
        return PortStatus.FREE
    return PortStatus.ASSIGNED


def parse_port_pairs(text: str) -> list[ParsedPort]:
    """Parse ``<default-name> - <name>`` lines, one per physical interface."""

    ports: list[ParsedPort] = []
    for line in output_lines(text):
        physical, separator, configured = line.strip().partition(PAIR_SEPARATOR)
        physical = physical.strip()
        configured = configured.strip()
        if not separator or not physical:
            continue
        description = configured or physical
        ports.append(ParsedPort(physical, description, classify_port(physical, description)))
    return ports


def _find_header(lines: list[str]) -> int:
    for index, line in enumerate(lines):
        lowered = line.lower()
        if lowered.lstrip().startswith("interface") and "description" in lowered:
            return index
    raise ParseError("interface table header not found")


def parse_port_table(text: str) -> list[ParsedPort]:
    """Parse a header + rows table such as ``show interfaces description``.

    Column boundaries are taken from the header: the first column is the
    interface name and the ``Description`` column runs to the end of the row.
    A row with an empty description still carries its hardware name.
    """

    if not text.strip():
        raise ParseError("empty interface table")

    lines = output_lines(text)
    header_index = _find_header(lines)
    header = lines[header_index]
    description_column = header.lower().index("description")

    ports: list[ParsedPort] = []
    for row in lines[header_index + 1 :]:
        if not row.strip():
            continue
        fields = row.split()
        physical = fields[0]
        description = row[description_column:].strip() if len(row) > description_column else ""
        configured = description or physical
        ports.append(ParsedPort(physical, configured, classify_port(physical, configured)))
    return ports
