"""Reading RFC 5545 content lines out of existing iCalendar payloads.

Payloads read here were produced by other clients, so the scan is tolerant:
anything that cannot be understood is reported as absent instead of raising.
"""
from __future__ import annotations

import re

_LINE_BREAK = re.compile(r"\r\n|\n|\r")
_X_PROPERTY = re.compile(r"^X-[^:]+:.+")
_INTEGER = re.compile(r"^\s*(\d+)\s*$")


def unfold_lines(ics: str | bytes | None) -> list[str]:
    """Split a payload into logical content lines, joining folded continuations."""
    if not ics:
        return []
    if isinstance(ics, bytes):
        ics = ics.decode("utf-8", errors="replace")
    lines: list[str] = []
    for physical in _LINE_BREAK.split(ics):
        if physical[:1] in (" ", "\t") and lines:
            lines[-1] += physical[1:]
            continue
        if physical:
            lines.append(physical)
    return lines


def property_name(line: str) -> str:
    end = len(line)
    for separator in (";", ":"):
        index = line.find(separator)
        if index != -1:
            end = min(end, index)
    return line[:end].strip().upper()


def property_value(line: str) -> str:
    # Parameter values may be quoted and contain ':' (e.g. CN="a:b").
    in_quotes = False
    for index, char in enumerate(line):
        if char == '"':
            in_quotes = not in_quotes
        elif char == ":" and not in_quotes:
            return line[index + 1 :]
    return ""


def find_values(ics: str | bytes | None, name: str) -> list[str]:
    wanted = name.upper()
    return [property_value(line) for line in unfold_lines(ics) if property_name(line) == wanted]


def extract_sequence(ics: str | bytes | None) -> int | None:
    for value in find_values(ics, "SEQUENCE"):
        match = _INTEGER.match(value)
        if match:
            return int(match.group(1))
    return None


def extract_uid(ics: str | bytes | None) -> str | None:
    for value in find_values(ics, "UID"):
        if value.strip():
            return value.strip()
    return None


def extract_x_properties(ics: str | bytes | None) -> list[str]:
    return [line for line in unfold_lines(ics) if _X_PROPERTY.match(line)]
