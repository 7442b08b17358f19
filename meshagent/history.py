"""Deployment history synthesised from recent log lines."""

from __future__ import annotations

import re
from itertools import islice
from typing import Any

from .types import WebState

RECENT_LINES_PER_COMPONENT = 200
_COMPONENT_MARKER = "component '"
_U64_MAX = 2**64 - 1
_U64_PATTERN = re.compile(r"\+?[0-9]+")


def parse_after(text: str, marker: str) -> str | None:
    """Text between ``marker`` and the next single quote, if both are present."""
    index = text.find(marker)
    if index < 0:
        return None
    rest = text[index + len(marker):]
    end = rest.find("'")
    if end < 0:
        return None
    return rest[:end]


def _parse_stamp(text: str) -> int:
    text = text.strip()
    if _U64_PATTERN.fullmatch(text):
        value = int(text)
        if value <= _U64_MAX:
            return value
    return 0


def api_deploy_history(state: WebState) -> list[dict[str, Any]]:
    """Deployment events found in each component's most recent log lines, newest first."""
    events: list[dict[str, Any]] = []
    for name in state.logs.components():
        recent = islice(reversed(state.logs.lines(name)), RECENT_LINES_PER_COMPONENT)
        for line in recent:
            stamp, sep, message = line.partition("|")
            if not sep:
                continue
            message = message.strip()
            if "deployed" not in message:
                continue
            component = parse_after(message, _COMPONENT_MARKER) or "component"
            events.append(
                {"component": component, "digest": None, "timestamp": _parse_stamp(stamp)}
            )
    return events