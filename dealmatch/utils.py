"""Shared utility functions used across DealMatch modules."""
from __future__ import annotations

import json
import logging
from typing import Any, Callable

log = logging.getLogger(__name__)

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def json_list(value: str | None) -> list:
    """Parse a JSON text column that should hold a list; anything else is ``[]``."""
    parsed = json_parse(value, [])
    return parsed if isinstance(parsed, list) else []


def run_best_effort(label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
    """Run *fn*, logging and swallowing any exception. Returns True on success."""
    try:
        fn(*args, **kwargs)
        return True
    except Exception as exc:
        log.warning("%s failed (non-blocking): %s", label, exc)
        return False


def format_currency(amount: float | int | None) -> str:
    """Compact dollar figure: ``$1.5M``, ``$250K``, ``$900``, ``$0``."""
    if not amount:
        return "$0"
    if amount >= 1_000_000:
        return f"${amount / 1_000_000:.1f}M"
    if amount >= 1_000:
        return f"${amount / 1_000:.0f}K"
    return f"${amount:g}"
