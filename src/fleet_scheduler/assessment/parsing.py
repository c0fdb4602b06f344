"""Extract the decision JSON object from free-form backend output."""

from __future__ import annotations

import json
import re
from typing import Any, Callable

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)
_DECODER = json.JSONDecoder()

DecisionStrategy = Callable[[str], "dict[str, Any] | None"]


def _with_action(candidate: Any) -> dict[str, Any] | None:
    if isinstance(candidate, dict) and "action" in candidate:
        return candidate
    return None


def _parse_direct(text: str) -> dict[str, Any] | None:
    try:
        return _with_action(json.loads(text))
    except ValueError:
        return None


def _parse_fenced(text: str) -> dict[str, Any] | None:
    for match in _FENCE_RE.finditer(text):
        parsed = _parse_direct(match.group(1).strip())
        if parsed is not None:
            return parsed
    return None


def _parse_embedded(text: str) -> dict[str, Any] | None:
    index = text.find("{")
    while index != -1:
        try:
            candidate, _ = _DECODER.raw_decode(text, index)
        except ValueError:
            candidate = None
        parsed = _with_action(candidate)
        if parsed is not None:
            return parsed
        index = text.find("{", index + 1)
    return None


STRATEGIES: tuple[DecisionStrategy, ...] = (_parse_direct, _parse_fenced, _parse_embedded)


def extract_decision_json(text: str | None) -> dict[str, Any] | None:
    """Return the first JSON object carrying an ``action`` key, trying each strategy in order."""

    if not text or not text.strip():
        return None
    stripped = text.strip()
    for strategy in STRATEGIES:
        parsed = strategy(stripped)
        if parsed is not None:
            return parsed
    return None


__all__ = ["STRATEGIES", "extract_decision_json"]
