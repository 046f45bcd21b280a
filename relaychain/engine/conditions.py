"""Condition language for conditional chain connections.

Supported forms (case-insensitive):
    contains('text')
    starts_with('text')
    ends_with('text')
    length > 100      (operators: > < >= <= == =)
"""
from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

_CONTAINS = re.compile(r"contains\(['\"](.+?)['\"]\)")
_STARTS_WITH = re.compile(r"starts_with\(['\"](.+?)['\"]\)")
_ENDS_WITH = re.compile(r"ends_with\(['\"](.+?)['\"]\)")
_LENGTH = re.compile(r"length\s*([><=]+)\s*(\d+)")

_SUPPORTED = (_CONTAINS, _STARTS_WITH, _ENDS_WITH, _LENGTH)

UNSUPPORTED_MESSAGE = (
    "Unsupported condition format. Use: contains('text'), starts_with('text'), "
    "ends_with('text'), or length > 100"
)


def evaluate_condition(condition: str | None, content: str | None) -> bool:
    """Evaluate ``condition`` against ``content``.

    Empty conditions, empty content and unrecognised expressions all
    evaluate to False.
    """
    if not condition or not content:
        return False

    normalized = condition.strip().lower()
    lowered = content.lower()

    match = _CONTAINS.search(normalized)
    if match:
        return match.group(1) in lowered
    match = _STARTS_WITH.search(normalized)
    if match:
        return lowered.startswith(match.group(1))
    match = _ENDS_WITH.search(normalized)
    if match:
        return lowered.endswith(match.group(1))

    match = _LENGTH.search(normalized)
    if match:
        op, threshold = match.group(1), int(match.group(2))
        length = len(content)
        if op == ">":
            return length > threshold
        if op == "<":
            return length < threshold
        if op == ">=":
            return length >= threshold
        if op == "<=":
            return length <= threshold
        if op in ("==", "="):
            return length == threshold
        return False

    logger.debug("Condition did not match any supported form: %r", condition)
    return False


def validate_condition(condition: str) -> tuple[bool, str | None]:
    """Return ``(is_valid, error_message)`` for a condition string."""
    if not condition or not condition.strip():
        return False, "Condition cannot be empty"
    normalized = condition.strip().lower()
    if any(pattern.search(normalized) for pattern in _SUPPORTED):
        return True, None
    return False, UNSUPPORTED_MESSAGE
