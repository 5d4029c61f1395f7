"""Condition evaluation over run-scoped variables.

A predicate is ``key!=value`` when that pattern matches, otherwise
``key=value``. Both sides go through variable substitution before the key is
looked up in the run variables and compared to the value.
"""

from __future__ import annotations

import logging
import re
from typing import Mapping, Optional

from .errors import EmptyConditionError, MalformedConditionError
from .models import Conditions

logger = logging.getLogger(__name__)

_NOT_EQUAL = re.compile(r"(?P<key>.*?)!=(?P<value>.*)", re.DOTALL)
_EQUAL = re.compile(r"(?P<key>.*?)=(?P<value>.*)", re.DOTALL)


def has_conditions(target) -> bool:
    """Return ``True`` when ``target`` carries a non-empty condition set."""
    conditions: Optional[Conditions] = getattr(target, "conditions", None)
    return conditions is not None and not conditions.is_empty()


def substitute_vars(variables: Mapping[str, str], text: str) -> str:
    """Replace ``$NAME `` / ``$NAME\\n`` / ``${NAME}`` tokens with their values.

    Unknown names are left untouched.
    """
    for key, value in variables.items():
        text = text.replace(f"${key} ", value)
        text = text.replace(f"${key}\n", value)
        text = text.replace("${" + key + "}", value)
    return text


def _split(pattern: re.Pattern, predicate: str) -> Optional[tuple[str, str]]:
    match = pattern.match(predicate)
    if match is None:
        return None
    key, value = match.group("key"), match.group("value")
    if not key or not value:
        return None
    return key, value


def evaluate_condition(variables: Mapping[str, str], predicate: str) -> bool:
    """Evaluate a single ``k=v`` / ``k!=v`` predicate."""
    parts = _split(_NOT_EQUAL, predicate)
    negate = parts is not None
    if parts is None:
        parts = _split(_EQUAL, predicate)
    if parts is None:
        raise MalformedConditionError(predicate)

    key = substitute_vars(variables, parts[0])
    value = substitute_vars(variables, parts[1])
    actual = variables.get(key, "")
    logger.debug(f"condition {predicate!r}: {key}={actual!r} vs {value!r}")
    if negate:
        return actual != value
    return actual == value


def evaluate(variables: Mapping[str, str], conditions: Optional[Conditions]) -> bool:
    """Evaluate ``conditions`` against ``variables``.

    Raises:
        EmptyConditionError: if there is nothing to evaluate. Call sites are
            expected to check ``has_conditions`` first.
        MalformedConditionError: if a predicate cannot be parsed.
    """
    if conditions is None or conditions.is_empty():
        raise EmptyConditionError("nil condition")

    if conditions.all:
        for predicate in conditions.all:
            if not evaluate_condition(variables, predicate):
                return False
        return True

    for predicate in conditions.any:
        if evaluate_condition(variables, predicate):
            return True
    return False
