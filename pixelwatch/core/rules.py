"""
Conversion rule matcher.

A Conversion carries an ordered list of rules; an event counts toward the
conversion when every rule holds (logical AND, empty list = match).

Each rule is evaluated in two steps:
  1. Resolve the field the rule looks at (by rule.type)
  2. Compare it to rule.value (by rule.operator)

Unknown types or operators evaluate to False. Nothing in here raises on
bad data: a malformed rule simply fails to match.
"""

import json
import math
from dataclasses import dataclass
from typing import Any, Callable, Iterable

RULE_TYPES = ("event", "parameter", "url")
OPERATORS = ("equals", "contains", "starts_with", "ends_with", "greater_than", "less_than")


@dataclass(frozen=True)
class Rule:
    type: str
    operator: str
    field: str = ""
    value: Any = None

    @classmethod
    def from_dict(cls, raw: dict) -> "Rule":
        return cls(
            type=str(raw.get("type", "")),
            operator=str(raw.get("operator", "")),
            field=str(raw.get("field") or ""),
            value=raw.get("value"),
        )

    def to_dict(self) -> dict:
        return {"type": self.type, "operator": self.operator, "field": self.field, "value": self.value}


# Stored rules that aren't even dicts become this; it never matches.
_INVALID_RULE = Rule(type="invalid", operator="invalid")


def rules_from_json(raw: Any) -> list[Rule]:
    """Parse a stored rules column. None/empty = no rules."""
    if not raw:
        return []
    if not isinstance(raw, list):
        return [_INVALID_RULE]
    return [Rule.from_dict(r) if isinstance(r, dict) else _INVALID_RULE for r in raw]


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------

def parse_number(value: Any) -> float | None:
    """Finite float from an int/float/numeric string, else None. Booleans are not numbers."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# ---------------------------------------------------------------------------
# Field resolvers (by rule.type)
# ---------------------------------------------------------------------------

def _params(event) -> dict:
    params = getattr(event, "parameters", None)
    return params if isinstance(params, dict) else {}


def _resolve_event(event, rule: Rule) -> Any:
    return event.event_name


def _resolve_parameter(event, rule: Rule) -> Any:
    return _params(event).get(rule.field)


def _resolve_url(event, rule: Rule) -> Any:
    return _params(event).get("page_location") or ""


RESOLVERS: dict[str, Callable[[Any, Rule], Any]] = {
    "event": _resolve_event,
    "parameter": _resolve_parameter,
    "url": _resolve_url,
}


# ---------------------------------------------------------------------------
# Comparators (by rule.operator)
# ---------------------------------------------------------------------------

def _equals(actual: Any, expected: Any) -> bool:
    return actual == expected


def _contains(actual: Any, expected: Any) -> bool:
    return _as_text(expected).lower() in _as_text(actual).lower()


def _starts_with(actual: Any, expected: Any) -> bool:
    return _as_text(actual).lower().startswith(_as_text(expected).lower())


def _ends_with(actual: Any, expected: Any) -> bool:
    return _as_text(actual).lower().endswith(_as_text(expected).lower())


def _numeric(op: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def compare(actual: Any, expected: Any) -> bool:
        left, right = parse_number(actual), parse_number(expected)
        if left is None or right is None:
            return False
        return op(left, right)
    return compare


COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "equals": _equals,
    "contains": _contains,
    "starts_with": _starts_with,
    "ends_with": _ends_with,
    "greater_than": _numeric(lambda a, b: a > b),
    "less_than": _numeric(lambda a, b: a < b),
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def evaluate(event, rule: Rule) -> bool:
    resolver = RESOLVERS.get(rule.type)
    comparator = COMPARATORS.get(rule.operator)
    if resolver is None or comparator is None:
        return False
    return comparator(resolver(event, rule), rule.value)


def matches(event, rules: Iterable[Rule | dict]) -> bool:
    """True when the event satisfies every rule. Accepts Rule objects or stored dicts."""
    for rule in rules:
        if not isinstance(rule, Rule):
            rule = Rule.from_dict(rule) if isinstance(rule, dict) else _INVALID_RULE
        if not evaluate(event, rule):
            return False
    return True
