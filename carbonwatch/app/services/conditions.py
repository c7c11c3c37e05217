"""Alert rule condition trees.

Rules store their conditions as JSON. Two node shapes exist:

- comparison: {"field": "power", "operator": ">", "threshold": 5000}
- group:      {"mode": "and" | "or", "conditions": [<node>, ...]}

A rule's top-level list is an implicit AND. Trees are parsed once into
immutable nodes and evaluated against a record's field mapping.
"""

from __future__ import annotations

import operator as _op
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping, Sequence, Union

from ..errors import RuleEvaluationError


COMPARISON_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    ">": _op.gt,
    "<": _op.lt,
    ">=": _op.ge,
    "<=": _op.le,
    "==": _op.eq,
    "!=": _op.ne,
}
_ORDERING = {">", "<", ">=", "<="}

GROUP_MODES = ("and", "or")


class ConditionParseError(ValueError):
    pass


@dataclass(frozen=True)
class Comparison:
    field: str
    op: str
    threshold: Any

    def evaluate(self, fields: Mapping[str, Any]) -> bool:
        if self.field not in fields:
            return False
        value = fields[self.field]
        if self.op in _ORDERING and not _orderable(value, self.threshold):
            raise RuleEvaluationError(
                f"cannot compare {self.field}={value!r} {self.op} {self.threshold!r}"
            )
        return bool(COMPARISON_OPERATORS[self.op](value, self.threshold))

    def fields(self) -> set[str]:
        return {self.field}


@dataclass(frozen=True)
class ConditionGroup:
    mode: str
    children: tuple["ConditionNode", ...]

    def evaluate(self, fields: Mapping[str, Any]) -> bool:
        if self.mode == "or":
            return any(child.evaluate(fields) for child in self.children)
        return all(child.evaluate(fields) for child in self.children)

    def fields(self) -> set[str]:
        out: set[str] = set()
        for child in self.children:
            out |= child.fields()
        return out


ConditionNode = Union[Comparison, ConditionGroup]


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _orderable(a: Any, b: Any) -> bool:
    if _is_number(a) and _is_number(b):
        return True
    return isinstance(a, str) and isinstance(b, str)


def parse_node(raw: Any) -> ConditionNode:
    if not isinstance(raw, Mapping):
        raise ConditionParseError(f"condition must be an object, got {type(raw).__name__}")

    if "conditions" in raw or "mode" in raw:
        mode = str(raw.get("mode") or "and").strip().lower()
        if mode not in GROUP_MODES:
            raise ConditionParseError(f"unknown group mode: {raw.get('mode')!r}")
        children = raw.get("conditions")
        if not isinstance(children, list) or not children:
            raise ConditionParseError("condition group needs a non-empty 'conditions' list")
        return ConditionGroup(mode=mode, children=tuple(parse_node(c) for c in children))

    field = raw.get("field")
    if not isinstance(field, str) or not field.strip():
        raise ConditionParseError("comparison needs a non-empty 'field'")
    op = raw.get("operator")
    if op not in COMPARISON_OPERATORS:
        raise ConditionParseError(f"unknown operator: {op!r}")
    if "threshold" not in raw:
        raise ConditionParseError(f"comparison on {field!r} needs a 'threshold'")
    threshold = raw["threshold"]
    if isinstance(threshold, (list, dict)) or threshold is None:
        raise ConditionParseError(f"threshold for {field!r} must be a scalar")
    return Comparison(field=field.strip(), op=op, threshold=threshold)


def parse_conditions(raw: Sequence[Any]) -> ConditionGroup:
    """Parse a rule's stored condition list into an implicit AND group."""

    if not isinstance(raw, (list, tuple)) or not raw:
        raise ConditionParseError("conditions must be a non-empty list")
    return ConditionGroup(mode="and", children=tuple(parse_node(c) for c in raw))


class CompiledRuleCache:
    """Parsed condition trees keyed by (rule id, rule updated_at).

    Editing a rule bumps `updated_at`, which naturally invalidates the entry.
    Shared between worker threads.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[datetime | None, ConditionGroup]] = {}

    def get(self, rule_id: str, updated_at: datetime | None, raw: Sequence[Any]) -> ConditionGroup:
        with self._lock:
            hit = self._entries.get(rule_id)
            if hit is not None and hit[0] == updated_at:
                return hit[1]

        compiled = parse_conditions(raw)
        with self._lock:
            self._entries[rule_id] = (updated_at, compiled)
        return compiled

    def discard(self, rule_id: str) -> None:
        with self._lock:
            self._entries.pop(rule_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
