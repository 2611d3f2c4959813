"""Mango-style selector matching for rich queries over ledger documents.

A selector is a JSON object.  Field keys (dotted paths allowed) map either
to a literal (implicit ``$eq``) or to an object of operators:

    {"status": "InTransit", "manufactureDate": {"$gt": "2026-01-01T00:00:00Z"}}
    {"$or": [{"currentOwner": "pharmacy-7"}, {"status": {"$in": ["Sold", "Flagged"]}}]}

Selectors are compiled once into a predicate; unknown operators and
malformed operands raise ``SelectorError`` at compile time, before any
document is read.  A field that is missing from a document only matches
``{"$exists": false}``.
"""

from __future__ import annotations

import re
from typing import Any, Callable

Predicate = Callable[[Any], bool]

MISSING = object()


class SelectorError(ValueError):
    """Selector is not a well-formed Mango selector."""


# ── Field resolution ────────────────────────────────────────

def resolve_field(document: Any, path: str) -> Any:
    """Value at a dotted path (list indexes allowed), or MISSING."""
    value = document
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            return MISSING
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _comparable(a: Any, b: Any) -> bool:
    return (_is_number(a) and _is_number(b)) or (isinstance(a, str) and isinstance(b, str))


def _equals(a: Any, b: Any) -> bool:
    if _is_number(a) and _is_number(b):
        return a == b
    return type(a) is type(b) and a == b


# ── Field operators ─────────────────────────────────────────

def _op_eq(operand: Any) -> Predicate:
    return lambda v: v is not MISSING and _equals(v, operand)


def _op_ne(operand: Any) -> Predicate:
    return lambda v: v is not MISSING and not _equals(v, operand)


def _ordering(compare: Callable[[Any, Any], bool]) -> Callable[[Any], Predicate]:
    def build(operand: Any) -> Predicate:
        if not (_is_number(operand) or isinstance(operand, str)):
            raise SelectorError(f"comparison operand must be a number or string, got {operand!r}")
        return lambda v: v is not MISSING and _comparable(v, operand) and compare(v, operand)
    return build


def _op_in(operand: Any) -> Predicate:
    if not isinstance(operand, list):
        raise SelectorError("$in requires an array")
    return lambda v: v is not MISSING and any(_equals(v, o) for o in operand)


def _op_nin(operand: Any) -> Predicate:
    if not isinstance(operand, list):
        raise SelectorError("$nin requires an array")
    return lambda v: v is not MISSING and not any(_equals(v, o) for o in operand)


def _op_exists(operand: Any) -> Predicate:
    if not isinstance(operand, bool):
        raise SelectorError("$exists requires a boolean")
    return lambda v: (v is not MISSING) == operand


def _op_regex(operand: Any) -> Predicate:
    if not isinstance(operand, str):
        raise SelectorError("$regex requires a string pattern")
    try:
        pattern = re.compile(operand)
    except re.error as exc:
        raise SelectorError(f"invalid $regex pattern: {exc}") from exc
    return lambda v: isinstance(v, str) and pattern.search(v) is not None


def _op_size(operand: Any) -> Predicate:
    if not isinstance(operand, int) or isinstance(operand, bool) or operand < 0:
        raise SelectorError("$size requires a non-negative integer")
    return lambda v: isinstance(v, list) and len(v) == operand


def _op_elem_match(operand: Any) -> Predicate:
    if not isinstance(operand, dict):
        raise SelectorError("$elemMatch requires an object")
    if operand and all(k.startswith("$") and k not in _COMBINATORS for k in operand):
        element_matches = _compile_field_conditions(operand)
    else:
        element_matches = compile_selector(operand)
    return lambda v: isinstance(v, list) and any(element_matches(e) for e in v)


FIELD_OPERATORS: dict[str, Callable[[Any], Predicate]] = {
    "$eq": _op_eq,
    "$ne": _op_ne,
    "$gt": _ordering(lambda a, b: a > b),
    "$gte": _ordering(lambda a, b: a >= b),
    "$lt": _ordering(lambda a, b: a < b),
    "$lte": _ordering(lambda a, b: a <= b),
    "$in": _op_in,
    "$nin": _op_nin,
    "$exists": _op_exists,
    "$regex": _op_regex,
    "$size": _op_size,
    "$elemMatch": _op_elem_match,
}


def _compile_field_conditions(conditions: dict) -> Predicate:
    predicates: list[Predicate] = []
    for op, operand in conditions.items():
        if op == "$not":
            inner = _compile_field_conditions(_as_conditions(operand))
            predicates.append(lambda v, inner=inner: not inner(v))
            continue
        builder = FIELD_OPERATORS.get(op)
        if builder is None:
            raise SelectorError(f"unknown operator: {op}")
        predicates.append(builder(operand))
    return lambda v: all(p(v) for p in predicates)


def _as_conditions(value: Any) -> dict:
    """Operator object as-is; anything else is an implicit $eq."""
    if isinstance(value, dict) and value and all(k.startswith("$") for k in value):
        return value
    return {"$eq": value}


# ── Combinators ─────────────────────────────────────────────

def _selector_list(op: str, operand: Any) -> list[Predicate]:
    if not isinstance(operand, list) or not operand:
        raise SelectorError(f"{op} requires a non-empty array of selectors")
    return [compile_selector(s) for s in operand]


def _comb_and(operand: Any) -> Predicate:
    parts = _selector_list("$and", operand)
    return lambda d: all(p(d) for p in parts)


def _comb_or(operand: Any) -> Predicate:
    parts = _selector_list("$or", operand)
    return lambda d: any(p(d) for p in parts)


def _comb_nor(operand: Any) -> Predicate:
    parts = _selector_list("$nor", operand)
    return lambda d: not any(p(d) for p in parts)


def _comb_not(operand: Any) -> Predicate:
    inner = compile_selector(operand)
    return lambda d: not inner(d)


_COMBINATORS: dict[str, Callable[[Any], Predicate]] = {
    "$and": _comb_and,
    "$or": _comb_or,
    "$nor": _comb_nor,
    "$not": _comb_not,
}


# ── Public API ──────────────────────────────────────────────

def compile_selector(selector: Any) -> Predicate:
    """Compile a selector object into a document predicate.

    The empty selector ``{}`` matches every document.
    """
    if not isinstance(selector, dict):
        raise SelectorError(f"selector must be an object, got {type(selector).__name__}")

    predicates: list[Predicate] = []
    for key, value in selector.items():
        if key.startswith("$"):
            combinator = _COMBINATORS.get(key)
            if combinator is None:
                raise SelectorError(f"unknown combinator: {key}")
            predicates.append(combinator(value))
            continue
        if not key:
            raise SelectorError("field name must not be empty")
        field_matches = _compile_field_conditions(_as_conditions(value))
        predicates.append(
            lambda d, key=key, field_matches=field_matches: field_matches(resolve_field(d, key))
        )
    return lambda d: all(p(d) for p in predicates)
