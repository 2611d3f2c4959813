"""Input validators for ledger operations.

Every validator either returns the parsed value or raises
``pharmaledger.exceptions.ValidationError`` naming the offending field.
They run before any store write, so a rejected input leaves no trace.

- RFC 3339 timestamps (timezone required)
- temperature readings (finite numbers)
- batch status / flag severity names
- rich-query predicates (Mango selector JSON)
"""

import json
import math
import re
from datetime import datetime

from pharmaledger.exceptions import ValidationError
from pharmaledger.schemas.batch import BatchStatus
from pharmaledger.schemas.flag import FlagSeverity
from pharmaledger.store.selector import SelectorError, compile_selector

# Regex patterns
RFC3339_REGEX = re.compile(
    r"^\d{4}-\d{2}-\d{2}"                 # full-date
    r"[Tt ]"
    r"\d{2}:\d{2}:\d{2}(\.\d+)?"          # partial-time
    r"([Zz]|[+-]\d{2}:\d{2})$"            # time-offset
)

# CouchDB Mango query keys; only limit, skip and sort change the result
_QUERY_OPTIONS = {
    "selector", "limit", "skip", "sort", "fields", "bookmark",
    "use_index", "execution_stats", "conflicts", "r", "update", "stable",
}


def parse_timestamp(value: str, field: str) -> datetime:
    """Parse an RFC 3339 date-time into an aware datetime.

    Raises:
        ValidationError: If the text is not RFC 3339 (a timezone is required)
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            raise ValidationError(field, "timestamp must carry a timezone", value)
        return value
    if not isinstance(value, str) or not RFC3339_REGEX.match(value.strip()):
        raise ValidationError(field, "expected an RFC 3339 date-time", value)

    text = value.strip()
    if text[-1] in "Zz":
        text = text[:-1] + "+00:00"
    text = text[:10] + "T" + text[11:]

    # fromisoformat accepts at most 6 fractional digits
    match = re.match(r"^(.*\.)(\d+)([+-]\d{2}:\d{2})$", text)
    if match:
        text = f"{match.group(1)}{match.group(2)[:6].ljust(6, '0')}{match.group(3)}"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(field, f"expected an RFC 3339 date-time ({exc})", value) from exc
    return parsed


def parse_temperature(value, field: str = "temperature") -> float:
    if isinstance(value, bool):
        raise ValidationError(field, "expected a number", value)
    try:
        reading = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(field, "expected a number", value) from exc
    if not math.isfinite(reading):
        raise ValidationError(field, "reading must be finite", value)
    return reading


def require_text(value, field: str) -> str:
    """Non-empty string, surrounding whitespace stripped."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field, "must be a non-empty string", value)
    return value.strip()


def free_text(value, field: str) -> str:
    """Any string, empty included; None reads as empty."""
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(field, "must be a string", value)
    return value


def parse_status(value, field: str = "status") -> BatchStatus:
    try:
        return BatchStatus(value)
    except ValueError as exc:
        allowed = ", ".join(s.value for s in BatchStatus)
        raise ValidationError(field, f"unknown status (expected one of: {allowed})", value) from exc


def parse_severity(value, field: str = "severity") -> FlagSeverity:
    text = value.strip().upper() if isinstance(value, str) else value
    try:
        return FlagSeverity(text)
    except ValueError as exc:
        allowed = ", ".join(s.value for s in FlagSeverity)
        raise ValidationError(field, f"unknown severity (expected one of: {allowed})", value) from exc


def parse_query(predicate: str, field: str = "predicate") -> tuple[dict, dict]:
    """Parse a rich-query predicate into a validated selector and its options.

    Accepts either a CouchDB-style query object ``{"selector": {...}, ...}``
    or a bare selector object.  Returns ``(selector, options)`` where
    options holds ``limit`` (int or None), ``skip`` (int) and ``sort``
    (list of ``[field, "asc" | "desc"]`` pairs).

    ``fields``, ``bookmark``, ``use_index`` and the other read-tuning
    options are accepted and ignored: results are always whole batches.
    """
    if not isinstance(predicate, str) or not predicate.strip():
        raise ValidationError(field, "query string must not be empty", predicate)
    try:
        parsed = json.loads(predicate)
    except ValueError as exc:
        raise ValidationError(field, f"malformed JSON ({exc.msg})", predicate) from exc
    if not isinstance(parsed, dict):
        raise ValidationError(field, "query must be a JSON object", predicate)

    options = {"limit": None, "skip": 0, "sort": []}
    if "selector" in parsed:
        unknown = set(parsed) - _QUERY_OPTIONS
        if unknown:
            raise ValidationError(
                field, f"unsupported query option(s): {', '.join(sorted(unknown))}", predicate
            )
        selector = parsed["selector"]
        if "limit" in parsed:
            options["limit"] = _parse_count(parsed["limit"], "limit", field, predicate)
        if "skip" in parsed:
            options["skip"] = _parse_count(parsed["skip"], "skip", field, predicate)
        if "sort" in parsed:
            options["sort"] = _parse_sort(parsed["sort"], field, predicate)
    else:
        selector = parsed

    try:
        compile_selector(selector)
    except SelectorError as exc:
        raise ValidationError(field, str(exc), predicate) from exc
    return selector, options


def _parse_count(value, option: str, field: str, predicate: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ValidationError(field, f"{option} must be a non-negative integer", predicate)
    return value


def _parse_sort(value, field: str, predicate: str) -> list[list[str]]:
    """``["a", {"b": "desc"}]`` → ``[["a", "asc"], ["b", "desc"]]``."""
    if not isinstance(value, list):
        raise ValidationError(field, "sort must be an array", predicate)
    fields = []
    for item in value:
        if isinstance(item, str) and item:
            fields.append([item, "asc"])
        elif (
            isinstance(item, dict)
            and len(item) == 1
            and next(iter(item))
            and next(iter(item.values())) in ("asc", "desc")
        ):
            name, direction = next(iter(item.items()))
            fields.append([name, direction])
        else:
            raise ValidationError(field, f"invalid sort entry: {item!r}", predicate)
    return fields
