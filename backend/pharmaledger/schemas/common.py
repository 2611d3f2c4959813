"""Shared base model and the byte codec used for every stored document.

Stored documents are JSON objects with fixed camelCase field names and
RFC 3339 timestamps.  ``docType`` tells batches and flags apart when both
live in the same keyspace.
"""

import json
from typing import TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from pharmaledger.exceptions import StoreError

M = TypeVar("M", bound="LedgerModel")


class LedgerModel(BaseModel):
    """Immutable camelCase document."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


def encode_document(model: LedgerModel) -> bytes:
    return model.model_dump_json(by_alias=True).encode("utf-8")


def decode_document(model_cls: type[M], raw: bytes, key: str | None = None) -> M:
    """Decode a stored document, raising StoreError on corrupt payloads."""
    try:
        return model_cls.model_validate_json(raw)
    except PydanticValidationError as exc:
        raise StoreError(
            f"Corrupt {model_cls.__name__} document in ledger state: {exc.error_count()} error(s)",
            key=key,
        ) from exc


def document_type(raw: bytes) -> str | None:
    """The ``docType`` of a stored JSON document, or None if it has none."""
    try:
        document = json.loads(raw)
    except ValueError:
        return None
    return document.get("docType") if isinstance(document, dict) else None
