# Overview: Encode/decode helpers for JSON blobs stored inside table columns.

"""
Every JSON column goes through this module so reads and writes share one path.

Absence is preserved: None encodes to SQL NULL and NULL decodes back to None.
A product with no variants therefore stores no blob at all, never "{}".
"""
from __future__ import annotations

import json
from typing import Any

from .errors import StorageError


def encode_blob(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def decode_blob(raw: str | None) -> Any:
    if raw is None or raw == "":
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise StorageError("Stored record is corrupt") from exc


def encode_variants(variants: dict | None) -> str | None:
    # An empty grouping carries no information; store it as absent
    if not variants:
        return None
    return encode_blob(variants)


def decode_variants(raw: str | None) -> dict | None:
    return decode_blob(raw)


def encode_items(items: list[dict]) -> str:
    return encode_blob(list(items))


def decode_items(raw: str | None) -> list[dict]:
    return decode_blob(raw) or []


def encode_payments(payments: list[dict]) -> str:
    return encode_blob(list(payments))


def decode_payments(raw: str | None) -> list[dict]:
    return decode_blob(raw) or []


encode_receipt_options = encode_blob
decode_receipt_options = decode_blob

encode_metrics = encode_blob
decode_metrics = decode_blob

encode_selected_variants = encode_blob
decode_selected_variants = decode_blob
