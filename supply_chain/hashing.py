"""Deterministic hashing for ledger transactions."""

from __future__ import annotations

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

GENESIS = "GENESIS"


def _json_serializer(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        # Normalised so 500 and 500.00 hash the same.
        return str(obj.normalize())
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: Any) -> str:
    """Sorted keys, no whitespace, stable rendering of special types."""

    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def hash_payload(payload: Any) -> str:
    return hashlib.sha256(canonicalize_json(payload).encode("utf-8")).hexdigest()


def hash_transaction(
    sequence: int,
    action: str,
    payload_hash: str,
    previous_hash: Optional[str],
) -> str:
    """Chain a transaction to its predecessor.

    The hash covers the sequence number, the action, the payload hash and
    the previous transaction hash, so rewriting any earlier record changes
    every later hash.
    """

    components = [str(sequence), action, payload_hash, previous_hash or GENESIS]
    return hashlib.sha256("|".join(components).encode("utf-8")).hexdigest()


__all__ = ["GENESIS", "canonicalize_json", "hash_payload", "hash_transaction"]
