from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

# Key/index attributes never leave the repository layer.
STORAGE_KEYS = ("pk", "sk", "gsi1pk", "gsi1sk", "entityType")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_iso(now: datetime | None = None) -> str:
    return to_iso(now or utcnow())


def parse_iso(value: Any) -> datetime | None:
    s = str(value or "").strip()
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:20]}"


def strip_storage_keys(item: dict[str, Any]) -> dict[str, Any]:
    out = dict(item)
    for k in STORAGE_KEYS:
        out.pop(k, None)
    return out


def clean_nulls(item: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in item.items() if v is not None}


def versioned_put(table, *, item: dict[str, Any], expected_version: int | None) -> dict[str, Any]:
    """
    Build a transactional put that only lands if the stored version is unchanged.

    `expected_version=None` means the item must not exist yet. The written
    item always carries the next version.
    """
    if expected_version is None:
        return table.tx_put(
            item={**item, "version": 1},
            condition_expression="attribute_not_exists(pk)",
        )
    return table.tx_put(
        item={**item, "version": int(expected_version) + 1},
        condition_expression="version = :ver",
        expression_attribute_values={":ver": int(expected_version)},
    )


def to_ddb_value(value: Any) -> Any:
    """boto3 rejects floats; JSON payload fragments are stored with Decimals instead."""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {str(k): to_ddb_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_ddb_value(v) for v in value]
    return value
