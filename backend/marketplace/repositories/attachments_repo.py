from __future__ import annotations

from typing import Any

from ..db.dynamodb.table import get_main_table
from .common import clean_nulls, new_id, now_iso, strip_storage_keys

# Upload mechanics live elsewhere; this registry only records what was
# uploaded and hands back a stable, opaque reference.


def attachment_key(ref: str) -> dict[str, str]:
    r = str(ref or "").strip()
    if not r:
        raise ValueError("ref is required")
    return {"pk": f"ATTACHMENT#{r}", "sk": "PROFILE"}


def normalize_attachment(item: dict[str, Any] | None) -> dict[str, Any] | None:
    if not item:
        return None
    out = strip_storage_keys(item)
    out["_id"] = item.get("ref")
    return out


def register_attachment(
    *,
    owner_id: str,
    file_name: str,
    url: str,
    content_type: str | None = None,
    size: int | None = None,
    company_id: str | None = None,
) -> dict[str, Any]:
    ref = new_id("att")
    item: dict[str, Any] = {
        **attachment_key(ref),
        "entityType": "Attachment",
        "ref": ref,
        "ownerId": str(owner_id),
        "companyId": str(company_id) if company_id else None,
        "fileName": str(file_name or "").strip()[:255] or "upload",
        "url": str(url),
        "contentType": content_type,
        "size": int(size) if size is not None else None,
        "createdAt": now_iso(),
    }
    item = clean_nulls(item)
    get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
    return normalize_attachment(item) or {}


def get_attachment(ref: str) -> dict[str, Any] | None:
    r = str(ref or "").strip()
    if not r:
        return None
    # Refs are checked right after upload, so read-after-write must hold.
    return normalize_attachment(get_main_table().get_item(key=attachment_key(r), consistent_read=True))


def missing_references(refs: list[str]) -> list[str]:
    """References not known to the registry, in input order."""
    return [r for r in refs if not get_attachment(r)]


def foreign_references(refs: list[str], *, user_id: str, company_id: str | None = None) -> list[str]:
    """
    Registered references that belong to neither `user_id` nor `company_id`.

    Unknown references are left to `missing_references`.
    """
    out: list[str] = []
    for r in refs:
        att = get_attachment(r)
        if not att:
            continue
        if str(att.get("ownerId") or "") == str(user_id or ""):
            continue
        if company_id and str(att.get("companyId") or "") == str(company_id):
            continue
        out.append(r)
    return out
