from __future__ import annotations

from typing import Any, Literal

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.table import get_main_table
from .common import strip_storage_keys

VerificationStatus = Literal["pending", "under_review", "approved", "rejected"]

REVIEWABLE_STATUSES: frozenset[str] = frozenset({"pending", "under_review"})
SUBMITTABLE_STATUSES: frozenset[str] = frozenset({"pending", "rejected"})
TERMINAL_STATUSES: frozenset[str] = frozenset({"approved", "rejected"})


def _status_pk(status: str) -> str:
    return f"VERIFICATION#{status}"


def verification_key(*, company_id: str) -> dict[str, str]:
    cid = str(company_id or "").strip()
    if not cid:
        raise ValueError("company_id is required")
    return {"pk": f"COMPANY#{cid}", "sk": "VERIFICATION"}


def with_index(item: dict[str, Any]) -> dict[str, Any]:
    out = dict(item)
    out["gsi1pk"] = _status_pk(str(out.get("status") or "pending"))
    out["gsi1sk"] = f"{out.get('updatedAt')}#{out.get('companyId')}"
    return out


def build_verification_item(*, company_id: str, created_at: str) -> dict[str, Any]:
    return with_index(
        {
            **verification_key(company_id=company_id),
            "entityType": "CompanyVerification",
            "companyId": company_id,
            "status": "pending",
            "documents": {},
            "createdAt": created_at,
            "updatedAt": created_at,
        }
    )


def get_verification_item(company_id: str) -> dict[str, Any] | None:
    return get_main_table().get_item(key=verification_key(company_id=company_id))


def list_verifications_by_status(status: str, *, limit: int = 50, next_token: str | None = None) -> dict[str, Any]:
    pg = get_main_table().query_page(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(_status_pk(status)),
        scan_index_forward=True,
        limit=max(1, min(200, int(limit or 50))),
        next_token=next_token,
    )
    out = [normalize_verification(it) for it in pg.items or []]
    return {"data": [x for x in out if x], "nextToken": pg.next_token}


def list_all_verifications_by_status(status: str, *, max_items: int = 5000) -> list[dict[str, Any]]:
    items = get_main_table().query_all(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(_status_pk(status)),
        max_items=max_items,
    )
    return [x for x in (normalize_verification(it) for it in items) if x]


def normalize_verification(item: dict[str, Any] | None) -> dict[str, Any] | None:
    if not item:
        return None
    out = strip_storage_keys(item)
    out["_id"] = str(out.get("companyId") or "").strip() or None
    out.setdefault("documents", {})
    return out
