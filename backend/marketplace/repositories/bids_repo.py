from __future__ import annotations

from typing import Any, Literal

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.table import get_main_table
from .common import clean_nulls, strip_storage_keys

BidStatus = Literal["pending", "under_review", "accepted", "rejected", "withdrawn", "expired"]

OPEN_STATUSES: frozenset[str] = frozenset({"pending", "under_review"})
TERMINAL_STATUSES: frozenset[str] = frozenset({"accepted", "rejected", "withdrawn", "expired"})

# Open bids are indexed by expiry so the sweep never scans the table.
OPEN_EXPIRY_PK = "BIDEXPIRY#OPEN"


def is_open(bid: dict[str, Any] | None) -> bool:
    return bool(bid) and str(bid.get("status") or "") in OPEN_STATUSES


def bid_key(*, project_id: str, bid_id: str) -> dict[str, str]:
    pid = str(project_id or "").strip()
    bid = str(bid_id or "").strip()
    if not pid:
        raise ValueError("project_id is required")
    if not bid:
        raise ValueError("bid_id is required")
    # Bids live in their project's partition so a cascade reads all siblings at once.
    return {"pk": f"PROJECT#{pid}", "sk": f"BID#{bid}"}


def bid_lookup_key(*, bid_id: str) -> dict[str, str]:
    bid = str(bid_id or "").strip()
    if not bid:
        raise ValueError("bid_id is required")
    return {"pk": f"BID#{bid}", "sk": "LOOKUP"}


def bidder_slot_key(*, project_id: str, company_id: str) -> dict[str, str]:
    """Uniqueness index: present exactly while (project, company) has an open bid."""
    pid = str(project_id or "").strip()
    cid = str(company_id or "").strip()
    if not pid or not cid:
        raise ValueError("project_id and company_id are required")
    return {"pk": f"PROJECT#{pid}", "sk": f"BIDDER#{cid}"}


def with_index(item: dict[str, Any]) -> dict[str, Any]:
    """Set or clear the open-bid expiry index to match the item's status."""
    out = dict(item)
    out.pop("gsi1pk", None)
    out.pop("gsi1sk", None)
    exp = out.get("expiresAt")
    if is_open(out) and exp:
        out["gsi1pk"] = OPEN_EXPIRY_PK
        out["gsi1sk"] = f"{exp}#{out.get('bidId')}"
    return out


def build_bid_item(
    *,
    bid_id: str,
    project_id: str,
    company_id: str,
    submitted_by: str,
    amount: Any,
    currency: str,
    milestones: list[dict[str, Any]],
    proposal: str | None,
    timeline: dict[str, Any] | None,
    attachment_refs: list[str],
    expires_at: str | None,
    created_at: str,
) -> dict[str, Any]:
    item: dict[str, Any] = {
        **bid_key(project_id=project_id, bid_id=bid_id),
        "entityType": "Bid",
        "bidId": bid_id,
        "projectId": project_id,
        "companyId": company_id,
        "submittedBy": submitted_by,
        "amount": amount,
        "currency": currency,
        "milestones": milestones,
        "proposal": proposal,
        "timeline": timeline,
        "attachmentRefs": list(attachment_refs),
        "status": "pending",
        "expiresAt": expires_at,
        "revisionCount": 0,
        "statusHistory": [
            {"status": "pending", "changedAt": created_at, "changedBy": submitted_by, "notes": "Bid submitted"}
        ],
        "createdAt": created_at,
        "updatedAt": created_at,
    }
    return with_index(clean_nulls(item))


def build_lookup_item(*, bid_id: str, project_id: str, company_id: str, created_at: str) -> dict[str, Any]:
    return {
        **bid_lookup_key(bid_id=bid_id),
        "entityType": "BidLookup",
        "bidId": bid_id,
        "projectId": project_id,
        "companyId": company_id,
        "createdAt": created_at,
        "gsi1pk": f"COMPANY#{company_id}",
        "gsi1sk": f"{created_at}#{bid_id}",
    }


def build_slot_item(*, project_id: str, company_id: str, bid_id: str, updated_at: str) -> dict[str, Any]:
    return {
        **bidder_slot_key(project_id=project_id, company_id=company_id),
        "entityType": "BidderSlot",
        "projectId": project_id,
        "companyId": company_id,
        "activeBidId": bid_id,
        "updatedAt": updated_at,
    }


def transitioned(
    bid: dict[str, Any],
    *,
    status: BidStatus,
    changed_by: str,
    at: str,
    notes: str | None = None,
    reason: str | None = None,
) -> dict[str, Any]:
    """Return the next bid item for a status change (the caller writes it)."""
    nxt = dict(bid)
    nxt["status"] = status
    nxt["updatedAt"] = at
    if reason is not None:
        nxt["rejectionReason"] = reason
    history = list(bid.get("statusHistory") or [])
    entry = {"status": status, "changedAt": at, "changedBy": changed_by}
    if notes:
        entry["notes"] = notes
    history.append(entry)
    nxt["statusHistory"] = history
    return with_index(nxt)


def tx_release_slot(table, *, bid: dict[str, Any]) -> dict[str, Any]:
    """Delete the bidder slot held by `bid`; conditional so a newer slot is never removed."""
    return table.tx_delete(
        key=bidder_slot_key(project_id=str(bid.get("projectId")), company_id=str(bid.get("companyId"))),
        condition_expression="activeBidId = :bid",
        expression_attribute_values={":bid": str(bid.get("bidId"))},
    )


def get_bid_item(*, project_id: str, bid_id: str) -> dict[str, Any] | None:
    return get_main_table().get_item(key=bid_key(project_id=project_id, bid_id=bid_id))


def resolve_project_id(bid_id: str) -> str | None:
    it = get_main_table().get_item(key=bid_lookup_key(bid_id=bid_id))
    if not it:
        return None
    return str(it.get("projectId") or "").strip() or None


def get_bidder_slot(*, project_id: str, company_id: str) -> dict[str, Any] | None:
    return get_main_table().get_item(key=bidder_slot_key(project_id=project_id, company_id=company_id))


def list_bid_items_for_project(project_id: str) -> list[dict[str, Any]]:
    """Strongly consistent read of every bid in the project partition."""
    return get_main_table().query_all(
        key_condition_expression=Key("pk").eq(f"PROJECT#{project_id}") & Key("sk").begins_with("BID#"),
        consistent_read=True,
    )


def list_bid_ids_for_company(company_id: str, *, limit: int = 100) -> list[tuple[str, str]]:
    pg = get_main_table().query_page(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(f"COMPANY#{company_id}"),
        scan_index_forward=False,
        limit=max(1, min(200, int(limit or 100))),
    )
    out: list[tuple[str, str]] = []
    for it in pg.items or []:
        pid = str(it.get("projectId") or "").strip()
        bid = str(it.get("bidId") or "").strip()
        if pid and bid:
            out.append((pid, bid))
    return out


def list_due_open_bids(*, before_iso: str, limit: int = 200) -> list[dict[str, Any]]:
    """Open bids whose expiresAt is earlier than `before_iso` (eventually consistent)."""
    pg = get_main_table().query_page(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(OPEN_EXPIRY_PK) & Key("gsi1sk").lt(before_iso),
        scan_index_forward=True,
        limit=max(1, min(500, int(limit or 200))),
    )
    return list(pg.items or [])


def normalize_bid(item: dict[str, Any] | None) -> dict[str, Any] | None:
    if not item:
        return None
    out = strip_storage_keys(item)
    out["_id"] = str(out.get("bidId") or "").strip() or None
    return out
