from __future__ import annotations

from typing import Any, Literal

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.table import get_main_table
from .common import clean_nulls, strip_storage_keys

ProjectStatus = Literal["draft", "posted", "bidding", "active", "completed", "cancelled"]

BIDDABLE_STATUSES: frozenset[str] = frozenset({"posted", "bidding"})
CANCELLABLE_STATUSES: frozenset[str] = frozenset({"posted", "bidding"})
# Statuses in which acceptedBidId must be set.
AWARDED_STATUSES: frozenset[str] = frozenset({"active", "completed"})

# Forward-only graph; cancellation is the single side exit.
PROJECT_TRANSITIONS: dict[str, frozenset[str]] = {
    "draft": frozenset({"posted"}),
    "posted": frozenset({"bidding", "active", "cancelled"}),
    "bidding": frozenset({"active", "cancelled"}),
    "active": frozenset({"completed"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in PROJECT_TRANSITIONS.get(str(current or ""), frozenset())


def _client_pk(owner_id: str) -> str:
    return f"CLIENT#{owner_id}"


def project_key(*, project_id: str) -> dict[str, str]:
    pid = str(project_id or "").strip()
    if not pid:
        raise ValueError("project_id is required")
    return {"pk": f"PROJECT#{pid}", "sk": "PROFILE"}


def build_project_item(
    *,
    project_id: str,
    owner_id: str,
    status: ProjectStatus,
    title: str,
    description: str | None,
    category: str | None,
    budget: dict[str, Any],
    is_invite_only: bool,
    invited_company_ids: list[str],
    created_at: str,
) -> dict[str, Any]:
    item: dict[str, Any] = {
        **project_key(project_id=project_id),
        "entityType": "Project",
        "projectId": project_id,
        "ownerId": owner_id,
        "status": status,
        "title": title,
        "description": description,
        "category": category,
        "budget": budget,
        "bidIds": [],
        "acceptedBidId": None,
        "isInviteOnly": bool(is_invite_only),
        "invitedCompanyIds": list(invited_company_ids),
        "createdAt": created_at,
        "updatedAt": created_at,
        "postedAt": created_at if status == "posted" else None,
        "gsi1pk": _client_pk(owner_id),
        "gsi1sk": f"{created_at}#{project_id}",
    }
    return clean_nulls(item)


def get_project_item(project_id: str) -> dict[str, Any] | None:
    return get_main_table().get_item(key=project_key(project_id=project_id))


def normalize_project(item: dict[str, Any] | None) -> dict[str, Any] | None:
    if not item:
        return None
    out = strip_storage_keys(item)
    out["_id"] = str(out.get("projectId") or "").strip() or None
    out.setdefault("acceptedBidId", None)
    out.setdefault("bidIds", [])
    out.setdefault("invitedCompanyIds", [])
    return out


def list_projects_for_client(owner_id: str, *, limit: int = 50, next_token: str | None = None) -> dict[str, Any]:
    pg = get_main_table().query_page(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(_client_pk(owner_id)),
        scan_index_forward=False,
        limit=max(1, min(200, int(limit or 50))),
        next_token=next_token,
    )
    out = [normalize_project(it) for it in pg.items or []]
    return {"data": [x for x in out if x], "nextToken": pg.next_token}
