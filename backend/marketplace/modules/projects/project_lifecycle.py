from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from ...db.dynamodb.optimistic import run_optimistic
from ...db.dynamodb.table import DynamoTable, get_main_table
from ...errors import (
    CASCADE_TOO_LARGE,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from ...observability.logging import get_logger
from ...repositories.bids_repo import (
    is_open,
    list_bid_items_for_project,
    transitioned,
    tx_release_slot,
)
from ...repositories.common import clean_nulls, new_id, now_iso, versioned_put
from ...repositories.projects_repo import (
    BIDDABLE_STATUSES,
    CANCELLABLE_STATUSES,
    build_project_item,
    can_transition,
    get_project_item,
    list_projects_for_client as _list_projects_for_client,
    normalize_project,
)
from ..bidding.milestones import as_decimal
from ..identity.access_policy import (
    can_create_project,
    can_edit_project,
    can_manage_project,
    can_track_milestones,
    can_view_project,
    is_project_owner,
    require,
)
from ..identity.actor import Actor

log = get_logger("project_lifecycle")

CANCELLED_BID_REASON = "project cancelled"

EDITABLE_FIELDS = frozenset({"title", "description", "category", "budget", "isInviteOnly", "invitedCompanyIds"})


def load_project(project_id: str) -> dict[str, Any]:
    item = get_project_item(project_id)
    if not item:
        raise NotFoundError(message="Project not found")
    return item


def check_transition(project: dict[str, Any], target: str) -> None:
    current = str(project.get("status") or "")
    if not can_transition(current, target):
        raise StateConflictError(message=f"Project cannot move from {current} to {target}")


def parse_budget(raw: Any) -> dict[str, Any]:
    """`{min, max|null}`; min > 0 and max >= min when bounded."""
    if not isinstance(raw, dict):
        raise ValidationError(message="budget is required", field="budget")
    lo = as_decimal(raw.get("min"))
    if lo is None or lo <= 0:
        raise ValidationError(message="budget.min must be a positive amount", field="budget.min")
    hi_raw = raw.get("max")
    hi: Decimal | None = None
    if hi_raw is not None and str(hi_raw).strip() != "":
        hi = as_decimal(hi_raw)
        if hi is None or hi < lo:
            raise ValidationError(message="budget.max must be at least budget.min", field="budget.max")
    return {"min": lo, "max": hi}


def _clean_title(raw: Any) -> str:
    title = str(raw or "").strip()
    if not title:
        raise ValidationError(message="title is required", field="title")
    return title[:200]


def _clean_company_ids(raw: Any) -> list[str]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError(message="invitedCompanyIds must be a list", field="invitedCompanyIds")
    out: list[str] = []
    for x in raw:
        s = str(x or "").strip()
        if s and s not in out:
            out.append(s)
    return out


def create_project(*, actor: Actor, payload: dict[str, Any], now: datetime | None = None) -> dict[str, Any]:
    require(can_create_project(actor), "Only clients can post projects")
    p = payload if isinstance(payload, dict) else {}

    title = _clean_title(p.get("title"))
    budget = parse_budget(p.get("budget"))
    invite_only = bool(p.get("isInviteOnly"))
    invited = _clean_company_ids(p.get("invitedCompanyIds"))
    status = "draft" if p.get("draft") else "posted"

    project_id = new_id("prj")
    item = build_project_item(
        project_id=project_id,
        owner_id=actor.user_id,
        status=status,
        title=title,
        description=str(p.get("description") or "").strip() or None,
        category=str(p.get("category") or "").strip() or None,
        budget=budget,
        is_invite_only=invite_only,
        invited_company_ids=invited,
        created_at=now_iso(now),
    )
    item["version"] = 1
    get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
    log.info("project_created", project_id=project_id, owner_id=actor.user_id, status=status)
    return normalize_project(item) or {}


def update_project(
    *,
    project_id: str,
    actor: Actor,
    patch: dict[str, Any],
    now: datetime | None = None,
) -> dict[str, Any]:
    p = patch if isinstance(patch, dict) else {}
    unknown = sorted(k for k in p.keys() if k not in EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(message=f"Field cannot be edited: {unknown[0]}", field=unknown[0])

    def attempt() -> dict[str, Any]:
        current = load_project(project_id)
        require(can_edit_project(actor, current), "Projects can only be edited by their owner while posted")

        nxt = dict(current)
        if "title" in p:
            nxt["title"] = _clean_title(p.get("title"))
        for k in ("description", "category"):
            if k in p:
                nxt[k] = str(p.get(k) or "").strip() or None
        if "budget" in p:
            nxt["budget"] = parse_budget(p.get("budget"))
        if "isInviteOnly" in p:
            nxt["isInviteOnly"] = bool(p.get("isInviteOnly"))
        if "invitedCompanyIds" in p:
            nxt["invitedCompanyIds"] = _clean_company_ids(p.get("invitedCompanyIds"))
        nxt["updatedAt"] = now_iso(now)
        nxt = clean_nulls(nxt)

        table = get_main_table()
        expected = int(current.get("version") or 0)
        table.transact_write(puts=[versioned_put(table, item=nxt, expected_version=expected)])
        log.info("project_updated", project_id=project_id, fields=sorted(p.keys()))
        return normalize_project({**nxt, "version": expected + 1}) or {}

    return run_optimistic("update_project", attempt, project_id=project_id)


def _simple_transition(
    *,
    operation: str,
    event: str,
    project_id: str,
    actor: Actor,
    target: str,
    stamp_field: str,
    now: datetime | None,
) -> dict[str, Any]:
    def attempt() -> dict[str, Any]:
        current = load_project(project_id)
        require(can_manage_project(actor, current), "Only the project owner can do this")
        check_transition(current, target)

        at = now_iso(now)
        nxt = {**current, "status": target, "updatedAt": at, stamp_field: at}
        table = get_main_table()
        expected = int(current.get("version") or 0)
        table.transact_write(puts=[versioned_put(table, item=nxt, expected_version=expected)])
        log.info(event, project_id=project_id, previous_status=current.get("status"))
        return normalize_project({**nxt, "version": expected + 1}) or {}

    return run_optimistic(f"{operation}_project", attempt, project_id=project_id)


def publish_project(*, project_id: str, actor: Actor, now: datetime | None = None) -> dict[str, Any]:
    """draft -> posted."""
    return _simple_transition(
        operation="publish",
        event="project_published",
        project_id=project_id,
        actor=actor,
        target="posted",
        stamp_field="postedAt",
        now=now,
    )


def complete_project(*, project_id: str, actor: Actor, now: datetime | None = None) -> dict[str, Any]:
    """active -> completed; acceptedBidId is frozen from here on."""
    return _simple_transition(
        operation="complete",
        event="project_completed",
        project_id=project_id,
        actor=actor,
        target="completed",
        stamp_field="completedAt",
        now=now,
    )


def cancel_project(
    *,
    project_id: str,
    actor: Actor,
    reason: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Cancel a posted/bidding project and reject every open bid with it.

    The project and all touched bids are written in one transaction, so either
    the whole cascade lands or nothing does.
    """

    def attempt() -> dict[str, Any]:
        current = load_project(project_id)
        require(can_manage_project(actor, current), "Only the project owner can cancel it")
        status = str(current.get("status") or "")
        if status not in CANCELLABLE_STATUSES:
            raise StateConflictError(message=f"Project cannot be cancelled while {status}")

        at = now_iso(now)
        open_bids = [b for b in list_bid_items_for_project(project_id) if is_open(b)]

        table = get_main_table()
        check_cascade_size(table, open_bids)

        puts: list[dict[str, Any]] = []
        deletes: list[dict[str, Any]] = []
        for b in open_bids:
            nxt_bid = transitioned(
                b, status="rejected", changed_by=actor.user_id, at=at,
                notes="Project cancelled", reason=CANCELLED_BID_REASON,
            )
            puts.append(versioned_put(table, item=nxt_bid, expected_version=int(b.get("version") or 0)))
            deletes.append(tx_release_slot(table, bid=b))

        nxt = {**current, "status": "cancelled", "updatedAt": at, "cancelledAt": at}
        if reason and str(reason).strip():
            nxt["cancellationReason"] = str(reason).strip()
        puts.append(versioned_put(table, item=nxt, expected_version=int(current.get("version") or 0)))

        table.transact_write(puts=puts, deletes=deletes)
        log.info("project_cancelled", project_id=project_id, cascaded_rejections=len(open_bids))
        return {"status": "cancelled", "cascadedRejections": len(open_bids)}

    return run_optimistic("cancel_project", attempt, project_id=project_id)


def check_cascade_size(table: DynamoTable, open_bids: list[dict[str, Any]]) -> None:
    # One bid put and one slot delete per open bid, plus the project put.
    needed = 2 * len(open_bids) + 1
    if needed > table.max_transaction_items:
        raise StateConflictError(
            message=f"Too many open bids to update atomically ({len(open_bids)})",
            code=CASCADE_TOO_LARGE,
        )


def activate_with_bid(
    table: DynamoTable,
    *,
    project: dict[str, Any],
    bid: dict[str, Any],
    at: str,
) -> dict[str, Any]:
    """
    Build the project half of a bid acceptance: posted/bidding -> active with
    the accepted bid recorded. Returns a transactional put for the caller's
    transaction.
    """
    status = str(project.get("status") or "")
    if status not in BIDDABLE_STATUSES:
        raise StateConflictError(message=f"Project is not accepting bids (status {status})")
    check_transition(project, "active")
    nxt = {
        **project,
        "status": "active",
        "acceptedBidId": str(bid.get("bidId")),
        "acceptedCompanyId": str(bid.get("companyId")),
        "acceptedAt": at,
        "updatedAt": at,
        # The accepted payment breakdown becomes the tracked milestone list.
        "milestones": [seed_milestone(m, at=at) for m in (bid.get("milestones") or [])],
    }
    return versioned_put(table, item=nxt, expected_version=int(project.get("version") or 0))


def get_project(*, project_id: str, actor: Actor) -> dict[str, Any]:
    project = load_project(project_id)
    # Hidden projects read as missing rather than forbidden.
    if not can_view_project(actor, project):
        raise NotFoundError(message="Project not found")
    return normalize_project(project) or {}


def list_projects_for_client(
    *,
    actor: Actor,
    limit: int = 50,
    next_token: str | None = None,
) -> dict[str, Any]:
    return _list_projects_for_client(actor.user_id, limit=limit, next_token=next_token)


# --- milestone progress on an awarded project ---

MILESTONE_FLOW: tuple[str, ...] = ("pending", "in_progress", "completed", "paid")

_MILESTONE_STAMPS = {"in_progress": "startedAt", "completed": "completedAt", "paid": "paidAt"}


def seed_milestone(raw: dict[str, Any], *, at: str) -> dict[str, Any]:
    row = {
        "milestoneId": new_id("ms"),
        "title": str(raw.get("title") or "").strip()[:200],
        "description": str(raw.get("description") or "").strip() or None,
        "amount": raw.get("amount"),
        "percentage": raw.get("percentage"),
        "dueDate": str(raw.get("dueDate")) if raw.get("dueDate") else None,
        "status": "pending",
        "createdAt": at,
    }
    return clean_nulls(row)


def _require_active(project: dict[str, Any]) -> None:
    status = str(project.get("status") or "")
    if status != "active":
        raise StateConflictError(message=f"Milestones are tracked on active projects only (status {status})")


def _write_project(current: dict[str, Any], nxt: dict[str, Any]) -> None:
    table = get_main_table()
    table.transact_write(
        puts=[versioned_put(table, item=clean_nulls(nxt), expected_version=int(current.get("version") or 0))]
    )


def add_project_milestone(
    *,
    project_id: str,
    actor: Actor,
    payload: dict[str, Any],
    now: datetime | None = None,
) -> dict[str, Any]:
    """Append a pending milestone to an active project (owner only)."""
    p = payload if isinstance(payload, dict) else {}
    title = _clean_title(p.get("title"))
    amount = as_decimal(p.get("amount"))
    if amount is None or amount <= 0:
        raise ValidationError(message="Milestone amount must be a positive number", field="amount")

    def attempt() -> dict[str, Any]:
        current = load_project(project_id)
        require(can_manage_project(actor, current), "Only the project owner can add milestones")
        _require_active(current)

        at = now_iso(now)
        row = seed_milestone({**p, "title": title, "amount": amount, "percentage": None}, at=at)
        nxt = {**current, "milestones": list(current.get("milestones") or []) + [row], "updatedAt": at}
        _write_project(current, nxt)
        log.info("project_milestone_added", project_id=project_id, milestone_id=row["milestoneId"])
        return row

    return run_optimistic("add_project_milestone", attempt, project_id=project_id)


def update_milestone_status(
    *,
    project_id: str,
    milestone_id: str,
    actor: Actor,
    status: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Move a milestone one step along pending -> in_progress -> completed -> paid.

    The owner or the awarded company may report progress; only the owner
    records payment. Marking a milestone paid moves no money.
    """
    target = str(status or "").strip().lower()
    if target not in MILESTONE_FLOW:
        raise ValidationError(message=f"Unknown milestone status: {status}", field="status")

    def attempt() -> dict[str, Any]:
        current = load_project(project_id)
        require(can_track_milestones(actor, current), "Not authorized to update this milestone")
        _require_active(current)
        if target == "paid":
            require(is_project_owner(actor, current), "Only the project owner can record payment")

        rows = [dict(m) for m in (current.get("milestones") or [])]
        idx = next((i for i, m in enumerate(rows) if str(m.get("milestoneId") or "") == milestone_id), None)
        if idx is None:
            raise NotFoundError(message="Milestone not found")
        row = rows[idx]
        prev = str(row.get("status") or "pending")
        if prev not in MILESTONE_FLOW or MILESTONE_FLOW.index(target) != MILESTONE_FLOW.index(prev) + 1:
            raise StateConflictError(message=f"Milestone cannot move from {prev} to {target}")

        at = now_iso(now)
        row["status"] = target
        row[_MILESTONE_STAMPS[target]] = at
        row["updatedAt"] = at
        row["updatedBy"] = actor.user_id
        rows[idx] = row
        _write_project(current, {**current, "milestones": rows, "updatedAt": at})
        log.info(
            "project_milestone_updated",
            project_id=project_id,
            milestone_id=milestone_id,
            previous_status=prev,
            status=target,
        )
        return row

    return run_optimistic("update_milestone_status", attempt, project_id=project_id)


__all__ = [
    "MILESTONE_FLOW",
    "activate_with_bid",
    "add_project_milestone",
    "cancel_project",
    "check_cascade_size",
    "check_transition",
    "complete_project",
    "create_project",
    "get_project",
    "list_projects_for_client",
    "load_project",
    "parse_budget",
    "publish_project",
    "seed_milestone",
    "update_milestone_status",
    "update_project",
]
