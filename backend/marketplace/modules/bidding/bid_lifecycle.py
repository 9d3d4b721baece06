"""
Bid state machine.

    pending -> under_review
    {pending, under_review} -> {accepted, rejected, withdrawn, expired}

Every mutation is a read-compute-conditional-write attempt run through
`run_optimistic`. Submission and acceptance touch several items (bid, lookup,
bidder slot, project, siblings) and commit them in a single transaction.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from ...db.dynamodb.optimistic import run_optimistic
from ...db.dynamodb.table import get_main_table
from ...errors import (
    AMOUNT_OUT_OF_RANGE,
    BID_EXPIRED,
    COMPANY_NOT_VERIFIED,
    DUPLICATE_BID,
    MILESTONE_MISMATCH,
    NOT_INVITED,
    PROJECT_NOT_BIDDABLE,
    AuthorizationError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from ...observability.logging import get_logger
from ...repositories.attachments_repo import foreign_references, missing_references
from ...repositories.bids_repo import (
    OPEN_STATUSES,
    build_bid_item,
    build_lookup_item,
    build_slot_item,
    get_bid_item,
    get_bidder_slot,
    is_open,
    list_bid_ids_for_company,
    list_bid_items_for_project,
    normalize_bid,
    resolve_project_id,
    transitioned,
    tx_release_slot,
    with_index,
)
from ...repositories.common import (
    clean_nulls,
    new_id,
    now_iso,
    parse_iso,
    to_ddb_value,
    utcnow,
    versioned_put,
)
from ...repositories.projects_repo import BIDDABLE_STATUSES
from ...settings import settings
from ..identity.access_policy import (
    can_accept_bid,
    can_act_for_company,
    can_manage_project,
    can_reject_bid,
    can_submit_bid,
    can_withdraw_bid,
    is_project_owner,
    require,
)
from ..identity.actor import SYSTEM_ACTOR, Actor
from ..projects.project_lifecycle import activate_with_bid, check_cascade_size, load_project
from ..verification.verification_workflow import is_eligible_to_bid
from .milestones import all_positive, as_decimal, infer_mode, rescale_milestones, validate_milestones

log = get_logger("bid_lifecycle")

DEFAULT_CURRENCY = "PKR"
CURRENCIES = frozenset({"PKR", "USD", "EUR", "GBP"})

SIBLING_REJECTION_REASON = "another bid accepted"
DEFAULT_REJECTION_REASON = "rejected by client"

REVISABLE_FIELDS = frozenset({"amount", "milestones", "milestoneMode", "proposal", "timeline", "attachmentRefs"})


# --- input checks ---


def parse_amount(raw: Any) -> Decimal:
    amount = as_decimal(raw)
    if amount is None or amount <= 0:
        raise ValidationError(message="Bid amount must be a positive number", code=AMOUNT_OUT_OF_RANGE, field="amount")
    return amount


def check_budget(project: dict[str, Any], amount: Decimal) -> None:
    """An unbounded budget (max null) accepts any positive amount at or above min."""
    budget = project.get("budget") or {}
    lo = as_decimal(budget.get("min"))
    hi = as_decimal(budget.get("max"))
    if lo is not None and amount < lo:
        raise ValidationError(
            message=f"Bid amount must be at least {lo}", code=AMOUNT_OUT_OF_RANGE, field="amount"
        )
    if hi is not None and amount > hi:
        raise ValidationError(
            message=f"Bid amount must not exceed {hi}", code=AMOUNT_OUT_OF_RANGE, field="amount"
        )


def check_milestones(milestones: Any, total: Decimal, mode: str | None = None) -> list[dict[str, Any]]:
    if not isinstance(milestones, list) or not milestones:
        raise ValidationError(
            message="At least one milestone is required", code=MILESTONE_MISMATCH, field="milestones"
        )
    m = mode or infer_mode(milestones)
    if not m:
        raise ValidationError(
            message="Milestones must all use amount or all use percentage",
            code=MILESTONE_MISMATCH,
            field="milestones",
        )
    res = validate_milestones(milestones, total, m, tolerance=settings.milestone_abs_tolerance)
    if not res.ok:
        raise ValidationError(
            message=res.reason or "Invalid milestones", code=MILESTONE_MISMATCH, field=res.field or "milestones"
        )
    return res.milestones


def _clean_refs(raw: Any, *, actor: Actor, company_id: str) -> list[str]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError(message="attachmentRefs must be a list", field="attachmentRefs")
    refs = [str(r).strip() for r in raw if str(r or "").strip()]
    unknown = missing_references(refs)
    if unknown:
        raise ValidationError(message=f"Unknown attachment reference: {unknown[0]}", field="attachmentRefs")
    foreign = foreign_references(refs, user_id=actor.user_id, company_id=company_id)
    if foreign:
        raise ValidationError(
            message=f"Attachment reference not owned by this company: {foreign[0]}", field="attachmentRefs"
        )
    return refs


def _clean_currency(raw: Any) -> str:
    cur = str(raw or DEFAULT_CURRENCY).strip().upper()
    if cur not in CURRENCIES:
        raise ValidationError(message=f"Unsupported currency: {cur}", field="currency")
    return cur


def _clean_timeline(raw: Any) -> dict[str, Any] | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ValidationError(message="timeline must be an object", field="timeline")
    return to_ddb_value(raw)


def _expiry(raw: Any, now: datetime) -> str:
    if raw is None or str(raw).strip() == "":
        return now_iso(now + timedelta(days=int(settings.bid_expiry_days)))
    dt = parse_iso(raw)
    if dt is None:
        raise ValidationError(message="expiresAt must be an ISO-8601 timestamp", field="expiresAt")
    if dt <= now:
        raise ValidationError(message="expiresAt must be in the future", field="expiresAt")
    return now_iso(dt)


def is_past_expiry(bid: dict[str, Any], now: datetime) -> bool:
    exp = parse_iso(bid.get("expiresAt"))
    return exp is not None and now > exp


# --- loading ---


def _resolve(bid_id: str, project_id: str | None) -> str:
    pid = str(project_id or "").strip() or resolve_project_id(bid_id)
    if not pid:
        raise NotFoundError(message="Bid not found")
    return pid


def _load_bid(project_id: str, bid_id: str) -> dict[str, Any]:
    item = get_bid_item(project_id=project_id, bid_id=bid_id)
    if not item:
        raise NotFoundError(message="Bid not found")
    return item


def _require_open(bid: dict[str, Any], action: str) -> None:
    status = str(bid.get("status") or "")
    if status not in OPEN_STATUSES:
        raise StateConflictError(message=f"Cannot {action} a bid that is {status}")


# --- operations ---


def submit_bid(
    *,
    project_id: str,
    company_id: str,
    actor: Actor,
    payload: dict[str, Any],
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Submit a company's bid on a project.

    Preconditions are checked in a fixed order so the first failing one
    decides the error: actor, verification, project status, invitation,
    amount, milestones, duplicate. On success the bid, its lookup item, the
    bidder slot and the project (bidIds + posted->bidding) commit together.
    """
    pid = str(project_id or "").strip()
    cid = str(company_id or "").strip()
    p = payload if isinstance(payload, dict) else {}
    bid_id = new_id("bid")

    def attempt() -> dict[str, Any]:
        at_dt = now or utcnow()
        at = now_iso(at_dt)

        project = load_project(pid)
        require(can_submit_bid(actor, project, cid), "Not authorized to bid for this company on this project")
        if not is_eligible_to_bid(cid):
            raise AuthorizationError(message="Company is not verified", code=COMPANY_NOT_VERIFIED)
        status = str(project.get("status") or "")
        if status not in BIDDABLE_STATUSES:
            raise StateConflictError(message=f"Project is not open for bids ({status})", code=PROJECT_NOT_BIDDABLE)
        if project.get("isInviteOnly") and cid not in (project.get("invitedCompanyIds") or []):
            raise AuthorizationError(message="This project is invite-only", code=NOT_INVITED)

        amount = parse_amount(p.get("amount"))
        check_budget(project, amount)
        milestones = check_milestones(p.get("milestones"), amount, p.get("milestoneMode"))

        table = get_main_table()
        puts: list[dict[str, Any]] = []

        slot = get_bidder_slot(project_id=pid, company_id=cid)
        if slot:
            held_id = str(slot.get("activeBidId") or "")
            held = get_bid_item(project_id=pid, bid_id=held_id) if held_id else None
            if is_open(held) and not is_past_expiry(held, at_dt):
                raise StateConflictError(
                    message="Company already has an open bid on this project", code=DUPLICATE_BID
                )
            if is_open(held):
                # Stale bid past its expiry: expire it in the same transaction.
                expired = transitioned(
                    held, status="expired", changed_by=SYSTEM_ACTOR.user_id, at=at, notes="Bid expired"
                )
                puts.append(versioned_put(table, item=expired, expected_version=int(held.get("version") or 0)))
            slot_put = table.tx_put(
                item=build_slot_item(project_id=pid, company_id=cid, bid_id=bid_id, updated_at=at),
                condition_expression="activeBidId = :old",
                expression_attribute_values={":old": held_id},
            )
        else:
            slot_put = table.tx_put(
                item=build_slot_item(project_id=pid, company_id=cid, bid_id=bid_id, updated_at=at),
                condition_expression="attribute_not_exists(pk)",
            )

        bid = build_bid_item(
            bid_id=bid_id,
            project_id=pid,
            company_id=cid,
            submitted_by=actor.user_id,
            amount=amount,
            currency=_clean_currency(p.get("currency")),
            milestones=milestones,
            proposal=str(p.get("proposal") or "").strip() or None,
            timeline=_clean_timeline(p.get("timeline")),
            attachment_refs=_clean_refs(p.get("attachmentRefs"), actor=actor, company_id=cid),
            expires_at=_expiry(p.get("expiresAt"), at_dt),
            created_at=at,
        )
        nxt_project = {
            **project,
            "bidIds": list(project.get("bidIds") or []) + [bid_id],
            "status": "bidding",
            "updatedAt": at,
        }

        puts.append(versioned_put(table, item=bid, expected_version=None))
        puts.append(
            table.tx_put(
                item=build_lookup_item(bid_id=bid_id, project_id=pid, company_id=cid, created_at=at),
                condition_expression="attribute_not_exists(pk)",
            )
        )
        puts.append(slot_put)
        puts.append(versioned_put(table, item=nxt_project, expected_version=int(project.get("version") or 0)))
        table.transact_write(puts=puts)

        log.info(
            "bid_submitted",
            bid_id=bid_id,
            project_id=pid,
            company_id=cid,
            project_status=nxt_project["status"],
        )
        return {"bidId": bid_id, "status": "pending"}

    return run_optimistic("submit_bid", attempt, project_id=pid, company_id=cid)


def revise_bid(
    *,
    bid_id: str,
    actor: Actor,
    payload: dict[str, Any],
    project_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """The owning company edits a pending bid; budget and milestones are re-checked."""
    p = payload if isinstance(payload, dict) else {}
    unknown = sorted(k for k in p.keys() if k not in REVISABLE_FIELDS)
    if unknown:
        raise ValidationError(message=f"Field cannot be revised: {unknown[0]}", field=unknown[0])
    pid = _resolve(bid_id, project_id)

    def attempt() -> dict[str, Any]:
        at_dt = now or utcnow()
        at = now_iso(at_dt)

        bid = _load_bid(pid, bid_id)
        require(can_withdraw_bid(actor, bid), "Only the bidding company can revise this bid")
        status = str(bid.get("status") or "")
        if status != "pending":
            raise StateConflictError(message=f"Only pending bids can be revised (is {status})")
        if is_past_expiry(bid, at_dt):
            raise StateConflictError(message="Bid has expired", code=BID_EXPIRED)
        project = load_project(pid)
        if str(project.get("status") or "") not in BIDDABLE_STATUSES:
            raise StateConflictError(message="Project is no longer open for bids", code=PROJECT_NOT_BIDDABLE)

        amount = parse_amount(p["amount"]) if "amount" in p else Decimal(str(bid.get("amount")))
        check_budget(project, amount)
        if "milestones" in p:
            milestones = check_milestones(p.get("milestones"), amount, p.get("milestoneMode"))
        elif amount != Decimal(str(bid.get("amount"))):
            milestones = rescale_milestones(list(bid.get("milestones") or []), amount)
            if not all_positive(milestones):
                raise ValidationError(
                    message="Amount is too small to keep every milestone positive",
                    code=MILESTONE_MISMATCH,
                    field="milestones",
                )
        else:
            milestones = list(bid.get("milestones") or [])

        nxt = dict(bid)
        nxt["amount"] = amount
        nxt["milestones"] = milestones
        if "proposal" in p:
            nxt["proposal"] = str(p.get("proposal") or "").strip() or None
        if "timeline" in p:
            nxt["timeline"] = _clean_timeline(p.get("timeline"))
        if "attachmentRefs" in p:
            nxt["attachmentRefs"] = _clean_refs(
                p.get("attachmentRefs"), actor=actor, company_id=str(bid.get("companyId") or "")
            )
        nxt["revisionCount"] = int(bid.get("revisionCount") or 0) + 1
        nxt["updatedAt"] = at
        nxt["statusHistory"] = list(bid.get("statusHistory") or []) + [
            {"status": "pending", "changedAt": at, "changedBy": actor.user_id, "notes": "Bid revised"}
        ]
        nxt = with_index(clean_nulls(nxt))

        table = get_main_table()
        expected = int(bid.get("version") or 0)
        table.transact_write(puts=[versioned_put(table, item=nxt, expected_version=expected)])
        log.info("bid_revised", bid_id=bid_id, project_id=pid, revision=nxt["revisionCount"])
        return normalize_bid({**nxt, "version": expected + 1}) or {}

    return run_optimistic("revise_bid", attempt, bid_id=bid_id)


def mark_under_review(
    *,
    bid_id: str,
    actor: Actor,
    project_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    pid = _resolve(bid_id, project_id)

    def attempt() -> dict[str, Any]:
        at = now_iso(now)
        project = load_project(pid)
        require(can_manage_project(actor, project), "Only the project owner can review bids")
        bid = _load_bid(pid, bid_id)
        status = str(bid.get("status") or "")
        if status != "pending":
            raise StateConflictError(message=f"Only pending bids can be put under review (is {status})")

        nxt = transitioned(bid, status="under_review", changed_by=actor.user_id, at=at, notes="Under review")
        table = get_main_table()
        table.transact_write(
            puts=[versioned_put(table, item=nxt, expected_version=int(bid.get("version") or 0))]
        )
        log.info("bid_under_review", bid_id=bid_id, project_id=pid)
        return {"bidId": bid_id, "status": "under_review"}

    return run_optimistic("mark_under_review", attempt, bid_id=bid_id)


def withdraw_bid(
    *,
    bid_id: str,
    actor: Actor,
    project_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    pid = _resolve(bid_id, project_id)

    def attempt() -> dict[str, Any]:
        at = now_iso(now)
        bid = _load_bid(pid, bid_id)
        require(can_withdraw_bid(actor, bid), "Only the bidding company can withdraw this bid")
        _require_open(bid, "withdraw")

        nxt = transitioned(bid, status="withdrawn", changed_by=actor.user_id, at=at, notes="Withdrawn by company")
        table = get_main_table()
        table.transact_write(
            puts=[versioned_put(table, item=nxt, expected_version=int(bid.get("version") or 0))],
            deletes=[tx_release_slot(table, bid=bid)],
        )
        log.info("bid_withdrawn", bid_id=bid_id, project_id=pid, company_id=bid.get("companyId"))
        return {"bidId": bid_id, "status": "withdrawn"}

    return run_optimistic("withdraw_bid", attempt, bid_id=bid_id)


def accept_bid(
    *,
    bid_id: str,
    actor: Actor,
    project_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Accept one bid and close the competition.

    Target -> accepted, every other open sibling -> rejected, project ->
    active, all bidder slots released: one transaction, all or nothing.
    """
    pid = _resolve(bid_id, project_id)

    def attempt() -> dict[str, Any]:
        at_dt = now or utcnow()
        at = now_iso(at_dt)

        project = load_project(pid)
        require(can_accept_bid(actor, project), "Only the project owner can accept bids")
        status = str(project.get("status") or "")
        if status not in BIDDABLE_STATUSES:
            raise StateConflictError(message=f"Project is not accepting bids (status {status})")

        bids = list_bid_items_for_project(pid)
        target = next((b for b in bids if str(b.get("bidId")) == bid_id), None)
        if not target:
            raise NotFoundError(message="Bid not found")
        _require_open(target, "accept")
        if is_past_expiry(target, at_dt):
            raise StateConflictError(message="Bid has expired", code=BID_EXPIRED)

        siblings = [b for b in bids if b is not target and is_open(b)]
        table = get_main_table()
        check_cascade_size(table, [target, *siblings])

        puts = [
            versioned_put(
                table,
                item=transitioned(target, status="accepted", changed_by=actor.user_id, at=at, notes="Bid accepted"),
                expected_version=int(target.get("version") or 0),
            )
        ]
        deletes = [tx_release_slot(table, bid=target)]
        for b in siblings:
            nxt = transitioned(
                b, status="rejected", changed_by=actor.user_id, at=at,
                notes="Another bid accepted", reason=SIBLING_REJECTION_REASON,
            )
            puts.append(versioned_put(table, item=nxt, expected_version=int(b.get("version") or 0)))
            deletes.append(tx_release_slot(table, bid=b))
        puts.append(activate_with_bid(table, project=project, bid=target, at=at))

        table.transact_write(puts=puts, deletes=deletes)

        rejected_ids = [str(b.get("bidId")) for b in siblings]
        log.info(
            "bid_accepted",
            bid_id=bid_id,
            project_id=pid,
            company_id=target.get("companyId"),
            rejected_count=len(rejected_ids),
        )
        return {"acceptedBidId": bid_id, "rejectedBidIds": rejected_ids, "projectStatus": "active"}

    return run_optimistic("accept_bid", attempt, bid_id=bid_id, project_id=pid)


def reject_bid(
    *,
    bid_id: str,
    actor: Actor,
    reason: str | None = None,
    project_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    pid = _resolve(bid_id, project_id)
    why = str(reason or "").strip() or DEFAULT_REJECTION_REASON

    def attempt() -> dict[str, Any]:
        at = now_iso(now)
        project = load_project(pid)
        require(can_reject_bid(actor, project), "Only the project owner can reject bids")
        bid = _load_bid(pid, bid_id)
        _require_open(bid, "reject")

        nxt = transitioned(bid, status="rejected", changed_by=actor.user_id, at=at, notes="Rejected", reason=why)
        table = get_main_table()
        table.transact_write(
            puts=[versioned_put(table, item=nxt, expected_version=int(bid.get("version") or 0))],
            deletes=[tx_release_slot(table, bid=bid)],
        )
        log.info("bid_rejected", bid_id=bid_id, project_id=pid)
        return {"bidId": bid_id, "status": "rejected", "rejectionReason": why}

    return run_optimistic("reject_bid", attempt, bid_id=bid_id)


def expire_bid(
    *,
    bid_id: str,
    project_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    System transition to expired once `now` is past `expiresAt`.

    An already-expired bid is returned as-is, so sweeps may overlap.
    """
    pid = _resolve(bid_id, project_id)

    def attempt() -> dict[str, Any]:
        at_dt = now or utcnow()
        bid = _load_bid(pid, bid_id)
        status = str(bid.get("status") or "")
        if status == "expired":
            return normalize_bid(bid) or {}
        _require_open(bid, "expire")
        if not is_past_expiry(bid, at_dt):
            raise StateConflictError(message="Bid is not past its expiry yet")

        nxt = transitioned(
            bid, status="expired", changed_by=SYSTEM_ACTOR.user_id, at=now_iso(at_dt), notes="Bid expired"
        )
        table = get_main_table()
        expected = int(bid.get("version") or 0)
        table.transact_write(
            puts=[versioned_put(table, item=nxt, expected_version=expected)],
            deletes=[tx_release_slot(table, bid=bid)],
        )
        log.info("bid_expired", bid_id=bid_id, project_id=pid)
        return normalize_bid({**nxt, "version": expected + 1}) or {}

    return run_optimistic("expire_bid", attempt, bid_id=bid_id)


# --- reads ---


def _can_view_bid(actor: Actor, project: dict[str, Any], bid: dict[str, Any]) -> bool:
    return (
        actor.is_admin
        or is_project_owner(actor, project)
        or can_act_for_company(actor, str(bid.get("companyId") or ""))
    )


def get_bid(*, bid_id: str, actor: Actor, project_id: str | None = None) -> dict[str, Any]:
    pid = _resolve(bid_id, project_id)
    bid = _load_bid(pid, bid_id)
    project = load_project(pid)
    require(_can_view_bid(actor, project, bid), "Not authorized to view this bid")
    return normalize_bid(bid) or {}


def list_bids_for_project(*, project_id: str, actor: Actor) -> list[dict[str, Any]]:
    """Owners and admins see every bid; a company sees only its own."""
    project = load_project(project_id)
    items = list_bid_items_for_project(project_id)
    if not (actor.is_admin or is_project_owner(actor, project)):
        items = [b for b in items if can_act_for_company(actor, str(b.get("companyId") or ""))]
    out = [normalize_bid(b) for b in items]
    return sorted([b for b in out if b], key=lambda b: str(b.get("createdAt") or ""))


def list_bids_for_company(*, company_id: str, actor: Actor, limit: int = 100) -> list[dict[str, Any]]:
    cid = str(company_id or "").strip()
    require(actor.is_admin or can_act_for_company(actor, cid), "Not authorized to list this company's bids")
    out: list[dict[str, Any]] = []
    for pid, bid_id in list_bid_ids_for_company(cid, limit=limit):
        b = normalize_bid(get_bid_item(project_id=pid, bid_id=bid_id))
        if b:
            out.append(b)
    return out


__all__ = [
    "accept_bid",
    "check_budget",
    "check_milestones",
    "expire_bid",
    "get_bid",
    "is_past_expiry",
    "list_bids_for_company",
    "list_bids_for_project",
    "mark_under_review",
    "parse_amount",
    "reject_bid",
    "revise_bid",
    "submit_bid",
    "withdraw_bid",
]
