from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from ...db.dynamodb.errors import DdbConflict
from ...db.dynamodb.optimistic import run_optimistic
from ...db.dynamodb.table import get_main_table
from ...errors import (
    INVALID_DOCUMENTS,
    MISSING_REASON,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from ...observability.logging import get_logger
from ...repositories.attachments_repo import foreign_references, missing_references
from ...repositories.common import now_iso, to_iso, utcnow
from ...repositories.verification_repo import (
    REVIEWABLE_STATUSES,
    SUBMITTABLE_STATUSES,
    TERMINAL_STATUSES,
    build_verification_item,
    get_verification_item,
    list_all_verifications_by_status,
    list_verifications_by_status,
    normalize_verification,
    verification_key,
    with_index,
)
from ...settings import settings
from ..identity.access_policy import (
    can_review_verification,
    can_submit_verification,
    can_view_verification,
    require,
)
from ..identity.actor import Actor

log = get_logger("verification_workflow")

DECISION_APPROVE = "approve"
DECISION_REJECT = "reject"

_DECISIONS = {
    "approve": DECISION_APPROVE,
    "approved": DECISION_APPROVE,
    "reject": DECISION_REJECT,
    "rejected": DECISION_REJECT,
}


def required_doc_keys() -> tuple[str, ...]:
    return settings.required_doc_keys


def missing_required(documents: dict[str, Any] | None) -> list[str]:
    docs = documents if isinstance(documents, dict) else {}
    return [k for k in required_doc_keys() if not docs.get(k)]


def _load(company_id: str) -> dict[str, Any]:
    item = get_verification_item(company_id)
    if not item:
        raise NotFoundError(message="Company verification not found")
    return item


def _commit(item: dict[str, Any], *, expected_version: int | None) -> None:
    if expected_version is None:
        get_main_table().put_item(
            item={**with_index(item), "version": 1},
            condition_expression="attribute_not_exists(pk)",
        )
        return
    get_main_table().put_item(
        item={**with_index(item), "version": int(expected_version) + 1},
        condition_expression="version = :ver",
        expression_attribute_values={":ver": int(expected_version)},
    )


def _history_entry(action: str, actor: Actor, at: str, **extra: Any) -> dict[str, Any]:
    entry = {"action": action, "by": actor.user_id, "at": at}
    entry.update({k: v for k, v in extra.items() if v})
    return entry


def _clean_documents(documents: Any, *, actor: Actor, company_id: str) -> dict[str, Any]:
    if not isinstance(documents, dict) or not documents:
        raise ValidationError(message="documents must be a non-empty object", code=INVALID_DOCUMENTS, field="documents")

    allowed = set(settings.required_doc_keys) | set(settings.optional_doc_keys)
    out: dict[str, Any] = {}
    for raw_key, raw_ref in documents.items():
        key = str(raw_key or "").strip()
        if key not in allowed:
            raise ValidationError(
                message=f"Unknown document type: {key}", code=INVALID_DOCUMENTS, field=f"documents.{key}"
            )
        if isinstance(raw_ref, list):
            refs = [str(r).strip() for r in raw_ref if str(r or "").strip()]
            if not refs:
                raise ValidationError(
                    message="Document reference is required", code=INVALID_DOCUMENTS, field=f"documents.{key}"
                )
            out[key] = refs
            continue
        ref = str(raw_ref or "").strip()
        if not ref:
            raise ValidationError(
                message="Document reference is required", code=INVALID_DOCUMENTS, field=f"documents.{key}"
            )
        out[key] = ref

    all_refs: list[str] = []
    for v in out.values():
        all_refs.extend(v if isinstance(v, list) else [v])
    unknown = missing_references(all_refs)
    if unknown:
        raise ValidationError(
            message=f"Unknown attachment reference: {unknown[0]}", code=INVALID_DOCUMENTS, field="documents"
        )
    # Only files uploaded by this caller or on behalf of this company.
    foreign = foreign_references(all_refs, user_id=actor.user_id, company_id=company_id)
    if foreign:
        raise ValidationError(
            message=f"Attachment reference not owned by this company: {foreign[0]}",
            code=INVALID_DOCUMENTS,
            field="documents",
        )
    return out


def create_verification(*, company_id: str, now: datetime | None = None) -> dict[str, Any]:
    """
    Create the verification record at company registration.

    Safe to call repeatedly; an existing record is returned untouched.
    """
    cid = str(company_id or "").strip()
    if not cid:
        raise ValidationError(message="company_id is required", field="companyId")
    item = {**build_verification_item(company_id=cid, created_at=now_iso(now)), "version": 1}
    try:
        get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
        log.info("verification_created", company_id=cid)
    except DdbConflict:
        pass
    return normalize_verification(_load(cid)) or {}


def submit_documents(
    *,
    company_id: str,
    actor: Actor,
    documents: dict[str, Any],
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Merge uploaded document references into the company's verification.

    Completing every required key moves the record to under_review; until
    then it stays pending.
    """
    cid = str(company_id or "").strip()
    require(can_submit_verification(actor, cid), "Not authorized to submit documents for this company")
    docs = _clean_documents(documents, actor=actor, company_id=cid)

    def attempt() -> dict[str, Any]:
        # A company that never registered a record gets one on first upload.
        stored = get_verification_item(cid)
        current = stored or build_verification_item(company_id=cid, created_at=now_iso(now))
        status = str(current.get("status") or "pending")
        if status not in SUBMITTABLE_STATUSES:
            raise StateConflictError(message=f"Documents cannot be submitted while verification is {status}")

        at = now_iso(now)
        merged = {**(current.get("documents") or {}), **docs}
        missing = missing_required(merged)
        next_status = "pending" if missing else "under_review"

        nxt = dict(current)
        nxt["documents"] = merged
        checks = {k: v for k, v in (current.get("documentChecks") or {}).items() if k not in docs}
        if checks:
            nxt["documentChecks"] = checks
        else:
            nxt.pop("documentChecks", None)
        nxt["status"] = next_status
        nxt["updatedAt"] = at
        nxt["submittedAt"] = at
        nxt.pop("rejectionReason", None)
        requested = [k for k in (current.get("requestedDocuments") or []) if k not in docs]
        if requested:
            nxt["requestedDocuments"] = requested
        else:
            nxt.pop("requestedDocuments", None)
        nxt["history"] = list(current.get("history") or []) + [
            _history_entry("documents_submitted", actor, at, keys=sorted(docs.keys()))
        ]
        _commit(nxt, expected_version=int(stored.get("version") or 0) if stored else None)

        log.info(
            "verification_documents_submitted",
            company_id=cid,
            status=next_status,
            missing_count=len(missing),
        )
        return {"status": next_status, "missingRequired": missing}

    return run_optimistic("submit_documents", attempt, company_id=cid)


def review(
    *,
    company_id: str,
    actor: Actor,
    decision: str,
    reason: str | None = None,
    comments: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    cid = str(company_id or "").strip()
    require(can_review_verification(actor), "Only administrators can review verifications")

    d = _DECISIONS.get(str(decision or "").strip().lower())
    if not d:
        raise ValidationError(message="decision must be 'approve' or 'reject'", field="decision")
    why = str(reason or "").strip()
    if d == DECISION_REJECT and not why:
        raise ValidationError(message="Rejection reason is required", code=MISSING_REASON, field="reason")

    def attempt() -> dict[str, Any]:
        current = _load(cid)
        status = str(current.get("status") or "pending")
        if status in TERMINAL_STATUSES:
            raise StateConflictError(message=f"Verification is already {status}; reopen it before reviewing again")
        if status not in REVIEWABLE_STATUSES:
            raise StateConflictError(message=f"Verification cannot be reviewed while {status}")

        at = now_iso(now)
        next_status = "approved" if d == DECISION_APPROVE else "rejected"
        nxt = dict(current)
        nxt["status"] = next_status
        nxt["reviewedBy"] = actor.user_id
        nxt["reviewedAt"] = at
        nxt["updatedAt"] = at
        if d == DECISION_REJECT:
            nxt["rejectionReason"] = why
        else:
            nxt.pop("rejectionReason", None)
            nxt.pop("requestedDocuments", None)
        if comments and str(comments).strip():
            nxt["adminComments"] = str(comments).strip()
        nxt["history"] = list(current.get("history") or []) + [
            _history_entry(f"review_{d}", actor, at, reason=why or None)
        ]
        _commit(nxt, expected_version=int(current.get("version") or 0))

        log.info("verification_reviewed", company_id=cid, status=next_status, reviewer=actor.user_id)
        return {"status": next_status}

    return run_optimistic("review_verification", attempt, company_id=cid)


def reopen(
    *,
    company_id: str,
    actor: Actor,
    reason: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Explicit re-verification: approved/rejected -> under_review."""
    cid = str(company_id or "").strip()
    require(can_review_verification(actor), "Only administrators can reopen verifications")

    def attempt() -> dict[str, Any]:
        current = _load(cid)
        status = str(current.get("status") or "pending")
        if status not in TERMINAL_STATUSES:
            raise StateConflictError(message=f"Only approved or rejected verifications can be reopened (is {status})")

        at = now_iso(now)
        nxt = dict(current)
        nxt["status"] = "under_review"
        nxt["updatedAt"] = at
        nxt["reopenedBy"] = actor.user_id
        nxt["reopenedAt"] = at
        nxt.pop("rejectionReason", None)
        nxt["history"] = list(current.get("history") or []) + [
            _history_entry("reopened", actor, at, reason=str(reason or "").strip() or None)
        ]
        _commit(nxt, expected_version=int(current.get("version") or 0))

        log.info("verification_reopened", company_id=cid, previous_status=status, admin=actor.user_id)
        return {"status": "under_review"}

    return run_optimistic("reopen_verification", attempt, company_id=cid)


def request_documents(
    *,
    company_id: str,
    actor: Actor,
    requested: list[str],
    message: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Admin asks for more documents; the record goes back to pending."""
    cid = str(company_id or "").strip()
    require(can_review_verification(actor), "Only administrators can request documents")

    allowed = set(settings.required_doc_keys) | set(settings.optional_doc_keys)
    keys = [str(k or "").strip() for k in (requested or []) if str(k or "").strip()]
    if not keys:
        raise ValidationError(
            message="Specify which documents are needed", code=INVALID_DOCUMENTS, field="requestedDocuments"
        )
    for k in keys:
        if k not in allowed:
            raise ValidationError(
                message=f"Unknown document type: {k}", code=INVALID_DOCUMENTS, field="requestedDocuments"
            )

    def attempt() -> dict[str, Any]:
        current = _load(cid)
        status = str(current.get("status") or "pending")
        if status not in REVIEWABLE_STATUSES:
            raise StateConflictError(message=f"Documents cannot be requested while verification is {status}")

        at = now_iso(now)
        nxt = dict(current)
        nxt["status"] = "pending"
        nxt["updatedAt"] = at
        nxt["requestedDocuments"] = keys
        nxt["adminComments"] = str(message or "").strip() or "Additional documents requested"
        nxt["history"] = list(current.get("history") or []) + [
            _history_entry("documents_requested", actor, at, keys=keys)
        ]
        _commit(nxt, expected_version=int(current.get("version") or 0))

        log.info("verification_documents_requested", company_id=cid, keys=keys)
        return {"status": "pending", "requestedDocuments": keys}

    return run_optimistic("request_documents", attempt, company_id=cid)


def is_eligible_to_bid(company_id: str) -> bool:
    cid = str(company_id or "").strip()
    if not cid:
        return False
    item = get_verification_item(cid)
    return bool(item) and str(item.get("status") or "") == "approved"


def get_verification(*, company_id: str, actor: Actor) -> dict[str, Any]:
    cid = str(company_id or "").strip()
    require(can_view_verification(actor, cid), "Not authorized to view this verification")
    out = normalize_verification(_load(cid)) or {}
    out["missingRequired"] = missing_required(out.get("documents"))
    out["requiredDocKeys"] = list(required_doc_keys())
    return out


def list_by_status(*, actor: Actor, status: str = "under_review", limit: int = 50, next_token: str | None = None) -> dict[str, Any]:
    require(can_review_verification(actor), "Only administrators can list verifications")
    s = str(status or "").strip() or "under_review"
    if s not in REVIEWABLE_STATUSES | TERMINAL_STATUSES:
        raise ValidationError(message=f"Unknown verification status: {s}", field="status")
    return list_verifications_by_status(s, limit=limit, next_token=next_token)


def set_document_verified(
    *,
    company_id: str,
    actor: Actor,
    doc_key: str,
    verified: bool,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Flag one submitted document as checked (or not) by an administrator.

    The flag is kept apart from the document reference and is cleared when
    the company uploads a replacement. The record's status is untouched.
    """
    cid = str(company_id or "").strip()
    require(can_review_verification(actor), "Only administrators can verify documents")
    key = str(doc_key or "").strip()
    if key not in set(settings.required_doc_keys) | set(settings.optional_doc_keys):
        raise ValidationError(message=f"Unknown document type: {key}", code=INVALID_DOCUMENTS, field="docKey")
    flag = bool(verified)

    def attempt() -> dict[str, Any]:
        current = _load(cid)
        if not (current.get("documents") or {}).get(key):
            raise NotFoundError(message="Document not found")

        at = now_iso(now)
        checks = dict(current.get("documentChecks") or {})
        checks[key] = {"verified": flag, "checkedBy": actor.user_id, "checkedAt": at}
        nxt = dict(current)
        nxt["documentChecks"] = checks
        nxt["updatedAt"] = at
        nxt["history"] = list(current.get("history") or []) + [
            _history_entry("document_verified" if flag else "document_unverified", actor, at, keys=[key])
        ]
        _commit(nxt, expected_version=int(current.get("version") or 0))

        log.info("verification_document_checked", company_id=cid, doc_key=key, verified=flag)
        return {
            "docKey": key,
            "verified": flag,
            "message": "Document verified" if flag else "Document marked as unverified",
        }

    return run_optimistic("set_document_verified", attempt, company_id=cid)


RECENT_ACTIVITY_DAYS = 7

_STATUSES = ("pending", "under_review", "approved", "rejected")


def verification_stats(*, actor: Actor, now: datetime | None = None) -> dict[str, Any]:
    """Counts per status plus the last week's activity, read from the status index."""
    require(can_review_verification(actor), "Only administrators can view verification stats")
    since = to_iso((now or utcnow()) - timedelta(days=RECENT_ACTIVITY_DAYS))

    stats: dict[str, int] = {}
    recent: list[dict[str, Any]] = []
    for status in _STATUSES:
        records = list_all_verifications_by_status(status)
        stats[status] = len(records)
        touched = [str(r.get("updatedAt") or "") for r in records if str(r.get("updatedAt") or "") >= since]
        if touched:
            recent.append({"status": status, "count": len(touched), "latestUpdate": max(touched)})

    stats["total"] = sum(stats[s] for s in _STATUSES)
    stats["verified"] = stats["approved"]
    return {"stats": stats, "recentActivity": recent}


_TIMELINE_EVENTS = {
    "documents_submitted": ("Documents Submitted", "completed"),
    "documents_requested": ("Additional Documents Requested", "action_required"),
    "review_approve": ("Verification Approved", "completed"),
    "review_reject": ("Verification Rejected", "rejected"),
    "reopened": ("Verification Reopened", "completed"),
    "document_verified": ("Document Verified", "completed"),
    "document_unverified": ("Document Marked Unverified", "completed"),
}


def verification_timeline(*, company_id: str, actor: Actor) -> dict[str, Any]:
    cid = str(company_id or "").strip()
    require(can_view_verification(actor, cid), "Not authorized to view this verification")
    current = _load(cid)

    events: list[dict[str, Any]] = [
        {"event": "Profile Created", "date": current.get("createdAt"), "status": "completed"}
    ]
    for h in current.get("history") or []:
        label, state = _TIMELINE_EVENTS.get(str(h.get("action") or ""), (str(h.get("action") or ""), "completed"))
        ev: dict[str, Any] = {"event": label, "date": h.get("at"), "status": state}
        detail = h.get("reason") or ", ".join(h.get("keys") or [])
        if detail:
            ev["description"] = detail
        events.append(ev)

    status = str(current.get("status") or "pending")
    if status == "under_review":
        events.append(
            {
                "event": "Under Review",
                "date": current.get("updatedAt"),
                "status": "in_progress",
                "description": "Documents are being reviewed by our team",
            }
        )

    events.sort(key=lambda e: str(e.get("date") or ""), reverse=True)
    return {"companyId": cid, "currentStatus": status, "timeline": events}


__all__ = [
    "create_verification",
    "get_verification",
    "is_eligible_to_bid",
    "list_by_status",
    "missing_required",
    "reopen",
    "request_documents",
    "review",
    "set_document_verified",
    "submit_documents",
    "verification_key",
    "verification_stats",
    "verification_timeline",
]
