from __future__ import annotations

from typing import Any

from ...errors import AuthorizationError
from .actor import Actor


# Pure predicates: no I/O, no mutation. Lifecycle services call `require`
# with one of these before computing any write.


def can_act_for_company(actor: Actor | None, company_id: str) -> bool:
    if not actor or not actor.user_id:
        return False
    cid = str(company_id or "").strip()
    return bool(cid) and actor.is_company and actor.company_id == cid


def can_create_project(actor: Actor | None) -> bool:
    return bool(actor and actor.user_id and actor.is_client)


def is_project_owner(actor: Actor | None, project: dict[str, Any] | None) -> bool:
    if not actor or not actor.user_id or not project:
        return False
    return str(project.get("ownerId") or "") == actor.user_id


def can_manage_project(actor: Actor | None, project: dict[str, Any] | None) -> bool:
    return is_project_owner(actor, project)


def can_edit_project(actor: Actor | None, project: dict[str, Any] | None) -> bool:
    return is_project_owner(actor, project) and str((project or {}).get("status") or "") == "posted"


def can_view_project(actor: Actor | None, project: dict[str, Any] | None) -> bool:
    """Drafts are private to the owner; invite-only projects to the owner and invited companies."""
    if not actor or not actor.user_id or not project:
        return False
    if actor.is_admin or is_project_owner(actor, project):
        return True
    if str(project.get("status") or "") == "draft":
        return False
    if not project.get("isInviteOnly"):
        return True
    cid = actor.company_id if actor.is_company else None
    if not cid:
        return False
    return cid in (project.get("invitedCompanyIds") or []) or cid == str(project.get("acceptedCompanyId") or "")


def can_track_milestones(actor: Actor | None, project: dict[str, Any] | None) -> bool:
    # The client and the awarded company both report progress.
    if not project:
        return False
    return is_project_owner(actor, project) or can_act_for_company(actor, str(project.get("acceptedCompanyId") or ""))


def can_submit_bid(actor: Actor | None, project: dict[str, Any] | None, company_id: str) -> bool:
    # A company can never bid on a project its own user posted.
    if not project or is_project_owner(actor, project):
        return False
    return can_act_for_company(actor, company_id)


def can_accept_bid(actor: Actor | None, project: dict[str, Any] | None) -> bool:
    return is_project_owner(actor, project)


def can_reject_bid(actor: Actor | None, project: dict[str, Any] | None) -> bool:
    return is_project_owner(actor, project)


def can_withdraw_bid(actor: Actor | None, bid: dict[str, Any] | None) -> bool:
    if not bid:
        return False
    return can_act_for_company(actor, str(bid.get("companyId") or ""))


def can_review_verification(actor: Actor | None) -> bool:
    return bool(actor and actor.user_id and actor.is_admin)


def can_submit_verification(actor: Actor | None, company_id: str) -> bool:
    return can_act_for_company(actor, company_id)


def can_view_verification(actor: Actor | None, company_id: str) -> bool:
    return can_review_verification(actor) or can_act_for_company(actor, company_id)


def require(allowed: bool, message: str = "Not authorized", *, code: str = "Forbidden") -> None:
    if not allowed:
        raise AuthorizationError(message=message, code=code)
