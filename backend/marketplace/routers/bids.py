from __future__ import annotations

from decimal import Decimal
from typing import Any, Literal

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ..modules.bidding import bid_lifecycle
from ._actor import current_actor

router = APIRouter(tags=["bids"])


class MilestoneIn(BaseModel):
    title: str = ""
    description: str | None = None
    amount: Decimal | None = None
    percentage: Decimal | None = None
    dueDate: str | None = None


class SubmitBidRequest(BaseModel):
    # Defaults to the caller's own company.
    companyId: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    milestones: list[MilestoneIn] = Field(default_factory=list)
    milestoneMode: Literal["absolute", "percentage"] | None = None
    proposal: str | None = None
    timeline: dict[str, Any] | None = None
    attachmentRefs: list[str] = Field(default_factory=list)
    expiresAt: str | None = None


class ReviseBidRequest(BaseModel):
    amount: Decimal | None = None
    milestones: list[MilestoneIn] | None = None
    milestoneMode: Literal["absolute", "percentage"] | None = None
    proposal: str | None = None
    timeline: dict[str, Any] | None = None
    attachmentRefs: list[str] | None = None


class RejectBidRequest(BaseModel):
    reason: str | None = None


@router.post("/projects/{projectId}/bids", status_code=201)
def submit_bid(projectId: str, request: Request, body: SubmitBidRequest):
    actor = current_actor(request)
    payload = body.model_dump(exclude_none=True)
    company_id = str(payload.pop("companyId", "") or actor.company_id or "")
    return bid_lifecycle.submit_bid(project_id=projectId, company_id=company_id, actor=actor, payload=payload)


@router.get("/projects/{projectId}/bids")
def list_project_bids(projectId: str, request: Request):
    return {"data": bid_lifecycle.list_bids_for_project(project_id=projectId, actor=current_actor(request))}


@router.put("/projects/{projectId}/bids/{bidId}")
def revise_bid(projectId: str, bidId: str, request: Request, body: ReviseBidRequest):
    payload = body.model_dump(exclude_unset=True)
    if isinstance(payload.get("milestones"), list):
        payload["milestones"] = [{k: v for k, v in m.items() if v is not None} for m in payload["milestones"]]
    return bid_lifecycle.revise_bid(
        bid_id=bidId, project_id=projectId, actor=current_actor(request), payload=payload
    )


@router.post("/projects/{projectId}/bids/{bidId}/review")
def mark_bid_under_review(projectId: str, bidId: str, request: Request):
    return bid_lifecycle.mark_under_review(bid_id=bidId, project_id=projectId, actor=current_actor(request))


@router.post("/projects/{projectId}/bids/{bidId}/accept")
def accept_bid(projectId: str, bidId: str, request: Request):
    return bid_lifecycle.accept_bid(bid_id=bidId, project_id=projectId, actor=current_actor(request))


@router.post("/projects/{projectId}/bids/{bidId}/reject")
def reject_bid(projectId: str, bidId: str, request: Request, body: RejectBidRequest | None = None):
    return bid_lifecycle.reject_bid(
        bid_id=bidId,
        project_id=projectId,
        actor=current_actor(request),
        reason=body.reason if body else None,
    )


@router.post("/projects/{projectId}/bids/{bidId}/withdraw")
def withdraw_bid(projectId: str, bidId: str, request: Request):
    return bid_lifecycle.withdraw_bid(bid_id=bidId, project_id=projectId, actor=current_actor(request))


@router.get("/companies/{companyId}/bids")
def list_company_bids(companyId: str, request: Request, limit: int = 100):
    return {
        "data": bid_lifecycle.list_bids_for_company(company_id=companyId, actor=current_actor(request), limit=limit)
    }
