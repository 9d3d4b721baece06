from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ..modules.verification import verification_workflow
from ._actor import current_actor

router = APIRouter(tags=["verification"])


class SubmitDocumentsRequest(BaseModel):
    # document key -> attachment reference (office_photos may carry several)
    documents: dict[str, str | list[str]] = Field(default_factory=dict)


class ReviewRequest(BaseModel):
    decision: str = ""
    reason: str | None = None
    comments: str | None = None


class ReopenRequest(BaseModel):
    reason: str | None = None


class RequestDocumentsRequest(BaseModel):
    requestedDocuments: list[str] = Field(default_factory=list)
    message: str | None = None


class DocumentCheckRequest(BaseModel):
    verified: bool


@router.get("/companies/{companyId}/verification")
def get_verification(companyId: str, request: Request):
    return verification_workflow.get_verification(company_id=companyId, actor=current_actor(request))


@router.post("/companies/{companyId}/verification/documents")
def submit_documents(companyId: str, request: Request, body: SubmitDocumentsRequest):
    return verification_workflow.submit_documents(
        company_id=companyId, actor=current_actor(request), documents=body.documents
    )


@router.post("/companies/{companyId}/verification/review")
def review_verification(companyId: str, request: Request, body: ReviewRequest):
    return verification_workflow.review(
        company_id=companyId,
        actor=current_actor(request),
        decision=body.decision,
        reason=body.reason,
        comments=body.comments,
    )


@router.post("/companies/{companyId}/verification/reopen")
def reopen_verification(companyId: str, request: Request, body: ReopenRequest | None = None):
    return verification_workflow.reopen(
        company_id=companyId, actor=current_actor(request), reason=body.reason if body else None
    )


@router.post("/companies/{companyId}/verification/request-documents")
def request_documents(companyId: str, request: Request, body: RequestDocumentsRequest):
    return verification_workflow.request_documents(
        company_id=companyId,
        actor=current_actor(request),
        requested=body.requestedDocuments,
        message=body.message,
    )


@router.put("/companies/{companyId}/verification/documents/{docKey}/verify")
def verify_document(companyId: str, docKey: str, request: Request, body: DocumentCheckRequest):
    return verification_workflow.set_document_verified(
        company_id=companyId, actor=current_actor(request), doc_key=docKey, verified=body.verified
    )


@router.get("/companies/{companyId}/verification/timeline")
def verification_timeline(companyId: str, request: Request):
    return verification_workflow.verification_timeline(company_id=companyId, actor=current_actor(request))


@router.get("/verifications/stats")
def verification_stats(request: Request):
    return verification_workflow.verification_stats(actor=current_actor(request))


@router.get("/verifications")
def list_verifications(request: Request, status: str = "under_review", limit: int = 50, nextToken: str | None = None):
    return verification_workflow.list_by_status(
        actor=current_actor(request), status=status, limit=limit, next_token=nextToken
    )
