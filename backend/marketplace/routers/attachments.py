from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ..repositories.attachments_repo import register_attachment
from ._actor import current_actor

router = APIRouter(tags=["attachments"])


class RegisterAttachmentRequest(BaseModel):
    fileName: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)
    contentType: str | None = None
    size: int | None = Field(default=None, ge=0)


@router.post("/attachments", status_code=201)
def register(request: Request, body: RegisterAttachmentRequest):
    """Record an already-uploaded file and hand back its opaque reference."""
    actor = current_actor(request)
    return register_attachment(
        owner_id=actor.user_id,
        company_id=actor.company_id,
        file_name=body.fileName,
        url=body.url,
        content_type=body.contentType,
        size=body.size,
    )
