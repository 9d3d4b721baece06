from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ..modules.projects import project_lifecycle
from ._actor import current_actor

router = APIRouter(tags=["projects"])


class BudgetIn(BaseModel):
    min: Decimal | None = None
    max: Decimal | None = None


class CreateProjectRequest(BaseModel):
    title: str = ""
    description: str | None = None
    category: str | None = None
    budget: BudgetIn | None = None
    isInviteOnly: bool = False
    invitedCompanyIds: list[str] = Field(default_factory=list)
    draft: bool = False


class UpdateProjectRequest(BaseModel):
    title: str | None = None
    description: str | None = None
    category: str | None = None
    budget: BudgetIn | None = None
    isInviteOnly: bool | None = None
    invitedCompanyIds: list[str] | None = None


class CancelProjectRequest(BaseModel):
    reason: str | None = None


class AddMilestoneRequest(BaseModel):
    title: str = ""
    description: str | None = None
    amount: Decimal | None = None
    dueDate: str | None = None


class MilestoneStatusRequest(BaseModel):
    status: str = Field(..., min_length=1)


@router.post("/projects", status_code=201)
def create_project(request: Request, body: CreateProjectRequest):
    return project_lifecycle.create_project(actor=current_actor(request), payload=body.model_dump())


@router.get("/projects")
def list_my_projects(request: Request, limit: int = 50, nextToken: str | None = None):
    return project_lifecycle.list_projects_for_client(
        actor=current_actor(request), limit=limit, next_token=nextToken
    )


@router.get("/projects/{projectId}")
def get_project(projectId: str, request: Request):
    return project_lifecycle.get_project(project_id=projectId, actor=current_actor(request))


@router.put("/projects/{projectId}")
def update_project(projectId: str, request: Request, body: UpdateProjectRequest):
    return project_lifecycle.update_project(
        project_id=projectId,
        actor=current_actor(request),
        patch=body.model_dump(exclude_unset=True),
    )


@router.post("/projects/{projectId}/publish")
def publish_project(projectId: str, request: Request):
    return project_lifecycle.publish_project(project_id=projectId, actor=current_actor(request))


@router.post("/projects/{projectId}/cancel")
def cancel_project(projectId: str, request: Request, body: CancelProjectRequest | None = None):
    return project_lifecycle.cancel_project(
        project_id=projectId,
        actor=current_actor(request),
        reason=body.reason if body else None,
    )


@router.post("/projects/{projectId}/complete")
def complete_project(projectId: str, request: Request):
    return project_lifecycle.complete_project(project_id=projectId, actor=current_actor(request))


@router.post("/projects/{projectId}/milestones", status_code=201)
def add_milestone(projectId: str, request: Request, body: AddMilestoneRequest):
    return project_lifecycle.add_project_milestone(
        project_id=projectId, actor=current_actor(request), payload=body.model_dump()
    )


@router.put("/projects/{projectId}/milestones/{milestoneId}")
def update_milestone(projectId: str, milestoneId: str, request: Request, body: MilestoneStatusRequest):
    """Record progress on an awarded project's milestone; `paid` records payment only."""
    return project_lifecycle.update_milestone_status(
        project_id=projectId,
        milestone_id=milestoneId,
        actor=current_actor(request),
        status=body.status,
    )
