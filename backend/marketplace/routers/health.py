from __future__ import annotations

from fastapi import APIRouter

from ..settings import settings

router = APIRouter()


@router.get("/", tags=["health"])
def health():
    return {
        "message": "Project Marketplace API",
        "version": "1.0.0",
        "status": "running",
        "port": settings.port,
        "environment": settings.environment,
        "dynamodb": "configured" if settings.ddb_table_name else "missing",
        "endpoints": [
            "GET /api/projects",
            "POST /api/projects",
            "POST /api/projects/{projectId}/bids",
            "POST /api/projects/{projectId}/bids/{bidId}/accept",
            "GET /api/companies/{companyId}/verification",
            "POST /api/attachments",
        ],
    }
