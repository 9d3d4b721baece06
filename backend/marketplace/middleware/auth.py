from __future__ import annotations

from fastapi import HTTPException, Request
from starlette.middleware.base import BaseHTTPMiddleware

from ..auth.cognito import CognitoAuthError, verify_bearer_token
from ..observability.logging import get_logger
from ..problem_details import problem_response


def is_public_path(path: str) -> bool:
    # "GET /" health is public; everything under /api/ needs a bearer token.
    return not path.startswith("/api/")


async def require_auth(request: Request):
    path = request.url.path
    if request.method.upper() == "OPTIONS":
        return
    if is_public_path(path):
        return

    auth = request.headers.get("authorization")
    if not auth:
        raise HTTPException(status_code=401, detail="Unauthorized")

    parts = str(auth).split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        actor = verify_bearer_token(parts[1].strip())
    except CognitoAuthError as e:
        raise HTTPException(status_code=int(e.status_code), detail=str(e)) from e
    except Exception as e:
        raise HTTPException(status_code=401, detail="Unauthorized") from e

    request.state.user = actor


class AuthMiddleware(BaseHTTPMiddleware):
    """
    Resolves the bearer token into an `Actor` on request.state.user.

    Routers never read ambient identity; they pass this actor explicitly into
    every lifecycle call.
    """

    async def dispatch(self, request: Request, call_next):
        log = get_logger("auth_middleware")
        try:
            await require_auth(request)
        except HTTPException as exc:
            status_code = int(exc.status_code or 401)
            if status_code >= 500:
                log.error("auth_middleware_error", status_code=status_code, path=request.url.path)
            else:
                log.info("auth_middleware_denied", status_code=status_code, path=request.url.path)
            return problem_response(
                request=request,
                status_code=status_code,
                title="Unauthorized" if status_code == 401 else None,
                detail=str(exc.detail) if isinstance(exc.detail, str) else None,
            )
        return await call_next(request)
