from __future__ import annotations

import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from ..observability.context import request_id_var

_MAX_INBOUND_LEN = 128


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Request id for every request: the inbound X-Request-Id when it looks sane,
    otherwise a fresh UUIDv4. Stored on request.state, published through the
    logging contextvar and echoed on the response.
    """

    header_name = "X-Request-Id"

    async def dispatch(self, request: Request, call_next):
        inbound = str(request.headers.get("x-request-id") or "").strip()
        if not inbound or len(inbound) > _MAX_INBOUND_LEN:
            inbound = str(uuid.uuid4())

        request.state.request_id = inbound
        token = request_id_var.set(inbound)
        try:
            response = await call_next(request)
            response.headers[self.header_name] = inbound
            return response
        finally:
            request_id_var.reset(token)
