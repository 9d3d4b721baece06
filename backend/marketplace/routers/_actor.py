from __future__ import annotations

from fastapi import HTTPException, Request

from ..modules.identity.actor import Actor


def current_actor(request: Request) -> Actor:
    actor = getattr(getattr(request, "state", None), "user", None)
    if not isinstance(actor, Actor) or not actor.user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return actor
