from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .roles import ROLE_ADMIN, ROLE_CLIENT, ROLE_COMPANY, normalize_roles


@dataclass(frozen=True, slots=True)
class Actor:
    """The caller of a lifecycle operation, always passed explicitly."""

    user_id: str
    roles: tuple[str, ...] = field(default_factory=tuple)
    # Company the user acts for, when the user is a company member.
    company_id: str | None = None

    @classmethod
    def of(cls, user_id: str, roles: Any = None, company_id: str | None = None) -> "Actor":
        cid = str(company_id or "").strip() or None
        return cls(user_id=str(user_id or "").strip(), roles=tuple(normalize_roles(roles)), company_id=cid)

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "Actor":
        roles = claims.get("cognito:groups") or claims.get("custom:roles") or []
        return cls.of(
            user_id=str(claims.get("sub") or ""),
            roles=roles,
            company_id=claims.get("custom:company_id") or claims.get("custom:companyId"),
        )

    @property
    def is_admin(self) -> bool:
        return ROLE_ADMIN in self.roles

    @property
    def is_client(self) -> bool:
        return ROLE_CLIENT in self.roles

    @property
    def is_company(self) -> bool:
        return ROLE_COMPANY in self.roles


SYSTEM_ACTOR = Actor(user_id="system", roles=(ROLE_ADMIN,))
