from __future__ import annotations

from typing import Any, Iterable


ROLE_CLIENT = "Client"
ROLE_COMPANY = "Company"
ROLE_ADMIN = "Admin"


def normalize_roles(value: Any) -> list[str]:
    """
    Normalize roles to a canonical list of strings.
    Stored roles are TitleCase strings: Client/Company/Admin.
    """
    roles_in: Iterable[Any]
    if isinstance(value, list):
        roles_in = value
    elif isinstance(value, tuple):
        roles_in = list(value)
    elif isinstance(value, str) and value.strip():
        # Cognito custom attributes arrive as a comma-separated string.
        roles_in = value.split(",")
    else:
        roles_in = []

    out: list[str] = []
    for r in roles_in:
        s = str(r or "").strip()
        if not s:
            continue
        # Accept common variants.
        low = s.lower().replace("_", "").replace("-", "")
        if low in ("admin", "administrator", "admins"):
            canon = ROLE_ADMIN
        elif low in ("company", "companies", "provider", "vendor"):
            canon = ROLE_COMPANY
        elif low in ("client", "clients", "customer", "buyer"):
            canon = ROLE_CLIENT
        else:
            # Unknown roles allowed but normalized to TitleCase-ish.
            canon = s[:1].upper() + s[1:]
        if canon not in out:
            out.append(canon)

    return out
