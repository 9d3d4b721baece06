"""Domain error taxonomy for the project/bid/verification lifecycle.

Every lifecycle operation fails with exactly one of these. They are rendered
into RFC7807 problem-details responses by the handlers registered in
`marketplace.main`, with `code` and `field` exposed as extensions.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class MarketplaceError(Exception):
    message: str
    code: str = "Error"
    field: str | None = None

    # HTTP mapping is a property of the class, not the instance.
    status_code = 500
    retryable = False

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, str]:
        out = {"code": self.code, "message": self.message}
        if self.field:
            out["field"] = self.field
        return out


@dataclass(slots=True)
class ValidationError(MarketplaceError):
    """User-correctable input problem (amount, milestones, documents, reason)."""

    code: str = "InvalidPayload"
    status_code = 400


@dataclass(slots=True)
class AuthorizationError(MarketplaceError):
    """Actor lacks ownership or role. Never retried."""

    code: str = "Forbidden"
    status_code = 403


@dataclass(slots=True)
class StateConflictError(MarketplaceError):
    """Illegal transition for the entity's current status. Never retried."""

    code: str = "IllegalTransition"
    status_code = 409


@dataclass(slots=True)
class ConcurrencyError(MarketplaceError):
    """Optimistic version check kept failing after the bounded retries."""

    code: str = "ConcurrentModification"
    status_code = 409
    retryable = True


@dataclass(slots=True)
class NotFoundError(MarketplaceError):
    code: str = "NotFound"
    status_code = 404


# Stable error codes used across the lifecycle modules.
AMOUNT_OUT_OF_RANGE = "AmountOutOfRange"
MILESTONE_MISMATCH = "MilestoneMismatch"
INVALID_DOCUMENTS = "InvalidDocuments"
MISSING_REASON = "MissingReason"
COMPANY_NOT_VERIFIED = "CompanyNotVerified"
NOT_INVITED = "NotInvited"
PROJECT_NOT_BIDDABLE = "ProjectNotBiddable"
DUPLICATE_BID = "DuplicateBid"
BID_EXPIRED = "BidExpired"
CASCADE_TOO_LARGE = "CascadeTooLarge"
