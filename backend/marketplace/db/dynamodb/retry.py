from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from botocore.exceptions import BotoCoreError, ClientError

from .errors import (
    DdbConflict,
    DdbError,
    DdbInternal,
    DdbThrottled,
    DdbUnavailable,
    DdbValidation,
)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 6
    base_delay_s: float = 0.05
    max_delay_s: float = 1.5


# Transient service-side failures; everything else surfaces on the first try.
_THROTTLE_CODES = frozenset(
    {
        "ProvisionedThroughputExceededException",
        "ThrottlingException",
        "RequestLimitExceeded",
        "InternalServerError",
        "ServiceUnavailable",
        "TransactionConflictException",
    }
)

# Per-item reasons inside a TransactionCanceledException that are worth a retry.
_THROTTLE_REASONS = frozenset({"TransactionConflict", "ThrottlingError", "ProvisionedThroughputExceeded"})

# code -> (error class, message)
_FIXED_MAPPINGS: dict[str, tuple[type[DdbError], str]] = {
    "ConditionalCheckFailedException": (DdbConflict, "DynamoDB conditional check failed"),
    "ValidationException": (DdbValidation, "DynamoDB request validation failed"),
    "ParamValidationError": (DdbValidation, "DynamoDB request validation failed"),
    "AccessDeniedException": (DdbUnavailable, "DynamoDB access denied"),
    "UnrecognizedClientException": (DdbUnavailable, "DynamoDB access denied"),
}


def sleep_backoff(policy: RetryPolicy, attempt: int) -> None:
    # Full jitter exponential backoff.
    exp = min(policy.max_delay_s, policy.base_delay_s * (2 ** max(0, attempt - 1)))
    time.sleep(random.random() * exp)


def cancellation_codes(e: ClientError) -> list[str]:
    """Per-item codes of a TransactionCanceledException ("None" for items that passed)."""
    reasons = (e.response or {}).get("CancellationReasons") or []
    return [str((r or {}).get("Code") or "None") for r in reasons]


def _classify_client_error(e: ClientError) -> tuple[type[DdbError], str, bool]:
    code = str(((e.response or {}).get("Error") or {}).get("Code") or "")
    if code in _FIXED_MAPPINGS:
        cls, msg = _FIXED_MAPPINGS[code]
        return cls, msg, False
    if code == "TransactionCanceledException":
        reasons = cancellation_codes(e)
        if "ConditionalCheckFailed" in reasons:
            return DdbConflict, "DynamoDB transaction cancelled: conditional check failed", False
        if any(r.removesuffix("Exception") in _THROTTLE_REASONS for r in reasons):
            return DdbThrottled, "DynamoDB transaction cancelled under contention", True
        return DdbInternal, "DynamoDB transaction cancelled", False
    if code in _THROTTLE_CODES:
        return DdbThrottled, "DynamoDB request throttled or unavailable", True
    return DdbInternal, f"DynamoDB request failed ({code or 'ClientError'})", False


def map_error(*, operation: str, table_name: str | None, key: dict[str, Any] | None, exc: Exception) -> DdbError:
    if isinstance(exc, DdbError):
        return exc
    ctx: dict[str, Any] = {"operation": operation, "table_name": table_name, "key": key, "cause": exc}
    if isinstance(exc, ClientError):
        cls, msg, retryable = _classify_client_error(exc)
        request_id = ((exc.response or {}).get("ResponseMetadata") or {}).get("RequestId")
        return cls(message=msg, aws_request_id=request_id, retryable=retryable, **ctx)
    if isinstance(exc, BotoCoreError):
        return DdbUnavailable(message="DynamoDB client error", retryable=True, **ctx)
    return DdbInternal(message="Unexpected DynamoDB error", retryable=False, **ctx)


def ddb_call(
    operation: str,
    fn: Callable[[], T],
    *,
    table_name: str | None = None,
    key: dict[str, Any] | None = None,
    retry_policy: RetryPolicy | None = None,
) -> T:
    """
    Run one boto3 call, retrying throttling and transient failures.

    Conditional failures come back as `DdbConflict` without a retry; the
    optimistic loop above decides whether to re-read and try again.
    """
    policy = retry_policy or RetryPolicy()
    attempts = max(1, int(policy.max_attempts))
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except (ClientError, BotoCoreError, DdbError) as e:
            mapped = map_error(operation=operation, table_name=table_name, key=key, exc=e)
            if not mapped.retryable or attempt >= attempts:
                raise mapped
            sleep_backoff(policy, attempt)

    raise DdbInternal(message="DynamoDB request failed", operation=operation, table_name=table_name, key=key)
