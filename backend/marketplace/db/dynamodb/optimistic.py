from __future__ import annotations

from typing import Any, Callable, TypeVar

from ...errors import ConcurrencyError
from ...observability.logging import get_logger
from .errors import DdbConflict
from .retry import RetryPolicy, sleep_backoff

T = TypeVar("T")

log = get_logger("optimistic")


def run_optimistic(
    operation: str,
    attempt: Callable[[], T],
    *,
    max_attempts: int | None = None,
    policy: RetryPolicy | None = None,
    **log_fields: Any,
) -> T:
    """
    Run a read-compute-conditional-write attempt until it commits.

    `attempt` must re-read everything it depends on each time it is called;
    a DdbConflict means some version/uniqueness condition no longer held, so
    the whole attempt (including precondition checks) is re-run. Domain
    errors raised by the attempt propagate immediately.
    """
    if max_attempts is None:
        from ...settings import settings

        max_attempts = settings.occ_max_attempts
    attempts = max(1, min(10, int(max_attempts)))
    backoff = policy or RetryPolicy(base_delay_s=0.02, max_delay_s=0.5)

    for n in range(1, attempts + 1):
        try:
            return attempt()
        except DdbConflict as e:
            if n >= attempts:
                log.warning("occ_exhausted", operation=operation, attempts=n, **log_fields)
                raise ConcurrencyError(
                    message=f"{operation} lost a concurrent update race; retry the request",
                ) from e
            log.info("occ_retry", operation=operation, attempt=n, **log_fields)
            sleep_backoff(backoff, n)

    raise ConcurrencyError(message=f"{operation} did not complete")
