from __future__ import annotations

from datetime import datetime
from typing import Any

from ..errors import MarketplaceError
from ..modules.bidding.bid_lifecycle import expire_bid
from ..observability.logging import configure_logging, get_logger
from ..repositories.bids_repo import list_due_open_bids
from ..repositories.common import now_iso, utcnow
from ..settings import settings

log = get_logger("bid_expiry_worker")


def run_once(*, limit: int | None = None, now: datetime | None = None) -> dict[str, Any]:
    """
    Expire every open bid whose expiresAt has passed. Safe to run from
    cron/ECS scheduled task; overlapping runs are harmless because expiry is
    idempotent and each bid is written with a version check.
    """
    lim = max(1, min(500, int(limit or settings.expiry_sweep_limit)))
    at = now or utcnow()

    scanned = 0
    expired = 0
    skipped = 0
    for it in list_due_open_bids(before_iso=now_iso(at), limit=lim):
        scanned += 1
        bid_id = str(it.get("bidId") or "").strip()
        project_id = str(it.get("projectId") or "").strip()
        if not bid_id or not project_id:
            continue
        try:
            res = expire_bid(bid_id=bid_id, project_id=project_id, now=at)
        except MarketplaceError as e:
            # The index is eventually consistent; the bid may have been
            # accepted/withdrawn since it was listed.
            skipped += 1
            log.info("bid_expiry_skipped", bid_id=bid_id, project_id=project_id, code=e.code)
            continue
        if str(res.get("status") or "") == "expired":
            expired += 1

    out = {"ok": True, "scanned": scanned, "expired": expired, "skipped": skipped}
    log.info("bid_expiry_run_once_done", **out)
    return out


if __name__ == "__main__":
    configure_logging(level="INFO")
    run_once()
