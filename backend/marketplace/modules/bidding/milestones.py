"""
Milestone payment-breakdown validation.

One definition shared by every entry point that builds or edits a bid.
Shares arrive either as absolute `amount`s or as `percentage`s of the bid
total; the canonical stored form is percentage, with the derived amount kept
alongside for display and settlement records.
"""

from __future__ import annotations

from dataclasses import dataclass, field as dc_field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Literal

MilestoneMode = Literal["absolute", "percentage"]

MODE_ABSOLUTE: MilestoneMode = "absolute"
MODE_PERCENTAGE: MilestoneMode = "percentage"

HUNDRED = Decimal("100")
DEFAULT_TOLERANCE = Decimal("0.01")

_CENT = Decimal("0.01")
_PCT_QUANTUM = Decimal("0.0001")


@dataclass(frozen=True, slots=True)
class MilestoneResult:
    ok: bool
    reason: str | None = None
    field: str | None = None
    milestones: list[dict[str, Any]] = dc_field(default_factory=list)

    @classmethod
    def err(cls, reason: str, field: str | None = None) -> "MilestoneResult":
        return cls(ok=False, reason=reason, field=field)


def as_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        d = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not d.is_finite():
        return None
    return d


def infer_mode(milestones: list[dict[str, Any]] | None) -> MilestoneMode | None:
    """
    Detect which representation a payload uses.

    Every entry must carry the same share field; a mix (or neither) yields None.
    """
    modes: set[str] = set()
    for m in milestones or []:
        if not isinstance(m, dict):
            return None
        has_pct = m.get("percentage") is not None
        has_amt = m.get("amount") is not None
        if has_pct == has_amt:
            return None
        modes.add(MODE_PERCENTAGE if has_pct else MODE_ABSOLUTE)
    if len(modes) != 1:
        return None
    return MODE_PERCENTAGE if MODE_PERCENTAGE in modes else MODE_ABSOLUTE


def validate_milestones(
    milestones: list[dict[str, Any]] | None,
    total: Any,
    mode: MilestoneMode,
    *,
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> MilestoneResult:
    """
    Validate a payment breakdown against the declared bid total.

    - every milestone needs a non-empty title and a positive share
    - absolute mode: shares sum to `total` within ±tolerance, and absorbing
      the difference must leave every share positive
    - percentage mode: shares sum to exactly 100

    On success the result carries the normalized milestones (see
    `normalize_milestones`).
    """
    if mode not in (MODE_ABSOLUTE, MODE_PERCENTAGE):
        return MilestoneResult.err(f"Unknown milestone mode: {mode}", "milestoneMode")

    tot = as_decimal(total)
    if tot is None or tot <= 0:
        return MilestoneResult.err("Bid total must be a positive amount", "amount")

    items = list(milestones or [])
    if not items:
        return MilestoneResult.err("At least one milestone is required", "milestones")

    share_key = "amount" if mode == MODE_ABSOLUTE else "percentage"
    shares: list[Decimal] = []
    for i, m in enumerate(items):
        if not isinstance(m, dict):
            return MilestoneResult.err("Milestone must be an object", f"milestones[{i}]")
        title = str(m.get("title") or "").strip()
        if not title:
            return MilestoneResult.err("Milestone title is required", f"milestones[{i}].title")
        share = as_decimal(m.get(share_key))
        if share is None or share <= 0:
            return MilestoneResult.err(
                f"Milestone {share_key} must be positive", f"milestones[{i}].{share_key}"
            )
        shares.append(share)

    s = sum(shares, Decimal("0"))
    if mode == MODE_ABSOLUTE:
        if abs(s - tot) > tolerance:
            return MilestoneResult.err(
                f"Milestone amounts sum to {s}, expected {tot}", "milestones"
            )
    elif s != HUNDRED:
        return MilestoneResult.err(f"Milestone percentages sum to {s}, expected 100", "milestones")

    rows = normalize_milestones(items, tot, mode)
    if not all_positive(rows):
        return MilestoneResult.err("Milestone shares exceed the total", "milestones")
    return MilestoneResult(ok=True, milestones=rows)


def normalize_milestones(
    milestones: list[dict[str, Any]],
    total: Decimal,
    mode: MilestoneMode,
) -> list[dict[str, Any]]:
    """
    Convert validated milestones to the stored shape with both `percentage`
    and `amount`. The rounding remainder lands on the largest milestone (the
    last one on ties) so the stored percentages sum to exactly 100 and the
    amounts to exactly `total`.

    The remainder can still push a share to zero or below; callers check
    `all_positive` before storing.
    """
    tot = Decimal(total)
    out: list[dict[str, Any]] = []
    for m in milestones:
        if mode == MODE_ABSOLUTE:
            amt = Decimal(as_decimal(m.get("amount")) or 0)
            pct = (amt * HUNDRED / tot).quantize(_PCT_QUANTUM, rounding=ROUND_HALF_UP)
        else:
            pct = Decimal(as_decimal(m.get("percentage")) or 0)
            amt = (tot * pct / HUNDRED).quantize(_CENT, rounding=ROUND_HALF_UP)
        row: dict[str, Any] = {
            "title": str(m.get("title") or "").strip(),
            "percentage": pct,
            "amount": amt,
        }
        desc = str(m.get("description") or "").strip()
        if desc:
            row["description"] = desc
        if m.get("dueDate"):
            row["dueDate"] = str(m.get("dueDate"))
        out.append(row)

    if out:
        big = max(range(len(out)), key=lambda i: (out[i]["percentage"], i))
        out[big]["percentage"] += HUNDRED - sum((r["percentage"] for r in out), Decimal("0"))
        out[big]["amount"] += tot - sum((r["amount"] for r in out), Decimal("0"))
    return out


def all_positive(milestones: list[dict[str, Any]]) -> bool:
    return all(m["amount"] > 0 and m["percentage"] > 0 for m in milestones)


def rescale_milestones(milestones: list[dict[str, Any]], total: Decimal) -> list[dict[str, Any]]:
    """Re-derive amounts from stored canonical percentages for a new total."""
    return normalize_milestones(
        [{**m, "amount": None} for m in milestones],
        total,
        MODE_PERCENTAGE,
    )
