from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from marketplace.errors import AuthorizationError, NotFoundError, StateConflictError, ValidationError
from marketplace.modules.bidding import bid_lifecycle as bl
from marketplace.modules.projects import project_lifecycle as pl
from marketplace.modules.verification import verification_workflow as vw


def _abs(*amounts):
    return [{"title": f"Milestone {i + 1}", "amount": a} for i, a in enumerate(amounts)]


def test_end_to_end_submit_duplicate_accept_cascade(fake_table, actors, approve_company):
    project = pl.create_project(
        actor=actors.client, payload={"title": "ERP rollout", "budget": {"min": 100000, "max": 250000}}
    )
    pid = project["projectId"]
    approve_company("co-a")
    approve_company("co-c")

    with pytest.raises(ValidationError) as ei:
        bl.submit_bid(
            project_id=pid, company_id="co-a", actor=actors.company_a,
            payload={"amount": 260000, "milestones": _abs(100000, 160000)},
        )
    assert ei.value.code == "AmountOutOfRange"

    first = bl.submit_bid(
        project_id=pid, company_id="co-a", actor=actors.company_a,
        payload={"amount": 150000, "milestones": _abs(60000, 90000)},
    )
    assert first["status"] == "pending"
    assert pl.get_project(project_id=pid, actor=actors.client)["status"] == "bidding"

    with pytest.raises(StateConflictError) as ei:
        bl.submit_bid(
            project_id=pid, company_id="co-a", actor=actors.company_a,
            payload={"amount": 120000, "milestones": _abs(120000)},
        )
    assert ei.value.code == "DuplicateBid"

    third = bl.submit_bid(
        project_id=pid, company_id="co-c", actor=actors.company_c,
        payload={"amount": 200000, "milestones": [{"title": "All", "percentage": 100}]},
    )

    res = bl.accept_bid(bid_id=first["bidId"], actor=actors.client)
    assert res == {"acceptedBidId": first["bidId"], "rejectedBidIds": [third["bidId"]], "projectStatus": "active"}

    project = pl.get_project(project_id=pid, actor=actors.client)
    assert project["status"] == "active"
    assert project["acceptedBidId"] == first["bidId"]
    assert project["acceptedCompanyId"] == "co-a"
    assert bl.get_bid(bid_id=first["bidId"], actor=actors.client)["status"] == "accepted"
    loser = bl.get_bid(bid_id=third["bidId"], actor=actors.company_c)
    assert loser["status"] == "rejected"
    assert loser["rejectionReason"] == "another bid accepted"


def test_accept_of_three_pending_is_one_transaction(fake_table, actors, posted_project, approve_company):
    pid = posted_project()["projectId"]
    ids = {}
    for cid, actor in (("co-a", actors.company_a), ("co-b", actors.company_b), ("co-c", actors.company_c)):
        approve_company(cid)
        ids[cid] = bl.submit_bid(
            project_id=pid, company_id=cid, actor=actor,
            payload={"amount": 3000, "milestones": [{"title": "All", "percentage": 100}]},
        )["bidId"]

    before = len(fake_table.transactions)
    bl.accept_bid(bid_id=ids["co-a"], project_id=pid, actor=actors.client)
    assert len(fake_table.transactions) == before + 1

    statuses = {b["companyId"]: b["status"] for b in bl.list_bids_for_project(project_id=pid, actor=actors.client)}
    assert statuses == {"co-a": "accepted", "co-b": "rejected", "co-c": "rejected"}
    assert sum(1 for s in statuses.values() if s == "accepted") == 1


def test_submit_precondition_order(fake_table, actors, posted_project, approve_company):
    pid = posted_project()["projectId"]
    payload = {"amount": 2000, "milestones": _abs(2000)}

    with pytest.raises(AuthorizationError) as ei:
        bl.submit_bid(project_id=pid, company_id="co-a", actor=actors.company_b, payload=payload)
    assert ei.value.code == "Forbidden"

    vw.create_verification(company_id="co-a")
    with pytest.raises(AuthorizationError) as ei:
        bl.submit_bid(project_id=pid, company_id="co-a", actor=actors.company_a, payload=payload)
    assert ei.value.code == "CompanyNotVerified"

    approve_company("co-a")
    with pytest.raises(ValidationError) as ei:
        bl.submit_bid(
            project_id=pid, company_id="co-a", actor=actors.company_a,
            payload={"amount": 2000, "milestones": _abs(1000, 900)},
        )
    assert ei.value.code == "MilestoneMismatch"

    with pytest.raises(ValidationError) as ei:
        bl.submit_bid(
            project_id=pid, company_id="co-a", actor=actors.company_a,
            payload={"amount": 2000, "milestones": [{"title": "A", "amount": 1000}, {"title": "B", "percentage": 50}]},
        )
    assert ei.value.code == "MilestoneMismatch"


def test_invite_only_and_unbounded_budget(fake_table, actors, posted_project, approve_company):
    approve_company("co-a")
    approve_company("co-b")
    pid = posted_project(budget={"min": 100, "max": None}, isInviteOnly=True, invitedCompanyIds=["co-a"])[
        "projectId"
    ]

    with pytest.raises(AuthorizationError) as ei:
        bl.submit_bid(
            project_id=pid, company_id="co-b", actor=actors.company_b,
            payload={"amount": 500, "milestones": _abs(500)},
        )
    assert ei.value.code == "NotInvited"

    big = bl.submit_bid(
        project_id=pid, company_id="co-a", actor=actors.company_a,
        payload={"amount": 10_000_000, "milestones": _abs(10_000_000)},
    )
    assert big["status"] == "pending"


def test_project_not_biddable(fake_table, actors, approve_company):
    approve_company("co-a")
    draft = pl.create_project(actor=actors.client, payload={"title": "d", "budget": {"min": 1}, "draft": True})
    with pytest.raises(StateConflictError) as ei:
        bl.submit_bid(
            project_id=draft["projectId"], company_id="co-a", actor=actors.company_a,
            payload={"amount": 5, "milestones": _abs(5)},
        )
    assert ei.value.code == "ProjectNotBiddable"


def test_withdraw_twice_conflicts_and_leaves_record_unchanged(fake_table, actors, posted_project, approve_company):
    pid = posted_project()["projectId"]
    approve_company("co-a")
    bid = bl.submit_bid(
        project_id=pid, company_id="co-a", actor=actors.company_a, payload={"amount": 2000, "milestones": _abs(2000)}
    )

    assert bl.withdraw_bid(bid_id=bid["bidId"], actor=actors.company_a)["status"] == "withdrawn"
    snapshot = fake_table.snapshot()
    with pytest.raises(StateConflictError):
        bl.withdraw_bid(bid_id=bid["bidId"], actor=actors.company_a)
    assert fake_table.snapshot() == snapshot

    # Slot released: the company may bid again.
    again = bl.submit_bid(
        project_id=pid, company_id="co-a", actor=actors.company_a, payload={"amount": 2500, "milestones": _abs(2500)}
    )
    assert again["bidId"] != bid["bidId"]


def test_only_owner_accepts_and_rejects(fake_table, actors, posted_project, approve_company):
    pid = posted_project()["projectId"]
    approve_company("co-a")
    bid = bl.submit_bid(
        project_id=pid, company_id="co-a", actor=actors.company_a, payload={"amount": 2000, "milestones": _abs(2000)}
    )
    with pytest.raises(AuthorizationError):
        bl.accept_bid(bid_id=bid["bidId"], actor=actors.other_client)
    with pytest.raises(AuthorizationError):
        bl.withdraw_bid(bid_id=bid["bidId"], actor=actors.company_b)

    res = bl.reject_bid(bid_id=bid["bidId"], actor=actors.client)
    assert res["rejectionReason"] == "rejected by client"
    with pytest.raises(StateConflictError):
        bl.accept_bid(bid_id=bid["bidId"], actor=actors.client)


def test_accept_on_active_project_conflicts(fake_table, actors, posted_project, approve_company):
    pid = posted_project()["projectId"]
    approve_company("co-a")
    approve_company("co-b")
    a = bl.submit_bid(
        project_id=pid, company_id="co-a", actor=actors.company_a, payload={"amount": 2000, "milestones": _abs(2000)}
    )
    b = bl.submit_bid(
        project_id=pid, company_id="co-b", actor=actors.company_b, payload={"amount": 2100, "milestones": _abs(2100)}
    )
    bl.accept_bid(bid_id=a["bidId"], actor=actors.client)
    with pytest.raises(StateConflictError):
        bl.accept_bid(bid_id=b["bidId"], actor=actors.client)


def test_mark_under_review_then_accept(fake_table, actors, posted_project, approve_company):
    pid = posted_project()["projectId"]
    approve_company("co-a")
    bid = bl.submit_bid(
        project_id=pid, company_id="co-a", actor=actors.company_a, payload={"amount": 2000, "milestones": _abs(2000)}
    )
    assert bl.mark_under_review(bid_id=bid["bidId"], actor=actors.client)["status"] == "under_review"
    with pytest.raises(StateConflictError):
        bl.mark_under_review(bid_id=bid["bidId"], actor=actors.client)
    assert bl.accept_bid(bid_id=bid["bidId"], actor=actors.client)["projectStatus"] == "active"


def test_revise_rechecks_budget_and_rescales_milestones(fake_table, actors, posted_project, approve_company):
    pid = posted_project()["projectId"]
    approve_company("co-a")
    bid = bl.submit_bid(
        project_id=pid, company_id="co-a", actor=actors.company_a,
        payload={"amount": 2000, "milestones": _abs(500, 1500)},
    )

    with pytest.raises(ValidationError) as ei:
        bl.revise_bid(bid_id=bid["bidId"], actor=actors.company_a, payload={"amount": 9000})
    assert ei.value.code == "AmountOutOfRange"

    out = bl.revise_bid(bid_id=bid["bidId"], actor=actors.company_a, payload={"amount": 4000})
    assert out["revisionCount"] == 1
    assert [m["amount"] for m in out["milestones"]] == [Decimal("1000"), Decimal("3000")]

    with pytest.raises(ValidationError) as ei:
        bl.revise_bid(bid_id=bid["bidId"], actor=actors.company_a, payload={"milestones": _abs(1000, 1000)})
    assert ei.value.code == "MilestoneMismatch"

    bl.mark_under_review(bid_id=bid["bidId"], actor=actors.client)
    with pytest.raises(StateConflictError):
        bl.revise_bid(bid_id=bid["bidId"], actor=actors.company_a, payload={"proposal": "cheaper"})


def test_accept_past_expiry_fails_with_bid_expired(fake_table, actors, posted_project, approve_company):
    pid = posted_project()["projectId"]
    approve_company("co-a")
    t0 = datetime(2026, 1, 1, tzinfo=timezone.utc)
    bid = bl.submit_bid(
        project_id=pid, company_id="co-a", actor=actors.company_a,
        payload={"amount": 2000, "milestones": _abs(2000)}, now=t0,
    )
    stored = bl.get_bid(bid_id=bid["bidId"], actor=actors.client)
    assert stored["expiresAt"] == "2026-01-31T00:00:00.000Z"

    with pytest.raises(StateConflictError) as ei:
        bl.accept_bid(bid_id=bid["bidId"], actor=actors.client, now=t0 + timedelta(days=31))
    assert ei.value.code == "BidExpired"


def test_reads_are_scoped(fake_table, actors, posted_project, approve_company):
    pid = posted_project()["projectId"]
    approve_company("co-a")
    approve_company("co-b")
    a = bl.submit_bid(
        project_id=pid, company_id="co-a", actor=actors.company_a, payload={"amount": 2000, "milestones": _abs(2000)}
    )
    bl.submit_bid(
        project_id=pid, company_id="co-b", actor=actors.company_b, payload={"amount": 2100, "milestones": _abs(2100)}
    )

    assert len(bl.list_bids_for_project(project_id=pid, actor=actors.client)) == 2
    own = bl.list_bids_for_project(project_id=pid, actor=actors.company_a)
    assert [b["bidId"] for b in own] == [a["bidId"]]
    assert [b["bidId"] for b in bl.list_bids_for_company(company_id="co-a", actor=actors.company_a)] == [a["bidId"]]
    with pytest.raises(AuthorizationError):
        bl.list_bids_for_company(company_id="co-a", actor=actors.company_b)
    with pytest.raises(AuthorizationError):
        bl.get_bid(bid_id=a["bidId"], actor=actors.company_b)
    with pytest.raises(NotFoundError):
        bl.get_bid(bid_id="bid_missing", actor=actors.client)


def test_overshooting_absolute_milestones_never_store_a_negative_share(
    fake_table, actors, posted_project, approve_company
):
    pid = posted_project()["projectId"]
    approve_company("co-a")
    bid = bl.submit_bid(
        project_id=pid, company_id="co-a", actor=actors.company_a,
        payload={"amount": 1000, "milestones": _abs("1000.005", "0.005")},
    )
    stored = bl.get_bid(bid_id=bid["bidId"], actor=actors.company_a)["milestones"]
    assert [m["amount"] for m in stored] == [Decimal("999.995"), Decimal("0.005")]
    assert [m["percentage"] for m in stored] == [Decimal("99.9995"), Decimal("0.0005")]
    assert sum(m["amount"] for m in stored) == Decimal("1000")


def test_revise_to_an_amount_too_small_for_every_milestone_is_rejected(
    fake_table, actors, posted_project, approve_company
):
    pid = posted_project(budget={"min": "0.01", "max": 5000})["projectId"]
    approve_company("co-a")
    thirds = [{"title": t, "percentage": p} for t, p in (("A", "33.3333"), ("B", "33.3333"), ("C", "33.3334"))]
    bid = bl.submit_bid(
        project_id=pid, company_id="co-a", actor=actors.company_a, payload={"amount": 3000, "milestones": thirds}
    )

    with pytest.raises(ValidationError) as ei:
        bl.revise_bid(bid_id=bid["bidId"], actor=actors.company_a, payload={"amount": "0.02"})
    assert ei.value.code == "MilestoneMismatch"
    assert bl.get_bid(bid_id=bid["bidId"], actor=actors.company_a)["amount"] == Decimal("3000")


def test_bid_attachments_must_belong_to_the_bidding_company(fake_table, actors, posted_project, approve_company):
    from marketplace.repositories.attachments_repo import register_attachment

    pid = posted_project()["projectId"]
    approve_company("co-a")
    theirs = register_attachment(owner_id="user-b", company_id="co-b", file_name="plan.pdf", url="https://f/plan")
    with pytest.raises(ValidationError) as ei:
        bl.submit_bid(
            project_id=pid, company_id="co-a", actor=actors.company_a,
            payload={"amount": 2000, "milestones": _abs(2000), "attachmentRefs": [theirs["ref"]]},
        )
    assert ei.value.field == "attachmentRefs"

    ours = register_attachment(owner_id="user-a", company_id="co-a", file_name="plan.pdf", url="https://f/plan")
    bid = bl.submit_bid(
        project_id=pid, company_id="co-a", actor=actors.company_a,
        payload={"amount": 2000, "milestones": _abs(2000), "attachmentRefs": [ours["ref"]]},
    )
    assert bl.get_bid(bid_id=bid["bidId"], actor=actors.company_a)["attachmentRefs"] == [ours["ref"]]
