from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from marketplace.errors import AuthorizationError, NotFoundError, StateConflictError, ValidationError
from marketplace.modules.verification import verification_workflow as vw
from marketplace.repositories.attachments_repo import register_attachment
from marketplace.settings import settings


def _refs(keys, *, owner_id="user-a", company_id="co-a"):
    out = {}
    for k in keys:
        att = register_attachment(owner_id=owner_id, company_id=company_id, file_name=f"{k}.pdf", url=f"https://f/{k}")
        out[k] = att["ref"]
    return out


def test_create_is_idempotent(fake_table):
    first = vw.create_verification(company_id="co-a")
    assert first["status"] == "pending"
    again = vw.create_verification(company_id="co-a")
    assert again["version"] == first["version"] == 1


def test_partial_documents_stay_pending_then_complete_set_moves_to_review(fake_table, actors):
    vw.create_verification(company_id="co-a")
    required = list(settings.required_doc_keys)
    assert len(required) == 5

    res = vw.submit_documents(company_id="co-a", actor=actors.company_a, documents=_refs(required[:2]))
    assert res["status"] == "pending"
    assert res["missingRequired"] == required[2:]

    res = vw.submit_documents(company_id="co-a", actor=actors.company_a, documents=_refs(required[2:]))
    assert res == {"status": "under_review", "missingRequired": []}
    assert not vw.is_eligible_to_bid("co-a")


def test_unknown_document_key_and_unregistered_ref_are_rejected(fake_table, actors):
    vw.create_verification(company_id="co-a")
    with pytest.raises(ValidationError) as ei:
        vw.submit_documents(company_id="co-a", actor=actors.company_a, documents={"passport": "att_x"})
    assert ei.value.code == "InvalidDocuments"

    with pytest.raises(ValidationError):
        vw.submit_documents(
            company_id="co-a", actor=actors.company_a, documents={"secp_certificate": "att_missing"}
        )


def test_other_company_cannot_submit(fake_table, actors):
    vw.create_verification(company_id="co-a")
    with pytest.raises(AuthorizationError):
        vw.submit_documents(company_id="co-a", actor=actors.company_b, documents=_refs(["secp_certificate"]))


def test_reject_requires_reason_and_records_it(fake_table, actors):
    vw.create_verification(company_id="co-a")
    vw.submit_documents(company_id="co-a", actor=actors.company_a, documents=_refs(settings.required_doc_keys))

    with pytest.raises(ValidationError) as ei:
        vw.review(company_id="co-a", actor=actors.admin, decision="reject")
    assert ei.value.code == "MissingReason"
    assert vw.get_verification(company_id="co-a", actor=actors.admin)["status"] == "under_review"

    res = vw.review(company_id="co-a", actor=actors.admin, decision="reject", reason="NTN certificate is blurry")
    assert res["status"] == "rejected"
    rec = vw.get_verification(company_id="co-a", actor=actors.company_a)
    assert rec["rejectionReason"] == "NTN certificate is blurry"
    assert rec["reviewedBy"] == actors.admin.user_id


def test_terminal_review_conflicts_until_reopened(fake_table, actors, approve_company):
    approve_company("co-a")
    assert vw.is_eligible_to_bid("co-a")

    with pytest.raises(StateConflictError):
        vw.review(company_id="co-a", actor=actors.admin, decision="reject", reason="late")

    assert vw.reopen(company_id="co-a", actor=actors.admin, reason="annual re-check") == {"status": "under_review"}
    assert not vw.is_eligible_to_bid("co-a")
    assert vw.review(company_id="co-a", actor=actors.admin, decision="approve")["status"] == "approved"


def test_only_admins_review(fake_table, actors):
    vw.create_verification(company_id="co-a")
    with pytest.raises(AuthorizationError):
        vw.review(company_id="co-a", actor=actors.company_a, decision="approve")


def test_rejected_company_can_resubmit(fake_table, actors):
    vw.create_verification(company_id="co-a")
    vw.submit_documents(company_id="co-a", actor=actors.company_a, documents=_refs(settings.required_doc_keys))
    vw.review(company_id="co-a", actor=actors.admin, decision="reject", reason="expired CNIC")

    res = vw.submit_documents(company_id="co-a", actor=actors.company_a, documents=_refs(["owner_cnic_front"]))
    assert res["status"] == "under_review"
    assert "rejectionReason" not in vw.get_verification(company_id="co-a", actor=actors.admin)


def test_request_documents_moves_back_to_pending(fake_table, actors):
    vw.create_verification(company_id="co-a")
    vw.submit_documents(company_id="co-a", actor=actors.company_a, documents=_refs(settings.required_doc_keys))

    res = vw.request_documents(
        company_id="co-a", actor=actors.admin, requested=["utility_bill"], message="Need proof of address"
    )
    assert res["status"] == "pending"
    rec = vw.get_verification(company_id="co-a", actor=actors.admin)
    assert rec["requestedDocuments"] == ["utility_bill"]
    assert rec["adminComments"] == "Need proof of address"

    res = vw.submit_documents(company_id="co-a", actor=actors.company_a, documents=_refs(["utility_bill"]))
    assert res["status"] == "under_review"
    assert "requestedDocuments" not in vw.get_verification(company_id="co-a", actor=actors.admin)


def test_list_by_status_uses_status_index(fake_table, actors, approve_company):
    approve_company("co-a")
    vw.create_verification(company_id="co-b")
    approved = vw.list_by_status(actor=actors.admin, status="approved")
    assert [v["companyId"] for v in approved["data"]] == ["co-a"]
    pending = vw.list_by_status(actor=actors.admin, status="pending")
    assert [v["companyId"] for v in pending["data"]] == ["co-b"]


def test_documents_uploaded_by_another_company_are_rejected(fake_table, actors):
    vw.create_verification(company_id="co-a")
    theirs = _refs(["secp_certificate"], owner_id="user-b", company_id="co-b")
    with pytest.raises(ValidationError) as ei:
        vw.submit_documents(company_id="co-a", actor=actors.company_a, documents=theirs)
    assert ei.value.code == "InvalidDocuments"
    assert not vw.get_verification(company_id="co-a", actor=actors.admin).get("documents")

    # A colleague's upload for the same company is fine.
    ours = _refs(["secp_certificate"], owner_id="user-a2", company_id="co-a")
    assert vw.submit_documents(company_id="co-a", actor=actors.company_a, documents=ours)["status"] == "pending"


def test_attachment_lookups_are_strongly_consistent(fake_table, actors):
    vw.create_verification(company_id="co-a")
    fake_table.reads.clear()
    vw.submit_documents(company_id="co-a", actor=actors.company_a, documents=_refs(["secp_certificate"]))
    attachment_reads = [consistent for pk, consistent in fake_table.reads if pk.startswith("ATTACHMENT#")]
    assert attachment_reads and all(attachment_reads)


def test_admin_flags_a_single_document(fake_table, actors):
    vw.create_verification(company_id="co-a")
    vw.submit_documents(company_id="co-a", actor=actors.company_a, documents=_refs(["secp_certificate"]))

    out = vw.set_document_verified(company_id="co-a", actor=actors.admin, doc_key="secp_certificate", verified=True)
    assert out == {"docKey": "secp_certificate", "verified": True, "message": "Document verified"}
    rec = vw.get_verification(company_id="co-a", actor=actors.company_a)
    assert rec["documentChecks"]["secp_certificate"]["verified"] is True
    assert rec["documentChecks"]["secp_certificate"]["checkedBy"] == actors.admin.user_id
    assert rec["status"] == "pending"

    out = vw.set_document_verified(company_id="co-a", actor=actors.admin, doc_key="secp_certificate", verified=False)
    assert out["message"] == "Document marked as unverified"

    with pytest.raises(NotFoundError):
        vw.set_document_verified(company_id="co-a", actor=actors.admin, doc_key="ntn_certificate", verified=True)
    with pytest.raises(ValidationError):
        vw.set_document_verified(company_id="co-a", actor=actors.admin, doc_key="passport", verified=True)
    with pytest.raises(AuthorizationError):
        vw.set_document_verified(company_id="co-a", actor=actors.company_a, doc_key="secp_certificate", verified=True)

    # A replacement upload clears the earlier check.
    vw.submit_documents(company_id="co-a", actor=actors.company_a, documents=_refs(["secp_certificate"]))
    assert "documentChecks" not in vw.get_verification(company_id="co-a", actor=actors.admin)


def test_stats_count_every_status_and_recent_activity(fake_table, actors):
    ref = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
    required = list(settings.required_doc_keys)

    vw.create_verification(company_id="co-a", now=ref - timedelta(days=30))
    vw.submit_documents(
        company_id="co-b", actor=actors.company_b,
        documents=_refs(required, owner_id="user-b", company_id="co-b"), now=ref - timedelta(days=1),
    )
    vw.submit_documents(
        company_id="co-c", actor=actors.company_c,
        documents=_refs(required, owner_id="user-c", company_id="co-c"), now=ref - timedelta(days=3),
    )
    vw.review(company_id="co-c", actor=actors.admin, decision="approve", now=ref - timedelta(days=2))

    out = vw.verification_stats(actor=actors.admin, now=ref)
    assert out["stats"] == {
        "pending": 1,
        "under_review": 1,
        "approved": 1,
        "rejected": 0,
        "total": 3,
        "verified": 1,
    }
    assert out["recentActivity"] == [
        {"status": "under_review", "count": 1, "latestUpdate": "2026-03-09T12:00:00.000Z"},
        {"status": "approved", "count": 1, "latestUpdate": "2026-03-08T12:00:00.000Z"},
    ]

    with pytest.raises(AuthorizationError):
        vw.verification_stats(actor=actors.company_a)


def test_timeline_lists_history_newest_first(fake_table, actors):
    t0 = datetime(2026, 1, 1, tzinfo=timezone.utc)
    required = list(settings.required_doc_keys)
    vw.create_verification(company_id="co-a", now=t0)
    vw.submit_documents(company_id="co-a", actor=actors.company_a, documents=_refs(required), now=t0 + timedelta(days=1))
    vw.review(
        company_id="co-a", actor=actors.admin, decision="reject", reason="NTN certificate is blurry",
        now=t0 + timedelta(days=2),
    )
    vw.submit_documents(
        company_id="co-a", actor=actors.company_a, documents=_refs(["ntn_certificate"]), now=t0 + timedelta(days=3)
    )

    out = vw.verification_timeline(company_id="co-a", actor=actors.company_a)
    assert out["currentStatus"] == "under_review"
    assert [e["event"] for e in out["timeline"]] == [
        "Documents Submitted",
        "Under Review",
        "Verification Rejected",
        "Documents Submitted",
        "Profile Created",
    ]
    rejected = out["timeline"][2]
    assert rejected["status"] == "rejected"
    assert rejected["description"] == "NTN certificate is blurry"
    assert out["timeline"][-1]["date"] == "2026-01-01T00:00:00.000Z"

    with pytest.raises(AuthorizationError):
        vw.verification_timeline(company_id="co-a", actor=actors.company_b)
