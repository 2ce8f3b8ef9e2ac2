"""Tests for the 3-way match engine: scoring, persistence, review decisions."""
import uuid
from dataclasses import replace
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from ap_recon.core.exceptions import InvalidStateError, NotFoundError
from ap_recon.db import upsert as upsert_module
from ap_recon.models.config_layer import ConfigLayer
from ap_recon.models.matching import ThreeWayMatch
from ap_recon.rules.match_engine import (
    approve_match,
    calculate_matching_score,
    classify_score,
    match_documents,
    reject_match,
)
from ap_recon.services import audit as audit_svc
from ap_recon.services.config_resolver import default_thresholds


# ─── Scoring ──────────────────────────────────────────────────────────────────

def test_identical_amounts_score_100():
    assert calculate_matching_score(1000, 1000, 1000) == 100.0
    assert classify_score(100.0) == "matched"


def test_small_variance_is_still_matched():
    # |1020 - 1000| / 1020 = 1.96%
    assert calculate_matching_score(1000, 1000, 1020) == 98.03


def test_overbilled_invoice_is_mismatch():
    # |1300 - 1000| / 1300 * 100 = 23.08 -> 76.92
    score = calculate_matching_score(1000, 1000, 1300)
    assert score == pytest.approx(76.92)
    assert classify_score(score) == "mismatch"


def test_partial_band():
    score = calculate_matching_score(1000, 1000, 1100)
    assert score == pytest.approx(90.90)
    assert classify_score(score) == "partial"


def test_classification_boundaries():
    assert classify_score(95.0) == "matched"
    assert classify_score(94.99) == "partial"
    assert classify_score(80.0) == "partial"
    assert classify_score(79.99) == "mismatch"


def test_all_zero_amounts_score_zero():
    assert calculate_matching_score(0, 0, 0) == 0.0
    assert calculate_matching_score(None, None, None) == 0.0


def test_score_never_negative():
    assert calculate_matching_score(0, 0, 500) == 0.0


def test_score_decreases_as_variance_grows():
    scores = [calculate_matching_score(1000, 1000, inv) for inv in (1000, 1050, 1100, 1300, 2000)]
    assert scores == sorted(scores, reverse=True)


def test_grn_only_affects_denominator():
    assert calculate_matching_score(1000, 2000, 1100) == 95.0


def test_score_is_truncated_not_rounded_up_into_matched():
    # 100 - 52.65 / 1052.65 * 100 = 94.998...
    score = calculate_matching_score(1000, 1000, 1052.65)
    assert score == 94.99
    assert classify_score(score) == "partial"


def test_classification_uses_given_thresholds():
    strict = replace(default_thresholds(), match_score_matched_min=99.0, match_score_partial_min=90.0)
    assert classify_score(96.0, strict) == "partial"
    assert classify_score(85.0, strict) == "mismatch"
    assert classify_score(99.0, strict) == "matched"


# ─── match_documents ──────────────────────────────────────────────────────────

def test_perfect_match_is_payment_eligible(db, tenant_id, documents):
    po, grn, invoice = documents(1000, 1000, 1000)
    outcome = match_documents(db, po_id=po.id, grn_id=grn.id, invoice_id=invoice.id, tenant_id=tenant_id)

    assert outcome.created
    assert outcome.matching_score == 100.0
    assert outcome.matching_status == "matched"
    assert outcome.variance_amount == 0
    assert outcome.payment_eligible
    assert outcome.match.approval_status == "pending"


def test_mismatch_is_not_payment_eligible(db, tenant_id, documents):
    po, grn, invoice = documents(1000, 1000, 1300)
    outcome = match_documents(db, po_id=po.id, grn_id=grn.id, invoice_id=invoice.id, tenant_id=tenant_id)

    assert outcome.matching_status == "mismatch"
    assert outcome.variance_amount == 300
    assert not outcome.payment_eligible


def test_rematching_updates_the_same_row(db, tenant_id, documents):
    po, grn, invoice = documents(1000, 1000, 1300)
    first = match_documents(db, po_id=po.id, grn_id=grn.id, invoice_id=invoice.id, tenant_id=tenant_id)

    invoice.amount = 1000
    db.flush()
    second = match_documents(db, po_id=po.id, grn_id=grn.id, invoice_id=invoice.id, tenant_id=tenant_id)

    assert not second.created
    assert second.match.id == first.match.id
    assert second.matching_status == "matched"
    assert db.execute(select(func.count(ThreeWayMatch.id))).scalar() == 1

    chain = audit_svc.get_by_entity(db, "three_way_match", first.match.id)
    assert [r.action for r in chain] == ["create_match", "update_match"]
    assert chain[1].changes["matching_status"] == {"from": "mismatch", "to": "matched"}


def test_match_writes_four_audit_records(db, tenant_id, documents):
    po, grn, invoice = documents(1000, 1000, 1000)
    outcome = match_documents(
        db, po_id=po.id, grn_id=grn.id, invoice_id=invoice.id, tenant_id=tenant_id, actor_id="analyst-7",
    )

    match_chain = audit_svc.get_by_entity(db, "three_way_match", outcome.match.id)
    assert len(match_chain) == 1
    assert match_chain[0].actor_id == "analyst-7"
    assert match_chain[0].workflow_state["invoice_amount"] == 1000
    for entity_type, doc in (("purchase_order", po), ("goods_receipt", grn), ("invoice", invoice)):
        chain = audit_svc.get_by_entity(db, entity_type, doc.id)
        assert [r.action for r in chain] == ["match"]
        assert chain[0].new_state["match_id"] == str(outcome.match.id)


def test_missing_document_raises_not_found(db, tenant_id, documents):
    po, grn, _ = documents(1000, 1000, 1000)
    with pytest.raises(NotFoundError) as exc_info:
        match_documents(db, po_id=po.id, grn_id=grn.id, invoice_id=uuid.uuid4(), tenant_id=tenant_id)
    assert exc_info.value.entity == "Invoice"
    assert db.execute(select(func.count(ThreeWayMatch.id))).scalar() == 0


def test_documents_of_another_tenant_are_not_found(db, documents):
    po, grn, invoice = documents(1000, 1000, 1000)
    with pytest.raises(NotFoundError):
        match_documents(db, po_id=po.id, grn_id=grn.id, invoice_id=invoice.id, tenant_id=uuid.uuid4())


# ─── Review decisions ─────────────────────────────────────────────────────────

@pytest.fixture
def pending_match(db, tenant_id, documents):
    po, grn, invoice = documents(1000, 1000, 1000)
    return match_documents(db, po_id=po.id, grn_id=grn.id, invoice_id=invoice.id, tenant_id=tenant_id).match


def test_approve_pending_match(db, tenant_id, pending_match):
    match = approve_match(db, pending_match.id, "approver-1", tenant_id=tenant_id)
    assert match.approval_status == "approved"
    assert match.approved_by == "approver-1"
    assert match.approved_at is not None

    last = audit_svc.get_by_entity(db, "three_way_match", match.id)[-1]
    assert last.action == "approve"
    assert last.changes == {"approval_status": {"from": "pending", "to": "approved"}}


def test_reject_requires_reason(db, tenant_id, pending_match):
    with pytest.raises(ValueError):
        reject_match(db, pending_match.id, "approver-1", "   ", tenant_id=tenant_id)
    assert pending_match.approval_status == "pending"


def test_reject_pending_match(db, tenant_id, pending_match):
    match = reject_match(db, pending_match.id, "approver-1", "Wrong quantities", tenant_id=tenant_id)
    assert match.approval_status == "rejected"
    assert match.rejection_reason == "Wrong quantities"
    assert audit_svc.get_by_entity(db, "three_way_match", match.id)[-1].action == "reject"


def test_decided_match_cannot_be_decided_again(db, tenant_id, pending_match):
    approve_match(db, pending_match.id, "approver-1", tenant_id=tenant_id)
    with pytest.raises(InvalidStateError):
        approve_match(db, pending_match.id, "approver-2", tenant_id=tenant_id)
    with pytest.raises(InvalidStateError):
        reject_match(db, pending_match.id, "approver-2", "late", tenant_id=tenant_id)


def test_rematch_keeps_approval_decision(db, tenant_id, pending_match):
    approve_match(db, pending_match.id, "approver-1", tenant_id=tenant_id)
    outcome = match_documents(
        db,
        po_id=pending_match.purchase_order_id,
        grn_id=pending_match.goods_receipt_id,
        invoice_id=pending_match.invoice_id,
        tenant_id=tenant_id,
    )
    assert outcome.match.approval_status == "approved"


def test_unknown_match_raises_not_found(db, tenant_id):
    with pytest.raises(NotFoundError):
        approve_match(db, uuid.uuid4(), "approver-1", tenant_id=tenant_id)


# ─── Tenant thresholds and insert races ───────────────────────────────────────

def test_tenant_matched_threshold_override(db, tenant_id, documents):
    db.add(ConfigLayer(scope="tenant", tenant_id=tenant_id, key="match_score_matched_min", value=99))
    db.flush()

    po, grn, invoice = documents(1000, 1000, 1020)
    outcome = match_documents(db, po_id=po.id, grn_id=grn.id, invoice_id=invoice.id, tenant_id=tenant_id)

    assert outcome.matching_score == 98.03
    assert outcome.matching_status == "partial"
    assert not outcome.payment_eligible


def test_other_tenants_threshold_override_is_ignored(db, tenant_id, documents):
    db.add(ConfigLayer(scope="tenant", tenant_id=uuid.uuid4(), key="match_score_matched_min", value=99))
    db.flush()

    po, grn, invoice = documents(1000, 1000, 1020)
    outcome = match_documents(db, po_id=po.id, grn_id=grn.id, invoice_id=invoice.id, tenant_id=tenant_id)
    assert outcome.matching_status == "matched"


def test_rematch_after_lost_insert_race_updates_existing_row(db, tenant_id, documents):
    po, grn, invoice = documents(1000, 1000, 1300)
    first = match_documents(db, po_id=po.id, grn_id=grn.id, invoice_id=invoice.id, tenant_id=tenant_id)

    real_find_one = upsert_module.find_one
    lookups = []

    def miss_first_lookup(session, model, lookup):
        lookups.append(lookup)
        return None if len(lookups) == 1 else real_find_one(session, model, lookup)

    invoice.amount = 1000
    db.flush()
    with patch("ap_recon.db.upsert.find_one", side_effect=miss_first_lookup):
        second = match_documents(db, po_id=po.id, grn_id=grn.id, invoice_id=invoice.id, tenant_id=tenant_id)

    assert len(lookups) == 2
    assert not second.created
    assert second.match.id == first.match.id
    assert second.matching_status == "matched"
    assert db.execute(select(func.count(ThreeWayMatch.id))).scalar() == 1
    chain = audit_svc.get_by_entity(db, "three_way_match", first.match.id)
    assert [r.action for r in chain] == ["create_match", "update_match"]
