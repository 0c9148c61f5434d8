"""Tests for pipeline stage statuses and next-action derivation."""
from __future__ import annotations

from datetime import UTC, datetime

import pytest

from intake.records import (
    Deal, Document, IdVerification, Instruction, OverviewItem, Payment, RiskAssessment,
)
from intake.status import (
    ACTION_ASSESS_RISK,
    ACTION_COMPLETE,
    ACTION_DRAFT_CCL,
    ACTION_OPEN_MATTER,
    ACTION_VERIFY_ID,
    STAGE_STATUSES,
    docs_status,
    engagement_stage,
    id_status,
    matter_status,
    next_action,
    payment_status,
    resolve_stages,
    risk_status,
)


def _item(eids=(), payments=(), risk=None, documents=(), **inst_fields) -> OverviewItem:
    inst = Instruction(instruction_ref="HLX-1", **inst_fields)
    return OverviewItem(
        key="HLX-1", instruction=inst, eids=list(eids), payments=list(payments),
        risk=risk, risk_assessments=[risk] if risk else [], documents=list(documents),
    )


def _eid(result="", status="complete", day=1) -> IdVerification:
    return IdVerification(instruction_ref="HLX-1", overall_result=result, status=status,
                          checked_at=datetime(2024, 1, day, tzinfo=UTC))


def _pitch() -> OverviewItem:
    deal = Deal(deal_id="9", instruction_ref="HLX-100", status="Open")
    return OverviewItem(key="deal-9", deal=deal, deals=[deal])


# ---------------------------------------------------------------------------
# ID stage
# ---------------------------------------------------------------------------


class TestIdStatus:
    def test_poid_stage_without_eid_is_review(self):
        assert id_status(_item(stage="proof-of-id-complete")) == "review"

    def test_poid_stage_with_passed_eid_is_complete(self):
        assert id_status(_item(stage="proof-of-id-complete", eids=[_eid("Passed")])) == "complete"

    def test_poid_stage_with_legacy_pass(self):
        assert id_status(_item(stage="proof-of-id-complete", legacy_eid_result="Verified")) == "complete"

    def test_no_eid_is_pending(self):
        assert id_status(_item(stage="initialised")) == "pending"

    def test_pending_eid_with_proof_fields_is_received(self):
        item = _item(stage="initialised", passport_number="P1", eids=[_eid(status="pending")])
        assert id_status(item) == "received"

    def test_pending_eid_without_proof_fields_is_pending(self):
        assert id_status(_item(stage="initialised", eids=[_eid(status="pending")])) == "pending"

    def test_proof_fields_without_attempt_is_pending(self):
        assert id_status(_item(stage="initialised", drivers_license_number="D1")) == "pending"

    def test_passed_eid_is_complete(self):
        assert id_status(_item(eids=[_eid("approved")])) == "complete"

    def test_failed_eid_is_review(self):
        assert id_status(_item(eids=[_eid("Refer")])) == "review"

    def test_newest_eid_wins_over_legacy(self):
        item = _item(eids=[_eid("Refer")], legacy_eid_result="Passed")
        assert id_status(item) == "review"

    def test_instructed_stage_never_pending(self):
        assert id_status(_item(stage="completed")) == "review"


# ---------------------------------------------------------------------------
# Other stages
# ---------------------------------------------------------------------------


class TestPaymentStatus:
    def test_internal_paid_flag(self):
        assert payment_status(_item(internal_status="paid")) == "complete"

    def test_latest_payment_succeeded_and_completed(self):
        older = Payment(payment_id="p1", payment_status="processing",
                        created_at=datetime(2024, 1, 1, tzinfo=UTC))
        newer = Payment(payment_id="p2", payment_status="succeeded", internal_status="completed",
                        created_at=datetime(2024, 2, 1, tzinfo=UTC))
        assert payment_status(_item(payments=[newer, older])) == "complete"

    def test_gateway_processing(self):
        assert payment_status(_item(payments=[Payment(payment_status="processing")])) == "processing"

    def test_gateway_success_without_internal_completion(self):
        assert payment_status(_item(payments=[Payment(payment_status="succeeded")])) == "pending"

    def test_no_payments(self):
        assert payment_status(_item()) == "pending"


class TestRiskMatterDocs:
    @pytest.mark.parametrize("result,expected", [
        ("Low Risk", "complete"), ("approved", "complete"), ("High", "review"), ("", "pending"),
    ])
    def test_risk(self, result, expected):
        risk = RiskAssessment(instruction_ref="HLX-1", result=result) if result else None
        assert risk_status(_item(risk=risk)) == expected

    def test_matter_from_id_or_records(self):
        assert matter_status(_item(matter_id="M-1")) == "complete"
        assert matter_status(_item(matters=[{"MatterID": "1"}])) == "complete"
        assert matter_status(_item()) == "pending"

    def test_docs_neutral_when_absent(self):
        assert docs_status(_item()) == "neutral"
        assert docs_status(_item(documents=[Document(document_id="D")])) == "complete"


class TestResolveStages:
    def test_statuses_within_vocabulary(self):
        stages = resolve_stages(_item(stage="proof-of-id-complete", eids=[_eid("Passed")]))
        for stage, status in stages.as_dict().items():
            assert status in STAGE_STATUSES[stage]

    def test_pitch_all_pending(self):
        stages = resolve_stages(_pitch())
        assert stages.id == "pending"
        assert stages.payment == "pending"
        assert stages.risk == "pending"
        assert stages.matter == "pending"
        assert stages.docs == "neutral"


# ---------------------------------------------------------------------------
# Derived labels
# ---------------------------------------------------------------------------


class TestNextAction:
    def test_pitch_has_no_action(self):
        assert next_action(_pitch()) is None

    def test_verify_id_first(self):
        assert next_action(_item()) == ACTION_VERIFY_ID

    def test_assess_risk(self):
        assert next_action(_item(eids=[_eid("Passed")])) == ACTION_ASSESS_RISK

    def test_open_matter_when_paid(self):
        item = _item(eids=[_eid("Passed")], internal_status="paid",
                     risk=RiskAssessment(instruction_ref="HLX-1", result="Low"))
        assert next_action(item) == ACTION_OPEN_MATTER

    def test_draft_ccl(self):
        item = _item(eids=[_eid("Passed")], matter_id="M-1",
                     risk=RiskAssessment(instruction_ref="HLX-1", result="Low"))
        assert next_action(item) == ACTION_DRAFT_CCL

    def test_complete(self):
        item = _item(eids=[_eid("Passed")], matter_id="M-1", ccl_submitted=True,
                     risk=RiskAssessment(instruction_ref="HLX-1", result="High"))
        assert next_action(item) == ACTION_COMPLETE

    def test_unpaid_without_matter_falls_through_to_complete(self):
        item = _item(eids=[_eid("Passed")], risk=RiskAssessment(instruction_ref="HLX-1", result="Low"))
        assert next_action(item) == ACTION_COMPLETE


class TestEngagementStage:
    def test_labels(self):
        assert engagement_stage(_pitch()) == "pitched"
        assert engagement_stage(_item(stage="initialised")) == "initialised"
        assert engagement_stage(_item(stage="proof-of-id-complete")) == "id-complete"
        assert engagement_stage(_item(stage="proof-of-id-complete", internal_status="paid")) == "instructed"
