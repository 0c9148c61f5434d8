"""Pipeline status resolver: deterministic stage statuses for an overview item.

Stages
------
Each instruction walks five stages:

- **id**: identity verification.  The same fact is recorded in three places
  (instruction ``Stage`` marker, legacy ``EIDOverallResult`` on the
  instruction, and the EID check records).  The stage marker wins, then the
  newest EID record, then the legacy field.
- **payment**: the instruction's internal ``paid`` flag, else the newest
  payment record.
- **risk**: the recorded ``RiskAssessmentResult``.
- **matter**: a linked matter id or matter record.
- **docs**: optional, so absence is ``neutral`` rather than a failure.

Everything here is pure: no I/O, no mutation of the item.
"""
from __future__ import annotations

from intake.records import OverviewItem, StageStatusSet

PENDING = "pending"
RECEIVED = "received"
REVIEW = "review"
PROCESSING = "processing"
COMPLETE = "complete"
NEUTRAL = "neutral"

STAGES = ("id", "payment", "risk", "matter", "docs")

STAGE_STATUSES: dict[str, frozenset[str]] = {
    "id": frozenset({PENDING, RECEIVED, REVIEW, COMPLETE}),
    "payment": frozenset({PENDING, PROCESSING, COMPLETE}),
    "risk": frozenset({PENDING, REVIEW, COMPLETE}),
    "matter": frozenset({PENDING, COMPLETE}),
    "docs": frozenset({NEUTRAL, COMPLETE}),
}

POID_COMPLETE_STAGE = "proof-of-id-complete"
INSTRUCTED_STAGES = frozenset({POID_COMPLETE_STAGE, "completed"})

EID_ACCEPTED = frozenset({"passed", "approved", "verified", "pass"})
RISK_ACCEPTED = frozenset({"low", "low risk", "pass", "approved"})
PAYMENT_DONE_INTERNAL = frozenset({"completed", "paid"})
PAYMENT_DONE_GATEWAY = frozenset({"succeeded", "confirmed", "requires_capture"})

ACTION_VERIFY_ID = "Verify ID"
ACTION_ASSESS_RISK = "Assess Risk"
ACTION_OPEN_MATTER = "Open Matter"
ACTION_DRAFT_CCL = "Draft CCL"
ACTION_COMPLETE = "Complete"
ACTIONS = (ACTION_VERIFY_ID, ACTION_ASSESS_RISK, ACTION_OPEN_MATTER, ACTION_DRAFT_CCL, ACTION_COMPLETE)


def _norm(value: str | None) -> str:
    return (value or "").strip().lower()


# ---------------------------------------------------------------------------
# Individual stages
# ---------------------------------------------------------------------------


def eid_result(item: OverviewItem) -> str:
    """Lower-cased overall EID result: newest check first, legacy field as fallback."""
    if item.eid is not None and item.eid.overall_result:
        return _norm(item.eid.overall_result)
    return _norm(item.instruction.legacy_eid_result) if item.instruction else ""


def id_status(item: OverviewItem) -> str:
    inst = item.instruction
    if inst is None:
        return PENDING
    stage = _norm(inst.stage)
    result = eid_result(item)
    latest = item.eid

    if stage == POID_COMPLETE_STAGE:
        status = COMPLETE if result in EID_ACCEPTED else REVIEW
    elif latest is None or _norm(latest.status) == PENDING:
        status = RECEIVED if inst.has_proof_of_id and latest is not None else PENDING
    elif result in EID_ACCEPTED:
        status = COMPLETE
    else:
        status = REVIEW

    # an instructed engagement never reads as not started
    if stage in INSTRUCTED_STAGES and status == PENDING:
        status = REVIEW
    return status


def payment_status(item: OverviewItem) -> str:
    inst = item.instruction
    if inst is None:
        return PENDING
    if _norm(inst.internal_status) == "paid":
        return COMPLETE
    if not item.payments:
        return PENDING
    latest = item.payments[0]
    internal = _norm(latest.internal_status)
    gateway = _norm(latest.payment_status)
    if gateway in PAYMENT_DONE_GATEWAY and internal in PAYMENT_DONE_INTERNAL:
        return COMPLETE
    if internal in PAYMENT_DONE_INTERNAL:
        return COMPLETE
    if gateway == PROCESSING:
        return PROCESSING
    return PENDING


def risk_status(item: OverviewItem) -> str:
    result = _norm(item.risk.result) if item.risk else ""
    if not result:
        return PENDING
    return COMPLETE if result in RISK_ACCEPTED else REVIEW


def matter_status(item: OverviewItem) -> str:
    inst = item.instruction
    if inst is not None and (inst.matter_id or inst.matters):
        return COMPLETE
    return PENDING


def docs_status(item: OverviewItem) -> str:
    return COMPLETE if item.documents else NEUTRAL


def resolve_stages(item: OverviewItem) -> StageStatusSet:
    """Compute the five pipeline stage statuses for one item."""
    return StageStatusSet(
        id=id_status(item),
        payment=payment_status(item),
        risk=risk_status(item),
        matter=matter_status(item),
        docs=docs_status(item),
    )


# ---------------------------------------------------------------------------
# Derived labels
# ---------------------------------------------------------------------------


def next_action(item: OverviewItem, stages: StageStatusSet | None = None) -> str | None:
    """The single highest-priority outstanding action, None for pitches."""
    if item.instruction is None:
        return None
    stages = stages or resolve_stages(item)
    if stages.id != COMPLETE:
        return ACTION_VERIFY_ID
    if stages.risk == PENDING:
        return ACTION_ASSESS_RISK
    if stages.matter != COMPLETE and stages.payment == COMPLETE:
        return ACTION_OPEN_MATTER
    if stages.matter == COMPLETE and not item.instruction.ccl_submitted:
        return ACTION_DRAFT_CCL
    return ACTION_COMPLETE


def engagement_stage(item: OverviewItem) -> str:
    """Coarse lifecycle label: instructed, id-complete, initialised or pitched."""
    inst = item.instruction
    if inst is None:
        return "pitched"
    stage = _norm(inst.stage)
    if stage == POID_COMPLETE_STAGE:
        return "instructed" if _norm(inst.internal_status) == "paid" else "id-complete"
    if stage == "initialised":
        return "initialised"
    return "pitched"
