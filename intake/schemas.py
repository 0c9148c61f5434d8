"""Pydantic request/response schemas for the Intake API."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from intake.status import STAGE_STATUSES


class SnapshotIn(BaseModel):
    prospects: list[dict[str, Any]] = []
    enquiries: list[dict[str, Any]] | None = None
    compliance: list[dict[str, Any]] = []


class LoadResult(BaseModel):
    prospects: int
    instructions: int
    pitches: int


class StageStatusOut(BaseModel):
    id: str
    payment: str
    risk: str
    matter: str
    docs: str


class OverviewItemOut(BaseModel):
    key: str
    instruction_ref: str
    deal_id: str | None = None
    prospect_id: str
    is_pitch: bool
    client_name: str
    email: str
    area: str
    date: str | None = None
    amount: float = 0.0
    stage: str
    engagement_stage: str
    stages: StageStatusOut
    next_action: str | None = None


class JointClientOut(BaseModel):
    deal_id: str
    email: str
    first_name: str = ""
    last_name: str = ""


class RiskOut(BaseModel):
    instruction_ref: str
    result: str
    score: float | None = None
    assessor: str = ""
    transaction_risk_level: str = ""
    compliance_date: str | None = None


class IdVerificationOut(BaseModel):
    instruction_ref: str
    check_id: str = ""
    email: str = ""
    overall_result: str = ""
    status: str = ""
    pep_result: str = ""
    address_result: str = ""
    checked_at: str | None = None


class PaymentOut(BaseModel):
    id: str
    amount: float
    payment_status: str
    internal_status: str
    created_at: str | None = None


class DocumentOut(BaseModel):
    document_id: str
    file_name: str
    uploaded_at: str


class OverviewDetail(OverviewItemOut):
    matter_id: str = ""
    ccl_submitted: bool = False
    deal_ids: list[str] = []
    joint_clients: list[JointClientOut] = []
    risk: RiskOut | None = None
    id_verifications: list[IdVerificationOut] = []
    payments: list[PaymentOut] = []
    documents: list[DocumentOut] = []


class OverviewListResponse(BaseModel):
    items: list[OverviewItemOut]
    total: int


class ComplianceClientOut(BaseModel):
    email: str
    first_name: str = ""
    last_name: str = ""
    lead: bool = False
    address: dict[str, str] = {}
    id_verification: IdVerificationOut | None = None


class ComplianceGroupOut(BaseModel):
    instruction_ref: str
    risk_assessments: list[RiskOut] = []
    id_verifications: list[IdVerificationOut] = []
    clients: list[ComplianceClientOut] = []


class NameOut(BaseModel):
    prospect_id: str
    firstName: str
    lastName: str


class StatsOut(BaseModel):
    total: int
    instructions: int
    pitches: int
    by_next_action: dict[str, int]
    by_area: dict[str, int]
    by_stage: dict[str, dict[str, int]]


class OverviewQuery(BaseModel):
    """Body form of the overview filters; pipeline is checked against the stage vocabulary."""
    action: str | None = None
    search: str | None = None
    areas: list[str] = []
    pipeline: dict[str, list[str]] = {}
    sort_by: str = "date"
    sort_dir: str = "desc"
    page: int = Field(1, ge=1)
    per_page: int = Field(200, ge=1, le=500)

    @field_validator("pipeline")
    @classmethod
    def pipeline_must_be_known(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        for stage, statuses in v.items():
            if stage not in STAGE_STATUSES:
                raise ValueError(f"unknown stage {stage!r}")
            unknown = set(statuses) - STAGE_STATUSES[stage]
            if unknown:
                raise ValueError(f"unknown {stage} status: {', '.join(sorted(unknown))}")
        return v
