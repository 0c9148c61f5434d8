"""Canonical record shapes for the reconciliation pipeline.

Raw upstream payloads are mapped onto these by :mod:`intake.importer`; the
normalizer, status resolver, compositor and compliance grouper only ever see
these types.  Every field has a safe default so a sparse upstream record still
produces a usable object.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

# ---------------------------------------------------------------------------
# Source records
# ---------------------------------------------------------------------------


@dataclass
class Document:
    document_id: str = ""
    file_name: str = ""
    uploaded_at: str = ""
    instruction_ref: str = ""
    deal_id: str = ""
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def key(self) -> tuple[str, ...]:
        if self.document_id:
            return ("id", self.document_id)
        return ("file", self.file_name, self.uploaded_at)


@dataclass
class Payment:
    payment_id: str = ""
    amount: float = 0.0
    payment_status: str = ""
    internal_status: str = ""
    created_at: datetime | None = None
    instruction_ref: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass
class RiskAssessment:
    instruction_ref: str = ""
    result: str = ""
    score: float | None = None
    assessor: str = ""
    transaction_risk_level: str = ""
    compliance_date: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def key(self) -> tuple[Any, ...]:
        return (self.instruction_ref, self.assessor, self.compliance_date, self.result)


@dataclass
class IdVerification:
    instruction_ref: str = ""
    check_id: str = ""
    email: str = ""
    overall_result: str = ""
    status: str = ""
    pep_result: str = ""
    address_result: str = ""
    checked_at: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def key(self) -> tuple[Any, ...]:
        if self.check_id:
            return ("check", self.check_id)
        return ("attempt", self.instruction_ref, self.email, self.checked_at, self.overall_result)


@dataclass
class JointClient:
    deal_id: str = ""
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def key(self) -> tuple[str, str]:
        return (self.deal_id, self.email.lower())


@dataclass
class Instruction:
    instruction_ref: str
    prospect_id: str = ""
    stage: str = ""
    internal_status: str = ""
    first_name: str = ""
    last_name: str = ""
    client_name: str = ""
    company_name: str = ""
    email: str = ""
    area_of_work: str = ""
    matter_id: str = ""
    matters: list[dict[str, Any]] = field(default_factory=list)
    ccl_submitted: bool = False
    passport_number: str = ""
    drivers_license_number: str = ""
    legacy_eid_result: str = ""
    contact: str = ""
    submitted_at: datetime | None = None
    address: dict[str, str] = field(default_factory=dict)
    risk_assessments: list[RiskAssessment] = field(default_factory=list)
    id_verifications: list[IdVerification] = field(default_factory=list)
    documents: list[Document] = field(default_factory=list)
    payments: list[Payment] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def has_proof_of_id(self) -> bool:
        return bool(self.passport_number or self.drivers_license_number)


@dataclass
class Deal:
    deal_id: str
    instruction_ref: str = ""
    prospect_id: str = ""
    status: str = ""
    service_description: str = ""
    lead_email: str = ""
    amount: float = 0.0
    area_of_work: str = ""
    first_name: str = ""
    last_name: str = ""
    client_name: str = ""
    company_name: str = ""
    pitched_by: str = ""
    pitched_at: datetime | None = None
    passcode: str = ""
    joint_clients: list[JointClient] = field(default_factory=list)
    documents: list[Document] = field(default_factory=list)
    instruction: Instruction | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass
class Enquiry:
    enquiry_id: str = ""
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    address: dict[str, str] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass
class Prospect:
    prospect_id: str = ""
    deals: list[Deal] = field(default_factory=list)
    instructions: list[Instruction] = field(default_factory=list)
    joint_clients: list[JointClient] = field(default_factory=list)
    risk_assessments: list[RiskAssessment] = field(default_factory=list)
    id_verifications: list[IdVerification] = field(default_factory=list)
    payments: list[Payment] = field(default_factory=list)
    documents: list[Document] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Derived records
# ---------------------------------------------------------------------------


@dataclass
class OverviewItem:
    """One reconciled view per instruction, or per unconverted deal (pitch)."""
    key: str
    prospect_id: str = ""
    instruction: Instruction | None = None
    deal: Deal | None = None
    deals: list[Deal] = field(default_factory=list)
    joint_clients: list[JointClient] = field(default_factory=list)
    risk: RiskAssessment | None = None
    risk_assessments: list[RiskAssessment] = field(default_factory=list)
    eids: list[IdVerification] = field(default_factory=list)
    payments: list[Payment] = field(default_factory=list)
    documents: list[Document] = field(default_factory=list)

    @property
    def is_pitch(self) -> bool:
        return self.instruction is None

    @property
    def eid(self) -> IdVerification | None:
        return self.eids[0] if self.eids else None

    @property
    def instruction_ref(self) -> str:
        if self.instruction is not None:
            return self.instruction.instruction_ref
        return self.deal.instruction_ref if self.deal else ""


@dataclass(frozen=True)
class StageStatusSet:
    id: str
    payment: str
    risk: str
    matter: str
    docs: str

    def as_dict(self) -> dict[str, str]:
        return {
            "id": self.id, "payment": self.payment, "risk": self.risk,
            "matter": self.matter, "docs": self.docs,
        }
