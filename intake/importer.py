"""Adapter layer: raw upstream payloads -> canonical records.

Upstream sources disagree on field names (``Stage`` vs ``stage``, ``EntraID``
vs ``"Entra ID"``, ``riskAssessments`` vs ``compliance``) and overload key
fields (``MatterId`` carries the instruction reference on risk and EID
records).  All of that is resolved here so nothing downstream has to care.
"""
from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from intake.records import (
    Deal, Document, Enquiry, IdVerification, Instruction, JointClient, Payment,
    Prospect, RiskAssessment,
)

log = logging.getLogger(__name__)


class SnapshotError(ValueError):
    """Snapshot input could not be decoded into prospect records."""


def _s(value: object) -> str:
    """Safely coerce a raw value to a stripped string."""
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _f(value: object) -> float:
    """Safely coerce a raw value to float, 0.0 if missing."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        return float(value)
    except (ValueError, TypeError):
        return 0.0


def _f_or_none(value: object) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (ValueError, TypeError):
        return None


def _b(value: object) -> bool:
    """Safely coerce a raw value to bool."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes")


def _dt(value: object) -> datetime | None:
    """Parse an ISO-8601 timestamp or plain date, None when unparseable."""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = _s(value)
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    # naive timestamps are taken as UTC so mixed sources stay comparable
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _first(raw: dict, *aliases: str) -> Any:
    """Return the first non-empty value among *aliases*."""
    for alias in aliases:
        val = raw.get(alias)
        if val is not None and val != "":
            return val
    return None


def _dicts(raw: dict, *aliases: str) -> list[dict]:
    """Return the first list found under *aliases*, keeping only dict members."""
    for alias in aliases:
        val = raw.get(alias)
        if val is None:
            continue
        if not isinstance(val, list):
            log.debug("Ignoring non-list %r collection (%s)", alias, type(val).__name__)
            return []
        out = [v for v in val if isinstance(v, dict)]
        if len(out) != len(val):
            log.debug("Skipped %d non-object members of %r", len(val) - len(out), alias)
        return out
    return []


# ---------------------------------------------------------------------------
# Field alias tables
# ---------------------------------------------------------------------------

_REF_ALIASES = ("InstructionRef", "instructionRef", "instruction_ref")
_PIPELINE_KEY_ALIASES = (*_REF_ALIASES, "MatterId", "matterId", "matter_id")
_PROSPECT_ID_ALIASES = ("ProspectId", "prospectId", "prospect_id")

_ADDRESS_FIELDS = {
    "HouseNumber": ("HouseNumber", "house_number"),
    "Street": ("Street", "street"),
    "City": ("City", "city"),
    "County": ("County", "county"),
    "Postcode": ("Postcode", "postcode", "PostCode"),
    "Country": ("Country", "country"),
}

_RISK_LISTS = ("riskAssessments", "RiskAssessments", "compliance")
_EID_LISTS = ("identityVerifications", "idVerifications", "IDVerifications", "electronicIDChecks")
_JOINT_LISTS = ("jointClients", "joinedClients", "JointClients")
_DOC_LISTS = ("documents", "Documents")
_PAYMENT_LISTS = ("payments", "Payments")


def pipeline_key(raw: dict) -> str:
    """The instruction reference a compliance/payment/document record belongs to."""
    key = _s(_first(raw, *_PIPELINE_KEY_ALIASES))
    if key:
        return key
    meta = raw.get("metadata")
    if isinstance(meta, str):
        try:
            meta = json.loads(meta)
        except json.JSONDecodeError:
            meta = None
    if isinstance(meta, dict):
        return _s(_first(meta, "instructionRef", "instruction_ref", "InstructionRef"))
    return ""


def address_of(raw: dict) -> dict[str, str]:
    out = {}
    for name, aliases in _ADDRESS_FIELDS.items():
        val = _s(_first(raw, *aliases))
        if val:
            out[name] = val
    return out


# ---------------------------------------------------------------------------
# Record adapters
# ---------------------------------------------------------------------------


def to_document(raw: dict) -> Document:
    return Document(
        document_id=_s(_first(raw, "DocumentId", "documentId", "document_id", "id")),
        file_name=_s(_first(raw, "FileName", "fileName", "file_name", "filename")),
        uploaded_at=_s(_first(raw, "UploadedAt", "uploadedAt", "uploaded_at")),
        instruction_ref=pipeline_key(raw),
        deal_id=_s(_first(raw, "DealId", "dealId", "deal_id")),
        raw=raw,
    )


def to_payment(raw: dict) -> Payment:
    meta = raw.get("metadata")
    if isinstance(meta, str):
        try:
            meta = json.loads(meta)
        except json.JSONDecodeError:
            meta = {}
    return Payment(
        payment_id=_s(_first(raw, "id", "payment_id", "PaymentId", "payment_intent_id")),
        amount=_f(_first(raw, "amount", "Amount")),
        payment_status=_s(_first(raw, "payment_status", "paymentStatus")).lower(),
        internal_status=_s(_first(raw, "internal_status", "internalStatus")).lower(),
        created_at=_dt(_first(raw, "created_at", "createdAt", "CreatedAt")),
        instruction_ref=pipeline_key(raw),
        metadata=meta if isinstance(meta, dict) else {},
        raw=raw,
    )


def to_risk(raw: dict) -> RiskAssessment:
    return RiskAssessment(
        instruction_ref=pipeline_key(raw),
        result=_s(_first(raw, "RiskAssessmentResult", "riskAssessmentResult")),
        score=_f_or_none(_first(raw, "RiskScore", "riskScore")),
        assessor=_s(_first(raw, "RiskAssessor", "riskAssessor")),
        transaction_risk_level=_s(_first(raw, "TransactionRiskLevel", "transactionRiskLevel")),
        compliance_date=_dt(_first(raw, "ComplianceDate", "complianceDate")),
        raw=raw,
    )


def to_id_verification(raw: dict) -> IdVerification:
    return IdVerification(
        instruction_ref=pipeline_key(raw),
        check_id=_s(_first(raw, "EIDCheckId", "CheckId", "checkId")),
        email=_s(_first(raw, "ClientEmail", "Email", "email", "clientEmail")),
        overall_result=_s(_first(raw, "EIDOverallResult", "eidOverallResult")),
        status=_s(_first(raw, "EIDStatus", "eidStatus")),
        pep_result=_s(_first(raw, "PEPAndSanctionsCheckResult", "PEPResult")),
        address_result=_s(_first(raw, "AddressVerificationResult", "AddressResult")),
        checked_at=_dt(_first(raw, "EIDCheckedDate", "CreatedAt", "created_at", "createdAt")),
        raw=raw,
    )


def to_joint_client(raw: dict, deal_id: str = "") -> JointClient:
    return JointClient(
        deal_id=_s(_first(raw, "DealId", "dealId", "deal_id")) or deal_id,
        email=_s(_first(raw, "ClientEmail", "clientEmail", "Email", "email")),
        first_name=_s(_first(raw, "FirstName", "firstName", "first_name")),
        last_name=_s(_first(raw, "LastName", "lastName", "last_name")),
        raw=raw,
    )


def to_instruction(raw: dict) -> Instruction:
    return Instruction(
        instruction_ref=_s(_first(raw, *_REF_ALIASES)),
        prospect_id=_s(_first(raw, *_PROSPECT_ID_ALIASES)),
        stage=_s(_first(raw, "Stage", "stage")),
        internal_status=_s(_first(raw, "InternalStatus", "internalStatus")).lower(),
        first_name=_s(_first(raw, "FirstName", "firstName", "first_name")),
        last_name=_s(_first(raw, "LastName", "lastName", "last_name")),
        client_name=_s(_first(raw, "ClientName", "clientName", "Name")),
        company_name=_s(_first(raw, "CompanyName", "companyName", "Company")),
        email=_s(_first(raw, "ClientEmail", "Email", "email")),
        area_of_work=_s(_first(raw, "AreaOfWork", "Area_of_Work", "areaOfWork")),
        matter_id=_s(_first(raw, "MatterId", "matterId", "DisplayNumber")),
        matters=_dicts(raw, "matters", "Matters"),
        ccl_submitted=_b(_first(raw, "CCLSubmitted", "cclSubmitted")),
        passport_number=_s(_first(raw, "PassportNumber", "passportNumber")),
        drivers_license_number=_s(_first(raw, "DriversLicenseNumber", "driversLicenseNumber")),
        legacy_eid_result=_s(_first(raw, "EIDOverallResult")),
        contact=_s(_first(raw, "HelixContact", "helixContact", "EntraID", "Entra ID")),
        submitted_at=_dt(_first(raw, "SubmissionDate", "SubmittedDate", "submittedDate")),
        address=address_of(raw),
        risk_assessments=[to_risk(r) for r in _dicts(raw, *_RISK_LISTS)],
        id_verifications=[to_id_verification(r) for r in _dicts(raw, *_EID_LISTS)],
        documents=[to_document(r) for r in _dicts(raw, *_DOC_LISTS)],
        payments=[to_payment(r) for r in _dicts(raw, *_PAYMENT_LISTS)],
        raw=raw,
    )


def to_deal(raw: dict) -> Deal:
    deal_id = _s(_first(raw, "DealId", "dealId", "deal_id"))
    embedded = raw.get("instruction") or raw.get("Instruction")
    return Deal(
        deal_id=deal_id,
        instruction_ref=_s(_first(raw, *_REF_ALIASES)),
        prospect_id=_s(_first(raw, *_PROSPECT_ID_ALIASES)),
        status=_s(_first(raw, "Status", "status")),
        service_description=_s(_first(raw, "ServiceDescription", "serviceDescription")),
        lead_email=_s(_first(raw, "LeadClientEmail", "leadClientEmail", "Email")),
        amount=_f(_first(raw, "Amount", "amount")),
        area_of_work=_s(_first(raw, "AreaOfWork", "Area_of_Work", "areaOfWork")),
        first_name=_s(_first(raw, "FirstName", "firstName")),
        last_name=_s(_first(raw, "LastName", "lastName")),
        client_name=_s(_first(raw, "ClientName", "clientName")),
        company_name=_s(_first(raw, "CompanyName", "companyName")),
        pitched_by=_s(_first(raw, "PitchedBy", "pitchedBy")),
        pitched_at=_dt(_first(raw, "PitchedDate", "pitchedDate")),
        passcode=_s(_first(raw, "Passcode", "passcode")),
        joint_clients=[to_joint_client(j, deal_id) for j in _dicts(raw, *_JOINT_LISTS)],
        documents=[to_document(d) for d in _dicts(raw, *_DOC_LISTS)],
        instruction=to_instruction(embedded) if isinstance(embedded, dict) else None,
        raw=raw,
    )


def to_prospect(raw: dict) -> Prospect:
    return Prospect(
        prospect_id=_s(_first(raw, *_PROSPECT_ID_ALIASES, "id", "ID")),
        deals=[to_deal(d) for d in _dicts(raw, "deals", "Deals")],
        instructions=[to_instruction(i) for i in _dicts(raw, "instructions", "Instructions")],
        joint_clients=[to_joint_client(j) for j in _dicts(raw, *_JOINT_LISTS)],
        risk_assessments=[to_risk(r) for r in _dicts(raw, *_RISK_LISTS)],
        id_verifications=[to_id_verification(r) for r in _dicts(raw, *_EID_LISTS)],
        payments=[to_payment(p) for p in _dicts(raw, *_PAYMENT_LISTS)],
        documents=[to_document(d) for d in _dicts(raw, *_DOC_LISTS)],
    )


def to_enquiry(raw: dict) -> Enquiry:
    return Enquiry(
        enquiry_id=_s(_first(raw, "ID", "id", "acid", "EnquiryId")),
        first_name=_s(_first(raw, "First_Name", "first", "FirstName", "firstName")),
        last_name=_s(_first(raw, "Last_Name", "last", "LastName", "lastName")),
        email=_s(_first(raw, "Email", "email")),
        address=address_of(raw),
        raw=raw,
    )


# ---------------------------------------------------------------------------
# Payload entry points
# ---------------------------------------------------------------------------

_PROSPECT_MARKERS = ("deals", "Deals", "instructions", "Instructions", *_PROSPECT_ID_ALIASES)


def load_prospects(payload: Any) -> list[Prospect]:
    """Adapt a raw payload (list of prospects, or a snapshot object) into prospects."""
    if isinstance(payload, dict):
        if "prospects" in payload:
            payload = payload.get("prospects")
        elif any(k in payload for k in _PROSPECT_MARKERS):
            payload = [payload]
        else:
            return []
    if not isinstance(payload, list):
        return []
    return [to_prospect(p) for p in payload if isinstance(p, dict)]


def load_enquiries(payload: Any) -> list[Enquiry]:
    if isinstance(payload, dict):
        payload = payload.get("enquiries")
    if not isinstance(payload, list):
        return []
    return [to_enquiry(e) for e in payload if isinstance(e, dict)]


def load_json_file(file_path: str | Path) -> Any:
    """Read a JSON snapshot file, raising SnapshotError if it cannot be decoded."""
    file_path = Path(file_path)
    try:
        return json.loads(file_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        log.warning("Could not read snapshot %s: %s", file_path, exc)
        raise SnapshotError(f"Invalid snapshot file {file_path.name}: {exc}") from exc
