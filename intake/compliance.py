"""Risk/compliance grouper: risk assessments and ID checks grouped per instruction.

Separate from the main overview: each group carries every risk record and
every ID-verification record for one instruction reference, plus a client
list where each client has its newest matching ID check attached and missing
address fields backfilled from enquiry records.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from intake.identity import IdentityResolver
from intake.importer import to_id_verification, to_risk
from intake.normalizer import dedupe, newest_first
from intake.records import IdVerification, OverviewItem, RiskAssessment

log = logging.getLogger(__name__)

ID_MARKERS = (
    "CheckId", "EIDCheckId", "EIDStatus", "EIDCheckedDate", "EIDOverallResult",
    "PEPAndSanctionsCheckResult", "AddressVerificationResult",
)

ADDRESS_KEYS = ("HouseNumber", "Street", "City", "County", "Postcode", "Country")


def classify_record(raw: dict[str, Any]) -> str:
    """``"id"`` for ID-verification records, ``"risk"`` for everything else."""
    return "id" if any(raw.get(m) not in (None, "") for m in ID_MARKERS) else "risk"


@dataclass
class ComplianceClient:
    email: str
    first_name: str = ""
    last_name: str = ""
    lead: bool = False
    address: dict[str, str] = field(default_factory=dict)
    id_verification: IdVerification | None = None


@dataclass
class ComplianceGroup:
    instruction_ref: str
    risk_assessments: list[RiskAssessment] = field(default_factory=list)
    id_verifications: list[IdVerification] = field(default_factory=list)
    clients: list[ComplianceClient] = field(default_factory=list)


def _backfill(address: dict[str, str], email: str, resolver: IdentityResolver | None) -> dict[str, str]:
    out = dict(address)
    if resolver is None or not email:
        return out
    enquiry = resolver.client_details(email)
    if enquiry is None:
        return out
    for key in ADDRESS_KEYS:
        if not out.get(key) and enquiry.address.get(key):
            out[key] = enquiry.address[key]
    return out


def _latest_for(email: str, checks: list[IdVerification]) -> IdVerification | None:
    email = email.lower()
    for check in checks:  # already newest first
        if check.email.lower() == email:
            return check
    return None


def _clients(item: OverviewItem, checks: list[IdVerification],
             resolver: IdentityResolver | None) -> list[ComplianceClient]:
    clients: list[ComplianceClient] = []
    inst = item.instruction
    lead_email = (inst.email if inst else "") or (item.deal.lead_email if item.deal else "")
    if inst is not None or lead_email:
        clients.append(ComplianceClient(
            email=lead_email,
            first_name=inst.first_name if inst else "",
            last_name=inst.last_name if inst else "",
            lead=True,
            address=_backfill(inst.address if inst else {}, lead_email, resolver),
            id_verification=_latest_for(lead_email, checks) if lead_email else None,
        ))
    seen = {lead_email.lower()} if lead_email else set()
    for joint in item.joint_clients:
        if not joint.email or joint.email.lower() in seen:
            continue
        seen.add(joint.email.lower())
        clients.append(ComplianceClient(
            email=joint.email,
            first_name=joint.first_name,
            last_name=joint.last_name,
            address=_backfill({}, joint.email, resolver),
            id_verification=_latest_for(joint.email, checks),
        ))
    return clients


def group_compliance(
    items: Iterable[OverviewItem],
    records: Iterable[dict[str, Any]] = (),
    *,
    instruction_ref: str | None = None,
    resolver: IdentityResolver | None = None,
) -> list[ComplianceGroup]:
    """Group risk and ID records by instruction reference.

    Args:
        items: Overview items; pitches are ignored.
        records: Extra raw risk/ID records (a flat compliance feed).  Each is
            classified by :func:`classify_record` and merged into the group of
            its instruction reference.
        instruction_ref: Restrict output to this reference (case-insensitive).
        resolver: Source of enquiry records for address backfill.
    """
    wanted = instruction_ref.strip().lower() if instruction_ref else None
    risks: dict[str, list[RiskAssessment]] = {}
    checks: dict[str, list[IdVerification]] = {}
    by_ref: dict[str, OverviewItem] = {}

    for item in items:
        if item.instruction is None:
            continue
        ref = item.instruction.instruction_ref
        by_ref.setdefault(ref, item)
        if item.risk_assessments or item.eids:
            risks.setdefault(ref, []).extend(item.risk_assessments)
            checks.setdefault(ref, []).extend(item.eids)

    for raw in records:
        if not isinstance(raw, dict):
            continue
        if classify_record(raw) == "id":
            check = to_id_verification(raw)
            if not check.instruction_ref:
                log.debug("Dropping ID record without instruction reference")
                continue
            risks.setdefault(check.instruction_ref, [])
            checks.setdefault(check.instruction_ref, []).append(check)
        else:
            risk = to_risk(raw)
            if not risk.instruction_ref:
                log.debug("Dropping risk record without instruction reference")
                continue
            checks.setdefault(risk.instruction_ref, [])
            risks.setdefault(risk.instruction_ref, []).append(risk)

    groups: list[ComplianceGroup] = []
    for ref in dict.fromkeys([*risks, *checks]):
        if wanted is not None and ref.lower() != wanted:
            continue
        ref_checks = newest_first(dedupe(checks.get(ref, []), lambda c: c.key), lambda c: c.checked_at)
        item = by_ref.get(ref)
        groups.append(ComplianceGroup(
            instruction_ref=ref,
            risk_assessments=dedupe(risks.get(ref, []), lambda r: r.key),
            id_verifications=ref_checks,
            clients=_clients(item, ref_checks, resolver) if item is not None else [],
        ))
    return groups
