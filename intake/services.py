"""Shared business logic for the Intake API and MCP server."""
from __future__ import annotations

import json
import logging
import threading
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from intake.compliance import ComplianceClient, ComplianceGroup, group_compliance
from intake.identity import IdentityResolver, NameCache, name_from_email
from intake.importer import load_enquiries, load_prospects
from intake.models import Snapshot
from intake.normalizer import build_overview
from intake.records import (
    Document, IdVerification, OverviewItem, Payment, Prospect, RiskAssessment, StageStatusSet,
)
from intake.status import STAGES, STAGE_STATUSES, engagement_stage, next_action, resolve_stages

log = logging.getLogger(__name__)

KNOWN_AREAS = ("Commercial", "Property", "Construction", "Employment")
OTHER_AREA = "Other/Unsure"
_KNOWN_AREAS_LOWER = frozenset(a.lower() for a in KNOWN_AREAS)

SORT_FIELDS = ("date", "client", "reference", "amount", "area")

# ---------------------------------------------------------------------------
# Row annotation
# ---------------------------------------------------------------------------


@dataclass
class OverviewRow:
    """An overview item with its derived statuses, computed once per refresh."""
    item: OverviewItem
    stages: StageStatusSet
    next_action: str | None
    client_name: str = ""
    area: str = ""
    date: datetime | None = None

    @property
    def key(self) -> str:
        return self.item.key


def client_name(item: OverviewItem, resolver: IdentityResolver | None = None) -> str:
    """Display name: explicit names, then company, then resolver, then email."""
    inst, deal = item.instruction, item.deal
    lead_joint = item.joint_clients[0] if item.joint_clients else None
    first = (inst.first_name if inst else "") or (lead_joint.first_name if lead_joint else "") \
        or (deal.first_name if deal else "")
    last = (inst.last_name if inst else "") or (lead_joint.last_name if lead_joint else "") \
        or (deal.last_name if deal else "")
    full = f"{first} {last}".strip()
    if full:
        return full
    explicit = (inst.client_name if inst else "") or (deal.client_name if deal else "")
    if explicit:
        return explicit
    company = (inst.company_name if inst else "") or (deal.company_name if deal else "")
    if company:
        return company
    email = (inst.email if inst else "") or (deal.lead_email if deal else "")
    if resolver is not None and item.prospect_id:
        resolved = resolver.resolve(item.prospect_id, email)
        if resolved:
            return resolved.full
    return name_from_email(email).full


def annotate(items: Iterable[OverviewItem], resolver: IdentityResolver | None = None) -> list[OverviewRow]:
    rows = []
    for item in items:
        stages = resolve_stages(item)
        inst, deal = item.instruction, item.deal
        rows.append(OverviewRow(
            item=item,
            stages=stages,
            next_action=next_action(item, stages),
            client_name=client_name(item, resolver),
            area=(inst.area_of_work if inst else "") or (deal.area_of_work if deal else ""),
            date=(inst.submitted_at if inst else None) or (deal.pitched_at if deal else None),
        ))
    return rows


# ---------------------------------------------------------------------------
# Filtering and sorting
# ---------------------------------------------------------------------------


@dataclass
class FilterSpec:
    """All dimensions optional; active ones are AND-ed together."""
    action: str | None = None
    search: str | None = None
    pipeline: dict[str, set[str]] = field(default_factory=dict)
    areas: set[str] = field(default_factory=set)


def parse_pipeline(value: str | None) -> dict[str, set[str]]:
    """Parse ``"id:review|pending;risk:pending"`` into a stage -> statuses map."""
    out: dict[str, set[str]] = {}
    if not value:
        return out
    for clause in value.split(";"):
        stage, _, statuses = clause.partition(":")
        stage = stage.strip().lower()
        allowed = {s.strip().lower() for s in statuses.split("|") if s.strip()}
        if stage and allowed:
            out.setdefault(stage, set()).update(allowed)
    return out


def parse_areas(value: str | None) -> set[str]:
    if not value:
        return set()
    return {a.strip() for a in value.split(",") if a.strip()}


def area_matches(area: str, allowed: set[str]) -> bool:
    area_l = (area or "").strip().lower()
    allowed_l = {a.lower() for a in allowed}
    if area_l and area_l in allowed_l:
        return True
    return OTHER_AREA.lower() in allowed_l and area_l not in _KNOWN_AREAS_LOWER


def matches_search(row: OverviewRow, query: str) -> bool:
    q = query.lower()
    inst, deal = row.item.instruction, row.item.deal
    haystack = (
        row.client_name,
        inst.company_name if inst else "", deal.company_name if deal else "",
        row.item.instruction_ref,
        inst.email if inst else "", deal.lead_email if deal else "",
    )
    return any(q in (h or "").lower() for h in haystack)


def pipeline_matches(row: OverviewRow, pipeline: dict[str, set[str]]) -> bool:
    """Every stage in *pipeline* must hold one of its allowed statuses."""
    if not pipeline:
        return True
    if row.item.is_pitch:
        return False
    statuses = row.stages.as_dict()
    return all(statuses[stage] in allowed for stage, allowed in pipeline.items())


def active_pipeline(pipeline: dict[str, set[str]]) -> dict[str, set[str]]:
    """Drop empty and unknown stages, warning once per unknown stage."""
    active: dict[str, set[str]] = {}
    for stage, allowed in pipeline.items():
        if stage not in STAGE_STATUSES:
            log.warning("Ignoring unknown pipeline stage %r", stage)
        elif allowed:
            active[stage] = allowed
    return active


def filter_rows(rows: list[OverviewRow], spec: FilterSpec) -> list[OverviewRow]:
    if spec.action:
        rows = [r for r in rows if r.next_action is not None and r.next_action.lower() == spec.action.lower()]
    if spec.search and spec.search.strip():
        q = spec.search.strip()
        rows = [r for r in rows if matches_search(r, q)]
    pipeline = active_pipeline(spec.pipeline) if spec.pipeline else {}
    if pipeline:
        rows = [r for r in rows if pipeline_matches(r, pipeline)]
    if spec.areas:
        rows = [r for r in rows if area_matches(r.area, spec.areas)]
    return rows


def _sort_value(row: OverviewRow, sort_by: str) -> Any:
    if sort_by == "date":
        return row.date.timestamp() if row.date else None
    if sort_by == "client":
        return row.client_name.lower() or None
    if sort_by == "reference":
        return row.item.instruction_ref.lower() or None
    if sort_by == "amount":
        return row.item.deal.amount if row.item.deal else None
    if sort_by == "area":
        return row.area.lower() or None
    return row.key.lower()


def sort_rows(rows: list[OverviewRow], sort_by: str = "date", sort_dir: str = "desc") -> list[OverviewRow]:
    """Sort rows; missing values always go last regardless of direction."""
    present = [r for r in rows if _sort_value(r, sort_by) is not None]
    missing = [r for r in rows if _sort_value(r, sort_by) is None]
    present.sort(key=lambda r: _sort_value(r, sort_by), reverse=(sort_dir == "desc"))
    return present + missing


def paginate(rows: list[OverviewRow], page: int = 1, per_page: int = 200) -> list[OverviewRow]:
    start = max(page - 1, 0) * per_page
    return rows[start:start + per_page]


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _payment_dict(p: Payment) -> dict:
    return {"id": p.payment_id, "amount": p.amount, "payment_status": p.payment_status,
            "internal_status": p.internal_status, "created_at": _iso(p.created_at)}


def _risk_dict(r: RiskAssessment) -> dict:
    return {"instruction_ref": r.instruction_ref, "result": r.result, "score": r.score,
            "assessor": r.assessor, "transaction_risk_level": r.transaction_risk_level,
            "compliance_date": _iso(r.compliance_date)}


def _eid_dict(e: IdVerification) -> dict:
    return {"instruction_ref": e.instruction_ref, "check_id": e.check_id, "email": e.email,
            "overall_result": e.overall_result, "status": e.status, "pep_result": e.pep_result,
            "address_result": e.address_result, "checked_at": _iso(e.checked_at)}


def _document_dict(d: Document) -> dict:
    return {"document_id": d.document_id, "file_name": d.file_name, "uploaded_at": d.uploaded_at}


def overview_summary(row: OverviewRow) -> dict:
    item = row.item
    inst, deal = item.instruction, item.deal
    return {
        "key": item.key,
        "instruction_ref": item.instruction_ref,
        "deal_id": deal.deal_id if deal else None,
        "prospect_id": item.prospect_id,
        "is_pitch": item.is_pitch,
        "client_name": row.client_name,
        "email": (inst.email if inst else "") or (deal.lead_email if deal else ""),
        "area": row.area,
        "date": _iso(row.date),
        "amount": deal.amount if deal else 0.0,
        "stage": (inst.stage if inst else "") or (deal.status if deal else ""),
        "engagement_stage": engagement_stage(item),
        "stages": row.stages.as_dict(),
        "next_action": row.next_action,
    }


def overview_detail(row: OverviewRow) -> dict:
    item = row.item
    base = overview_summary(row)
    base.update({
        "matter_id": item.instruction.matter_id if item.instruction else "",
        "ccl_submitted": item.instruction.ccl_submitted if item.instruction else False,
        "deal_ids": [d.deal_id for d in item.deals],
        "joint_clients": [{"deal_id": j.deal_id, "email": j.email, "first_name": j.first_name,
                           "last_name": j.last_name} for j in item.joint_clients],
        "risk": _risk_dict(item.risk) if item.risk else None,
        "id_verifications": [_eid_dict(e) for e in item.eids],
        "payments": [_payment_dict(p) for p in item.payments],
        "documents": [_document_dict(d) for d in item.documents],
    })
    return base


def _client_dict(c: ComplianceClient) -> dict:
    return {"email": c.email, "first_name": c.first_name, "last_name": c.last_name, "lead": c.lead,
            "address": c.address,
            "id_verification": _eid_dict(c.id_verification) if c.id_verification else None}


def compliance_summary(group: ComplianceGroup) -> dict:
    return {
        "instruction_ref": group.instruction_ref,
        "risk_assessments": [_risk_dict(r) for r in group.risk_assessments],
        "id_verifications": [_eid_dict(e) for e in group.id_verifications],
        "clients": [_client_dict(c) for c in group.clients],
    }


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


@dataclass
class Workspace:
    """Everything derived from one snapshot; rebuilt wholesale on refresh."""
    prospects: list[Prospect]
    resolver: IdentityResolver
    items: list[OverviewItem]
    rows: list[OverviewRow]
    records: list[dict[str, Any]] = field(default_factory=list)

    def row(self, key: str) -> OverviewRow | None:
        for row in self.rows:
            if row.key == key:
                return row
        return None


def build_workspace(payload: Any, cache: NameCache | None = None) -> Workspace:
    prospects = load_prospects(payload)
    enquiries = load_enquiries(payload) if isinstance(payload, dict) and "enquiries" in payload else None
    resolver = IdentityResolver(cache=cache, enquiries=enquiries, prospects=prospects)
    items = build_overview(prospects)
    records = payload.get("compliance", []) if isinstance(payload, dict) else []
    return Workspace(
        prospects=prospects, resolver=resolver, items=items,
        rows=annotate(items, resolver),
        records=[r for r in records if isinstance(r, dict)] if isinstance(records, list) else [],
    )


def save_snapshot(session: Session, payload: Any, source: str = "api") -> Snapshot:
    """Store a raw upstream payload as the current snapshot (caller must commit)."""
    if isinstance(payload, list):
        payload = {"prospects": payload}
    count = len(payload.get("prospects") or []) if isinstance(payload, dict) else 0
    snap = Snapshot(payload_json=json.dumps(payload, default=str), prospect_count=count, source=source)
    session.add(snap)
    return snap


def clear_snapshots(session: Session) -> None:
    session.execute(delete(Snapshot))


def load_summary(workspace: Workspace) -> dict:
    return {
        "prospects": len(workspace.prospects),
        "instructions": sum(1 for i in workspace.items if not i.is_pitch),
        "pitches": sum(1 for i in workspace.items if i.is_pitch),
    }


def query_overview(
    workspace: Workspace, *, action=None, search=None, pipeline=None, area=None,
    sort_by="date", sort_dir="desc", page=1, per_page=200,
) -> tuple[list[dict], int]:
    spec = FilterSpec(
        action=action, search=search,
        pipeline=parse_pipeline(pipeline) if isinstance(pipeline, str)
        else {stage: set(statuses) for stage, statuses in (pipeline or {}).items()},
        areas=parse_areas(area) if isinstance(area, str) else set(area or ()),
    )
    rows = sort_rows(filter_rows(workspace.rows, spec), sort_by, sort_dir)
    return [overview_summary(r) for r in paginate(rows, page, per_page)], len(rows)


def query_compliance(workspace: Workspace, instruction_ref: str | None = None) -> list[dict]:
    groups = group_compliance(
        workspace.items, workspace.records,
        instruction_ref=instruction_ref, resolver=workspace.resolver,
    )
    return [compliance_summary(g) for g in groups]


def compute_stats(rows: list[OverviewRow]) -> dict:
    by_action: Counter[str] = Counter()
    by_area: Counter[str] = Counter()
    by_stage: dict[str, Counter[str]] = {stage: Counter() for stage in STAGES}
    instructions = pitches = 0
    for row in rows:
        by_area[row.area or OTHER_AREA] += 1
        if row.item.is_pitch:
            pitches += 1
            continue
        instructions += 1
        by_action[row.next_action or "None"] += 1
        for stage, status in row.stages.as_dict().items():
            by_stage[stage][status] += 1
    return {
        "total": len(rows), "instructions": instructions, "pitches": pitches,
        "by_next_action": dict(by_action), "by_area": dict(by_area),
        "by_stage": {stage: dict(counts) for stage, counts in by_stage.items()},
    }


_memo_lock = threading.Lock()
_memo: tuple[str, NameCache | None, Workspace] | None = None


def current_workspace(session: Session, cache: NameCache | None = None) -> Workspace:
    """Workspace for the latest stored snapshot, rebuilt only when the snapshot changes."""
    global _memo
    snap = session.execute(
        select(Snapshot).order_by(Snapshot.id.desc()).limit(1)
    ).scalars().first()
    payload_json = snap.payload_json if snap is not None else ""
    with _memo_lock:
        if _memo is not None and _memo[0] == payload_json and _memo[1] is cache:
            return _memo[2]
    try:
        payload = json.loads(payload_json) if payload_json else {"prospects": []}
    except json.JSONDecodeError as exc:
        log.warning("Stored snapshot is not valid JSON: %s", exc)
        payload = {"prospects": []}
    workspace = build_workspace(payload, cache)
    with _memo_lock:
        _memo = (payload_json, cache, workspace)
    return workspace
