"""Record normalizer: prospect collections -> one OverviewItem per instruction or pitch.

The result is rebuilt wholesale on every upstream refresh.  Items are keyed by
``InstructionRef`` (or ``deal-<DealId>`` for deals that never converted);
first occurrence of a key wins and later duplicates are dropped, which keeps a
deal that shows up under several prospects from being counted twice.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Hashable, Iterable
from datetime import datetime
from typing import TypeVar

from intake.records import (
    Deal, Document, IdVerification, Instruction, JointClient, OverviewItem, Payment,
    Prospect, RiskAssessment,
)

log = logging.getLogger(__name__)

T = TypeVar("T")


def dedupe(records: Iterable[T], key: Callable[[T], Hashable]) -> list[T]:
    """Keep the first record per key, preserving order."""
    seen: set = set()
    out: list[T] = []
    for rec in records:
        k = key(rec)
        if k in seen:
            continue
        seen.add(k)
        out.append(rec)
    return out


def newest_first(records: Iterable[T], when: Callable[[T], datetime | None]) -> list[T]:
    """Sort most recent first; ties keep source order and undated records go last."""
    indexed = list(enumerate(records))
    dated = [(i, r) for i, r in indexed if when(r) is not None]
    undated = [r for _, r in indexed if when(r) is None]
    dated.sort(key=lambda pair: (-when(pair[1]).timestamp(), pair[0]))
    return [r for _, r in dated] + undated


def pitch_key(deal: Deal) -> str:
    return f"deal-{deal.deal_id}"


# ---------------------------------------------------------------------------
# Pooling helpers
# ---------------------------------------------------------------------------


def _embedded(deals: list[Deal], ref: str) -> list[Instruction]:
    """Instruction copies embedded on deals, matching *ref*."""
    return [d.instruction for d in deals
            if d.instruction is not None and d.instruction.instruction_ref in ("", ref)]


def _risks(prospect: Prospect, inst: Instruction, deals: list[Deal]) -> list[RiskAssessment]:
    ref = inst.instruction_ref
    pool = [*prospect.risk_assessments, *inst.risk_assessments]
    for emb in _embedded(deals, ref):
        pool.extend(emb.risk_assessments)
    return dedupe((r for r in pool if r.instruction_ref == ref), lambda r: r.key)


def _eids(prospect: Prospect, inst: Instruction, deals: list[Deal]) -> list[IdVerification]:
    ref = inst.instruction_ref
    pool = [*prospect.id_verifications, *inst.id_verifications]
    for emb in _embedded(deals, ref):
        pool.extend(emb.id_verifications)
    matching = dedupe((e for e in pool if e.instruction_ref == ref), lambda e: e.key)
    return newest_first(matching, lambda e: e.checked_at)


def _sources(prospect: Prospect, deals: list[Deal], owners: dict[str, Prospect]) -> list[Prospect]:
    """The instruction's own prospect plus every prospect owning one of *deals*."""
    found = [prospect, *(owners[d.deal_id] for d in deals if d.deal_id in owners)]
    return dedupe(found, id)


def _documents(sources: list[Prospect], inst: Instruction, deals: list[Deal]) -> list[Document]:
    ref = inst.instruction_ref
    deal_ids = {d.deal_id for d in deals}
    pool = [d for p in sources for d in p.documents
            if d.instruction_ref == ref or (not d.instruction_ref and d.deal_id in deal_ids)]
    pool.extend(inst.documents)
    for deal in deals:
        pool.extend(deal.documents)
    for emb in _embedded(deals, ref):
        pool.extend(emb.documents)
    return dedupe(pool, lambda d: d.key)


def _payments(prospect: Prospect, inst: Instruction) -> list[Payment]:
    pool = [*inst.payments, *(p for p in prospect.payments if p.instruction_ref == inst.instruction_ref)]
    unique = dedupe(pool, lambda p: p.payment_id or id(p))
    return newest_first(unique, lambda p: p.created_at)


def _joint_clients(sources: list[Prospect], deals: list[Deal]) -> list[JointClient]:
    deal_ids = {d.deal_id for d in deals}
    pool = [j for p in sources for j in p.joint_clients if j.deal_id in deal_ids]
    for deal in deals:
        pool.extend(deal.joint_clients)
    return dedupe(pool, lambda j: j.key)


def _primary_risk(risks: list[RiskAssessment]) -> RiskAssessment | None:
    if not risks:
        return None
    return newest_first(risks, lambda r: r.compliance_date)[0]


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def _instruction_item(
    prospect: Prospect, inst: Instruction, deals_by_ref: dict[str, list[Deal]],
    owners: dict[str, Prospect],
) -> OverviewItem:
    deals = deals_by_ref.get(inst.instruction_ref, [])
    sources = _sources(prospect, deals, owners)
    risks = _risks(prospect, inst, deals)
    primary = deals[0] if deals else None
    prospect_id = inst.prospect_id or (primary.prospect_id if primary else "") or prospect.prospect_id
    return OverviewItem(
        key=inst.instruction_ref,
        prospect_id=prospect_id,
        instruction=inst,
        deal=primary,
        deals=deals,
        joint_clients=_joint_clients(sources, deals),
        risk=_primary_risk(risks),
        risk_assessments=risks,
        eids=_eids(prospect, inst, deals),
        payments=_payments(prospect, inst),
        documents=_documents(sources, inst, deals),
    )


def _pitch_item(prospect: Prospect, deal: Deal) -> OverviewItem:
    docs = [d for d in prospect.documents if d.deal_id == deal.deal_id and not d.instruction_ref]
    docs.extend(deal.documents)
    return OverviewItem(
        key=pitch_key(deal),
        prospect_id=deal.prospect_id or prospect.prospect_id,
        instruction=None,
        deal=deal,
        deals=[deal],
        joint_clients=_joint_clients([prospect], [deal]),
        documents=dedupe(docs, lambda d: d.key),
    )


def build_overview(prospects: Iterable[Prospect]) -> list[OverviewItem]:
    """Merge prospect collections into overview items, instructions first then pitches."""
    prospects = list(prospects)

    deals_by_ref: dict[str, list[Deal]] = {}
    owners: dict[str, Prospect] = {}
    for prospect in prospects:
        for deal in prospect.deals:
            if deal.deal_id:
                owners.setdefault(deal.deal_id, prospect)
            if deal.instruction_ref:
                deals_by_ref.setdefault(deal.instruction_ref, []).append(deal)
    deals_by_ref = {ref: dedupe(ds, lambda d: d.deal_id or id(d)) for ref, ds in deals_by_ref.items()}

    known_refs = {i.instruction_ref for p in prospects for i in p.instructions if i.instruction_ref}

    items: dict[str, OverviewItem] = {}
    for prospect in prospects:
        for inst in prospect.instructions:
            if not inst.instruction_ref:
                log.debug("Skipping instruction without reference on prospect %s", prospect.prospect_id)
                continue
            if inst.instruction_ref in items:
                continue
            items[inst.instruction_ref] = _instruction_item(prospect, inst, deals_by_ref, owners)

    for prospect in prospects:
        for deal in prospect.deals:
            if deal.instruction_ref in known_refs:
                continue
            if not deal.deal_id:
                log.debug("Skipping pitch without DealId on prospect %s", prospect.prospect_id)
                continue
            key = pitch_key(deal)
            if key not in items:
                items[key] = _pitch_item(prospect, deal)

    return list(items.values())
