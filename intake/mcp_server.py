from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from intake import services
from intake.db import get_session, init_db, session_scope
from intake.identity import NameCache, SqlNameCache
from intake.status import ACTIONS, STAGE_STATUSES

log = logging.getLogger(__name__)

_cache: NameCache | None = None


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def intake_lifespan(server: FastMCP) -> AsyncIterator[None]:
    global _cache
    init_db()
    _cache = SqlNameCache(get_session)
    yield


mcp = FastMCP(
    "Intake",
    instructions=(
        "Intake reconciles prospect, deal, instruction and compliance records into one "
        "row per instruction (or pitch for unconverted deals). "
        "Start with get_stats() for an overview, then list_overview() to browse, "
        "then get_overview_item(key) for full details."
    ),
    lifespan=intake_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("intake://overview")
def intake_overview() -> str:
    """Overview of Intake: data model, pipeline stages, and next actions."""
    return json.dumps({
        "system": "Intake: instruction reconciliation for a legal-practice dashboard",
        "data_model": {
            "item": "One reconciled row per instruction reference, or deal-<DealId> for a pitch.",
            "instruction": "A client's formal engagement, the unit of work.",
            "pitch": "A deal that never converted into an instruction.",
        },
        "stages": {stage: sorted(statuses) for stage, statuses in STAGE_STATUSES.items()},
        "next_actions": list(ACTIONS),
        "pipeline_filter": "stage:status|status;stage:status, e.g. id:review|pending;risk:pending",
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Overview
# ---------------------------------------------------------------------------


@mcp.tool()
def list_overview(
    action: str | None = None, search: str | None = None,
    area: str | None = None, pipeline: str | None = None,
    sort_by: str = "date", sort_dir: str = "desc", limit: int = 50,
) -> list[dict]:
    """List reconciled instructions and pitches.

    Args:
        action: Filter by next action: Verify ID, Assess Risk, Open Matter, Draft CCL, Complete.
        search: Free-text search across client name, company, reference, and email.
        area: Comma-separated areas of work, e.g. "Property,Other/Unsure".
        pipeline: Stage filters, e.g. "id:review|pending;risk:pending".
        sort_by: Sort field: date, client, reference, amount, area.
        sort_dir: Sort direction: asc or desc.
        limit: Max results (default 50, max 500).
    """
    with session_scope() as session:
        items, _ = services.query_overview(
            services.current_workspace(session, _cache),
            action=action, search=search, area=area, pipeline=pipeline,
            sort_by=sort_by, sort_dir=sort_dir, page=1, per_page=max(1, min(limit, 500)),
        )
        return items


@mcp.tool()
def get_overview_item(key: str) -> dict:
    """Get one reconciled item with its payments, ID checks, risk, and documents."""
    with session_scope() as session:
        row = services.current_workspace(session, _cache).row(key)
        if row is None:
            return {"error": f"Item {key} not found"}
        return services.overview_detail(row)


# ---------------------------------------------------------------------------
# Tools: Compliance & Names
# ---------------------------------------------------------------------------


@mcp.tool()
def list_compliance(instruction_ref: str | None = None) -> list[dict]:
    """Risk assessments and ID checks grouped per instruction reference."""
    with session_scope() as session:
        return services.query_compliance(services.current_workspace(session, _cache), instruction_ref)


@mcp.tool()
def resolve_name(prospect_id: str, email: str = "") -> dict:
    """Resolve a prospect id to a first/last name, falling back to the email local-part."""
    with session_scope() as session:
        name = services.current_workspace(session, _cache).resolver.resolve(prospect_id, email)
        return {"prospect_id": prospect_id, **name.as_dict()}


# ---------------------------------------------------------------------------
# Tools: Stats
# ---------------------------------------------------------------------------


@mcp.tool()
def get_stats() -> dict:
    """Get summary counts by next action, area, and stage status."""
    with session_scope() as session:
        return services.compute_stats(services.current_workspace(session, _cache).rows)


def main():
    """Run the Intake MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
