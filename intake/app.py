from __future__ import annotations

import logging
import os
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Generator

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from sqlalchemy.orm import Session

from intake import services
from intake.db import get_session, init_db, session_generator
from intake.identity import NameCache, SqlNameCache
from intake.importer import SnapshotError, load_json_file
from intake.schemas import (
    ComplianceGroupOut,
    LoadResult,
    NameOut,
    OverviewDetail,
    OverviewListResponse,
    OverviewQuery,
    SnapshotIn,
    StatsOut,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    app.state.name_cache = SqlNameCache(get_session)
    yield


app = FastAPI(
    title="Intake",
    version="0.1.0",
    description=(
        "Instruction reconciliation API for the legal intake dashboard. "
        "Load a prospect snapshot, then browse one reconciled row per instruction "
        "or pitch with its pipeline statuses and next action. "
        "All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Snapshot", "description": "Load upstream prospect data."},
        {"name": "Overview", "description": "Reconciled instructions and pitches with filtering."},
        {"name": "Compliance", "description": "Risk assessments and ID checks grouped per instruction."},
        {"name": "Names", "description": "Prospect display-name resolution."},
        {"name": "Stats", "description": "Aggregate statistics and breakdowns."},
        {"name": "Admin", "description": "Administrative operations."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def name_cache(request: Request) -> NameCache:
    return request.app.state.name_cache


def _workspace(session: Session, cache: NameCache) -> services.Workspace:
    return services.current_workspace(session, cache)


def _store(session: Session, cache: NameCache, payload: Any, source: str) -> dict:
    if not isinstance(payload, (dict, list)):
        raise HTTPException(400, "Snapshot must be a JSON object or a list of prospects")
    services.save_snapshot(session, payload, source=source)
    session.commit()
    return services.load_summary(_workspace(session, cache))


# ---------------------------------------------------------------------------
# Routes: Snapshot
# ---------------------------------------------------------------------------


@app.post("/api/snapshot", response_model=LoadResult,
          tags=["Snapshot"], summary="Replace the current snapshot with a posted payload")
async def load_snapshot(body: SnapshotIn, session: Session = Depends(db_session),
                        cache: NameCache = Depends(name_cache)):
    return _store(session, cache, body.model_dump(exclude_none=True), "api")


@app.post("/api/import", response_model=LoadResult,
          tags=["Snapshot"], summary="Replace the current snapshot from an uploaded JSON file")
async def import_file(file: UploadFile = File(...), session: Session = Depends(db_session),
                      cache: NameCache = Depends(name_cache)):
    if not file.filename or not file.filename.lower().endswith(".json"):
        raise HTTPException(400, "Only .json files are supported")
    content = await file.read()
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(suffix=".json", delete=False) as f:
            tmp_path = Path(f.name)
            f.write(content)
        payload = load_json_file(tmp_path)
    except SnapshotError as exc:
        raise HTTPException(400, str(exc)) from exc
    finally:
        if tmp_path:
            tmp_path.unlink(missing_ok=True)
    return _store(session, cache, payload, file.filename)


# ---------------------------------------------------------------------------
# Routes: Overview (query route before parameterized to avoid route shadowing)
# ---------------------------------------------------------------------------


@app.get("/api/overview", response_model=OverviewListResponse,
         tags=["Overview"], summary="List reconciled items with filtering, sorting, and pagination")
async def list_overview(
    action: str | None = Query(None, description="Next action: Verify ID, Assess Risk, Open Matter, Draft CCL, Complete"),
    search: str | None = Query(None, description="Free-text search across client, company, reference, and email"),
    area: str | None = Query(None, description="Comma-separated: Commercial, Property, Construction, Employment, Other/Unsure"),
    pipeline: str | None = Query(None, description="Stage filters, e.g. id:review|pending;risk:pending"),
    sort_by: str = Query("date", description="Sort field: date, client, reference, amount, area"),
    sort_dir: str = Query("desc", description="asc or desc"),
    page: int = Query(1, ge=1),
    per_page: int = Query(200, ge=1, le=500),
    session: Session = Depends(db_session),
    cache: NameCache = Depends(name_cache),
):
    items, total = services.query_overview(
        _workspace(session, cache), action=action, search=search, pipeline=pipeline,
        area=area, sort_by=sort_by, sort_dir=sort_dir, page=page, per_page=per_page,
    )
    return {"items": items, "total": total}


@app.post("/api/overview/query", response_model=OverviewListResponse,
          tags=["Overview"], summary="List reconciled items using a structured filter body")
async def query_overview(body: OverviewQuery, session: Session = Depends(db_session),
                         cache: NameCache = Depends(name_cache)):
    items, total = services.query_overview(
        _workspace(session, cache), action=body.action, search=body.search,
        pipeline=body.pipeline, area=body.areas, sort_by=body.sort_by, sort_dir=body.sort_dir,
        page=body.page, per_page=body.per_page,
    )
    return {"items": items, "total": total}


@app.get("/api/overview/{key}", response_model=OverviewDetail,
         tags=["Overview"], summary="Get one reconciled item with its records")
async def get_overview_item(key: str, session: Session = Depends(db_session),
                            cache: NameCache = Depends(name_cache)):
    row = _workspace(session, cache).row(key)
    if row is None:
        raise HTTPException(404, f"Item {key} not found")
    return services.overview_detail(row)


# ---------------------------------------------------------------------------
# Routes: Compliance
# ---------------------------------------------------------------------------


@app.get("/api/compliance", response_model=list[ComplianceGroupOut],
         tags=["Compliance"], summary="Risk and ID records grouped per instruction")
async def list_compliance(
    instruction_ref: str | None = Query(None, description="Restrict to one instruction reference"),
    session: Session = Depends(db_session),
    cache: NameCache = Depends(name_cache),
):
    return services.query_compliance(_workspace(session, cache), instruction_ref)


# ---------------------------------------------------------------------------
# Routes: Names
# ---------------------------------------------------------------------------


@app.get("/api/names", tags=["Names"], summary="Export the name cache as (prospect_id, name) pairs")
async def export_names(cache: NameCache = Depends(name_cache)):
    return [[prospect_id, parts] for prospect_id, parts in cache.dump()]


@app.get("/api/names/{prospect_id}", response_model=NameOut,
         tags=["Names"], summary="Resolve a prospect id to a display name")
async def resolve_name(
    prospect_id: str,
    email: str = Query("", description="Lead email used as the last fallback"),
    session: Session = Depends(db_session),
    cache: NameCache = Depends(name_cache),
):
    name = _workspace(session, cache).resolver.resolve(prospect_id, email)
    return {"prospect_id": prospect_id, **name.as_dict()}


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/stats", response_model=StatsOut,
         tags=["Stats"], summary="Get aggregate statistics and breakdowns")
async def get_stats(session: Session = Depends(db_session), cache: NameCache = Depends(name_cache)):
    return services.compute_stats(_workspace(session, cache).rows)


# ---------------------------------------------------------------------------
# Routes: Reset
# ---------------------------------------------------------------------------


@app.delete("/api/reset", tags=["Admin"], summary="Delete all snapshots and cached names")
async def reset_db(session: Session = Depends(db_session), cache: NameCache = Depends(name_cache)):
    services.clear_snapshots(session)
    session.commit()
    cache.clear()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    host = os.environ.get("INTAKE_HOST", "127.0.0.1")
    port = int(os.environ.get("INTAKE_PORT", "8001"))
    uvicorn.run("intake.app:app", host=host, port=port, reload=True)


if __name__ == "__main__":
    main()
