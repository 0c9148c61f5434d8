"""Tests for the MCP tool functions, called directly against an in-memory database."""
from __future__ import annotations

import json

import pytest

from intake import mcp_server, services
from intake.db import init_db, session_scope
from intake.identity import NameCache


@pytest.fixture()
def loaded(monkeypatch):
    init_db(":memory:")
    monkeypatch.setattr(mcp_server, "_cache", NameCache())
    with session_scope() as session:
        services.save_snapshot(session, {"prospects": [
            {"prospectId": 1, "instructions": [{"InstructionRef": "HLX-1", "Stage": "initialised",
                                                "Email": "amy.ash@example.com"}]},
            {"prospectId": 2, "deals": [{"DealId": 5, "LeadClientEmail": "bo@example.com"}]},
        ]})
        session.commit()


def test_server_registered():
    assert mcp_server.mcp is not None


def test_overview_resource_lists_stages():
    data = json.loads(mcp_server.intake_overview())
    assert set(data["stages"]) == {"id", "payment", "risk", "matter", "docs"}


def test_list_overview(loaded):
    items = mcp_server.list_overview(limit=10)
    assert [i["key"] for i in items] == ["HLX-1", "deal-5"]


def test_list_overview_pipeline(loaded):
    items = mcp_server.list_overview(pipeline="id:pending")
    assert [i["key"] for i in items] == ["HLX-1"]


def test_get_overview_item(loaded):
    assert mcp_server.get_overview_item("HLX-1")["next_action"] == "Verify ID"
    assert "error" in mcp_server.get_overview_item("HLX-404")


def test_resolve_name(loaded):
    assert mcp_server.resolve_name("1") == {"prospect_id": "1", "firstName": "Amy", "lastName": "Ash"}


def test_stats_and_compliance(loaded):
    assert mcp_server.get_stats()["pitches"] == 1
    assert mcp_server.list_compliance() == []
