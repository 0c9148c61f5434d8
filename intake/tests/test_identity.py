"""Tests for prospect name resolution and the name caches."""
from __future__ import annotations

from unittest.mock import patch

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from intake.identity import (
    IdentityResolver,
    NameCache,
    PartyName,
    SqlNameCache,
    name_from_email,
    normalize_id,
    split_full_name,
)
from intake.importer import load_enquiries, load_prospects
from intake.models import Base, ResolvedName


@pytest.fixture()
def session_factory():
    eng = create_engine(
        "sqlite:///:memory:", connect_args={"check_same_thread": False}, poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)


class TestHelpers:
    @pytest.mark.parametrize("raw,expected", [(123, "123"), ("123", "123"), (123.0, "123"), (" AB ", "ab"), (None, "")])
    def test_normalize_id(self, raw, expected):
        assert normalize_id(raw) == expected

    def test_email_local_part(self):
        assert name_from_email("jane.doe@example.com") == PartyName("Jane", "Doe")

    def test_email_digits_stripped(self):
        assert name_from_email("john_smith99@example.com") == PartyName("John", "Smith")

    def test_email_single_token(self):
        assert name_from_email("info@example.com") == PartyName("Info", "")

    def test_email_empty(self):
        assert not name_from_email("")
        assert not name_from_email("1234@example.com")

    def test_split_full_name(self):
        assert split_full_name("Mary Ann Jones") == PartyName("Mary", "Ann Jones")


class TestNameCache:
    def test_put_ignores_empty_names(self):
        cache = NameCache()
        assert not cache.put("1", PartyName())
        assert cache.get("1") is None

    def test_keys_normalised(self):
        cache = NameCache()
        cache.put(42, PartyName("A", "B"))
        assert cache.get("42") == PartyName("A", "B")
        assert cache.get(42.0) == PartyName("A", "B")

    def test_dump_load_round_trip(self):
        cache = NameCache()
        cache.put("2", PartyName("Bo", "Ek"))
        cache.put("1", PartyName("Al", ""))
        restored = NameCache(cache.dump())
        assert restored.dump() == cache.dump()
        assert restored.dump() == [("2", {"firstName": "Bo", "lastName": "Ek"}),
                                   ("1", {"firstName": "Al", "lastName": ""})]

    def test_clear(self):
        cache = NameCache([("1", {"firstName": "A", "lastName": "B"})])
        cache.clear()
        assert len(cache) == 0


class TestSqlNameCache:
    def test_write_through_and_reload(self, session_factory):
        cache = SqlNameCache(session_factory)
        cache.put("7", PartyName("Sam", "Lee"))
        reloaded = SqlNameCache(session_factory)
        assert reloaded.get("7") == PartyName("Sam", "Lee")

    def test_reload_keeps_first_write_order(self, session_factory):
        cache = SqlNameCache(session_factory)
        cache.put("1", PartyName("Amy", "Ash"))
        cache.put("2", PartyName("Bo", "Birch"))
        cache.put("1", PartyName("Amelia", "Ash"))
        reloaded = SqlNameCache(session_factory)
        assert [key for key, _ in reloaded.dump()] == ["1", "2"]
        assert reloaded.dump() == cache.dump()

    def test_clear_deletes_rows(self, session_factory):
        cache = SqlNameCache(session_factory)
        cache.put("7", PartyName("Sam", "Lee"))
        cache.clear()
        session = session_factory()
        try:
            assert session.execute(select(ResolvedName)).scalars().all() == []
        finally:
            session.close()

    def test_write_failure_keeps_memory_entry(self, session_factory):
        cache = SqlNameCache(session_factory)
        with patch("sqlalchemy.orm.Session.commit", side_effect=OperationalError("x", {}, Exception("locked"))):
            assert cache.put("8", PartyName("Kim", "Ng"))
        assert cache.get("8") == PartyName("Kim", "Ng")


class TestResolver:
    def test_email_fallback(self):
        resolver = IdentityResolver()
        assert resolver.resolve("P-404", "jane.doe@example.com").as_dict() == {
            "firstName": "Jane", "lastName": "Doe",
        }

    def test_cache_wins(self):
        cache = NameCache([("1", {"firstName": "Cached", "lastName": "Name"})])
        enquiries = load_enquiries({"enquiries": [{"ID": 1, "First_Name": "Enq", "Last_Name": "Name"}]})
        resolver = IdentityResolver(cache=cache, enquiries=enquiries)
        assert resolver.resolve(1).first_name == "Cached"

    def test_enquiry_index_then_cached(self):
        cache = NameCache()
        enquiries = load_enquiries({"enquiries": [{"ID": 5, "First_Name": "Jo", "Last_Name": "Bloggs"}]})
        resolver = IdentityResolver(cache=cache, enquiries=enquiries)
        assert resolver.resolve("5") == PartyName("Jo", "Bloggs")
        assert cache.get("5") == PartyName("Jo", "Bloggs")

    def test_instruction_match(self):
        prospects = load_prospects([{"prospectId": 3, "instructions": [
            {"InstructionRef": "HLX-3", "FirstName": "Ann", "LastName": "Lee"},
        ]}])
        assert IdentityResolver(prospects=prospects).resolve(3) == PartyName("Ann", "Lee")

    def test_combined_name_split(self):
        prospects = load_prospects([{"prospectId": 4, "deals": [{"DealId": 1, "ClientName": "Ben Roe"}]}])
        assert IdentityResolver(prospects=prospects).resolve("4") == PartyName("Ben", "Roe")

    def test_record_email_used_when_names_missing(self):
        prospects = load_prospects([{"prospectId": 6, "deals": [{"DealId": 1, "LeadClientEmail": "max.k@x.com"}]}])
        assert IdentityResolver(prospects=prospects).resolve("6") == PartyName("Max", "K")

    def test_unresolvable_is_empty_and_not_cached(self):
        cache = NameCache()
        resolver = IdentityResolver(cache=cache)
        assert resolver.resolve("9") == PartyName()
        assert len(cache) == 0

    def test_never_raises_on_odd_ids(self):
        resolver = IdentityResolver()
        assert resolver.resolve(None) == PartyName()
        assert resolver.resolve(True) == PartyName()

    def test_client_details_by_email(self):
        enquiries = load_enquiries([{"ID": 1, "Email": "A@x.com", "City": "Hove"}])
        resolver = IdentityResolver(enquiries=enquiries)
        assert resolver.client_details("a@X.com").address == {"City": "Hove"}
        assert resolver.client_details("nobody@x.com") is None
