"""Identity resolver: best-effort display names for a prospect identifier.

Lookup chain (first non-empty hit wins):

1. name cache, keyed by the normalised prospect id
2. enquiry index, when an enquiry record set was supplied
3. instructions and deals carrying the same prospect id
4. the lead client's email local-part (``jane.doe@x`` -> Jane / Doe)

Only non-empty names are written back to the cache, so an unresolved id can
still be filled in by a later, richer snapshot.  ``resolve`` never raises.
"""
from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from intake.models import ResolvedName
from intake.records import Enquiry, Prospect

log = logging.getLogger(__name__)

_EMAIL_SPLIT_RE = re.compile(r"[._\-]+")
_DIGITS_RE = re.compile(r"\d+")


@dataclass(frozen=True)
class PartyName:
    first_name: str = ""
    last_name: str = ""

    def __bool__(self) -> bool:
        return bool(self.first_name or self.last_name)

    @property
    def full(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def as_dict(self) -> dict[str, str]:
        return {"firstName": self.first_name, "lastName": self.last_name}


EMPTY_NAME = PartyName()


def normalize_id(value: object) -> str:
    """Stringify a loosely-typed prospect id (``123``, ``"123"``, ``123.0``)."""
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip().lower()


def split_full_name(name: str) -> PartyName:
    parts = (name or "").split()
    if not parts:
        return EMPTY_NAME
    return PartyName(parts[0], " ".join(parts[1:]))


def name_from_email(email: str) -> PartyName:
    """Derive a name from an email local-part, stripping digits."""
    local = (email or "").split("@", 1)[0]
    tokens = [_DIGITS_RE.sub("", t) for t in _EMAIL_SPLIT_RE.split(local)]
    tokens = [t.capitalize() for t in tokens if t]
    if not tokens:
        return EMPTY_NAME
    return PartyName(tokens[0], " ".join(tokens[1:]))


# ---------------------------------------------------------------------------
# Caches
# ---------------------------------------------------------------------------


class NameCache:
    """In-memory name cache with a ``get``/``put`` interface.

    ``dump()`` serialises to an ordered list of
    ``(prospect_id, {"firstName": ..., "lastName": ...})`` pairs and ``load()``
    restores exactly that state.
    """

    def __init__(self, pairs: Iterable[tuple[str, dict[str, str]]] | None = None):
        self._names: dict[str, PartyName] = {}
        self._lock = threading.Lock()
        if pairs:
            self.load(pairs)

    def __len__(self) -> int:
        return len(self._names)

    def get(self, prospect_id: object) -> PartyName | None:
        key = normalize_id(prospect_id)
        if not key:
            return None
        return self._names.get(key)

    def put(self, prospect_id: object, name: PartyName) -> bool:
        """Store a non-empty name. Returns False when nothing was written."""
        key = normalize_id(prospect_id)
        if not key or not name:
            return False
        with self._lock:
            self._names[key] = name
            self._persist(key, name)
        return True

    def load(self, pairs: Iterable[tuple[str, dict[str, str]]]) -> None:
        with self._lock:
            self._names.clear()
            for prospect_id, parts in pairs:
                key = normalize_id(prospect_id)
                if not key or not isinstance(parts, dict):
                    continue
                self._names[key] = PartyName(
                    str(parts.get("firstName") or ""), str(parts.get("lastName") or ""),
                )

    def dump(self) -> list[tuple[str, dict[str, str]]]:
        with self._lock:
            return [(key, name.as_dict()) for key, name in self._names.items()]

    def clear(self) -> None:
        with self._lock:
            self._names.clear()

    def _persist(self, key: str, name: PartyName) -> None:
        """Hook for durable subclasses; called under the write lock."""


class SqlNameCache(NameCache):
    """Name cache loaded from and written through to the ``prospect_names`` table."""

    def __init__(self, session_factory: Callable[[], Session]):
        super().__init__()
        self._session_factory = session_factory
        self.reload()

    def reload(self) -> None:
        session = self._session_factory()
        try:
            stmt = select(ResolvedName).order_by(ResolvedName.position, ResolvedName.prospect_id)
            rows = session.execute(stmt).scalars().all()
            pairs = [(r.prospect_id, {"firstName": r.first_name, "lastName": r.last_name}) for r in rows]
        except SQLAlchemyError as exc:
            log.warning("Could not load name cache: %s", exc)
            pairs = []
        finally:
            session.close()
        self.load(pairs)

    def _persist(self, key: str, name: PartyName) -> None:
        session = self._session_factory()
        try:
            row = session.get(ResolvedName, key)
            if row is None:
                last = session.scalar(select(func.max(ResolvedName.position)))
                row = ResolvedName(prospect_id=key, position=(last or 0) + 1)
                session.add(row)
            row.first_name = name.first_name
            row.last_name = name.last_name
            row.resolved_at = datetime.now(UTC)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            log.warning("Name cache write failed for %s: %s", key, exc)
        finally:
            session.close()

    def clear(self) -> None:
        super().clear()
        session = self._session_factory()
        try:
            session.execute(delete(ResolvedName))
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            log.warning("Name cache clear failed: %s", exc)
        finally:
            session.close()


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


@dataclass
class _Candidate:
    first_name: str
    last_name: str
    combined: str
    email: str


def build_enquiry_index(enquiries: Iterable[Enquiry]) -> dict[str, PartyName]:
    index: dict[str, PartyName] = {}
    for enq in enquiries:
        key = normalize_id(enq.enquiry_id)
        name = PartyName(enq.first_name, enq.last_name)
        if key and name and key not in index:
            index[key] = name
    return index


def _candidates(prospects: Iterable[Prospect]) -> dict[str, list[_Candidate]]:
    out: dict[str, list[_Candidate]] = {}

    def add(prospect_id: str, first: str, last: str, combined: str, email: str) -> None:
        key = normalize_id(prospect_id)
        if key:
            out.setdefault(key, []).append(_Candidate(first, last, combined, email))

    for prospect in prospects:
        for inst in prospect.instructions:
            add(inst.prospect_id or prospect.prospect_id, inst.first_name, inst.last_name,
                inst.client_name, inst.email)
        for deal in prospect.deals:
            pid = deal.prospect_id or prospect.prospect_id
            if deal.instruction is not None:
                emb = deal.instruction
                add(emb.prospect_id or pid, emb.first_name, emb.last_name, emb.client_name, emb.email)
            add(pid, deal.first_name, deal.last_name, deal.client_name, deal.lead_email)
    return out


class IdentityResolver:
    """Resolve prospect ids to names through the cache/enquiry/record/email chain."""

    def __init__(
        self,
        cache: NameCache | None = None,
        enquiries: Iterable[Enquiry] | None = None,
        prospects: Iterable[Prospect] = (),
    ):
        self.cache = cache if cache is not None else NameCache()
        enquiries = list(enquiries) if enquiries is not None else None
        self._enquiry_index = build_enquiry_index(enquiries) if enquiries is not None else None
        self._enquiries_by_email = {
            e.email.lower(): e for e in reversed(enquiries or []) if e.email
        }
        self._candidates = _candidates(prospects)

    def resolve(self, prospect_id: object, lead_email: str = "") -> PartyName:
        key = normalize_id(prospect_id)

        if key:
            cached = self.cache.get(key)
            if cached:
                return cached

            if self._enquiry_index is not None:
                hit = self._enquiry_index.get(key)
                if hit:
                    self.cache.put(key, hit)
                    return hit

        fallback_email = lead_email
        for cand in self._candidates.get(key, []) if key else []:
            name = PartyName(cand.first_name, cand.last_name)
            if not name and cand.combined:
                name = split_full_name(cand.combined)
            if name:
                self.cache.put(key, name)
                return name
            fallback_email = fallback_email or cand.email

        name = name_from_email(fallback_email)
        if name and key:
            self.cache.put(key, name)
        return name

    def client_details(self, email: str) -> Enquiry | None:
        """Enquiry record for *email*, used to backfill client addresses."""
        return self._enquiries_by_email.get((email or "").strip().lower())
