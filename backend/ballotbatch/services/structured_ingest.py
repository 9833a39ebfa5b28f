"""Structured payload ingestion — turns aggregated election JSON into Election/Candidate rows."""

import logging
import re
import unicodedata
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy.orm import Session

from ballotbatch.models.election import Candidate, Election, ElectionLink
from ballotbatch.schemas.structured import IngestResult, StructuredCandidate, StructuredInput

logger = logging.getLogger(__name__)

_DATE_MDY = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_DIGITS = re.compile(r"\d+")
_ELECTION_TYPES = {"LOCAL", "STATE", "UNIVERSITY", "NATIONAL"}


class IngestError(Exception):
    """Raised when the structured payload cannot be written."""


def clean_optional(value: str | None) -> str | None:
    """Trim *value*; blank and ``N/A`` become None."""
    if value is None:
        return None
    s = str(value).strip()
    if not s or s.upper() == "N/A":
        return None
    return s


def parse_date_mdy(value: str) -> date | None:
    m = _DATE_MDY.match((value or "").strip())
    if not m:
        return None
    try:
        return date(int(m.group(3)), int(m.group(1)), int(m.group(2)))
    except ValueError:
        return None


def parse_seats(value: str | int | None) -> int | None:
    if value is None:
        return None
    m = _DIGITS.search(str(value))
    return int(m.group(0)) if m else None


def coerce_type(value: str | None) -> str:
    v = (value or "").upper()
    return v if v in _ELECTION_TYPES else "LOCAL"


def slugify(name: str) -> str:
    nfkd = unicodedata.normalize("NFKD", name)
    ascii_name = "".join(c for c in nfkd if not unicodedata.combining(c))
    slug = re.sub(r"[^a-z0-9]+", "-", ascii_name.lower()).strip("-")
    return slug or "candidate"


class StructuredIngestService:
    """Create elections and upsert candidates from a structured payload.

    The whole payload is written in one transaction: any failure rolls back
    every record created by this call.
    """

    def __init__(self, db: Session, today: date | None = None) -> None:
        self._db = db
        self._today = today

    def ingest(self, payload: dict[str, Any], hidden: bool, uploaded_by: str) -> list[IngestResult]:
        data = StructuredInput.model_validate(payload)
        today = self._today or datetime.now(tz=UTC).date()
        results: list[IngestResult] = []
        try:
            for item in data.elections:
                info = item.election
                election_date = parse_date_mdy(info.date)
                if election_date is None:
                    raise IngestError(f"Invalid date for election '{info.title}': '{info.date}'")
                position = info.title or "Election"
                election = Election(
                    position=position,
                    election_date=election_date,
                    active=election_date >= today,
                    city=info.city,
                    state=info.state,
                    description=info.description,
                    positions=parse_seats(info.number_of_seats) or 1,
                    type=coerce_type(info.type),
                    hidden=hidden,
                    uploaded_by=uploaded_by,
                )
                self._db.add(election)
                self._db.flush()

                slugs: list[str] = []
                emails: list[str | None] = []
                for c in item.candidates:
                    candidate = self._upsert_candidate(c, hidden, uploaded_by)
                    slugs.append(candidate.slug)
                    emails.append(candidate.email)
                    self._link(candidate, election, c)

                results.append(
                    IngestResult(
                        election_id=election.id,
                        position=position,
                        city=election.city,
                        state=election.state,
                        hidden=election.hidden,
                        candidate_slugs=slugs,
                        candidate_emails=emails,
                    )
                )
            self._db.commit()
        except Exception:
            self._db.rollback()
            raise
        logger.info("ingested %d election(s) for %s", len(results), uploaded_by)
        return results

    def _unique_slug(self, name: str) -> str:
        base = slugify(name)
        slug = base
        suffix = 2
        while self._db.query(Candidate).filter(Candidate.slug == slug).first() is not None:
            slug = f"{base}-{suffix}"
            suffix += 1
        return slug

    def _upsert_candidate(self, c: StructuredCandidate, hidden: bool, uploaded_by: str) -> Candidate:
        name = (c.name or "").strip() or "Unnamed"
        requested = (c.slug or "").strip()
        slug = requested or self._unique_slug(name)

        candidate = self._db.query(Candidate).filter(Candidate.slug == slug).first()
        if candidate is None:
            candidate = Candidate(name=name, slug=slug)
            self._db.add(candidate)
        candidate.current_role = c.currentRole
        candidate.website = clean_optional(c.campaign_website_url)
        candidate.linkedin = clean_optional(c.linkedin_url)
        candidate.bio = c.bio or ""
        candidate.current_city = c.home_city
        candidate.current_state = c.hometown_state
        candidate.status = "APPROVED"
        candidate.verified = False
        candidate.email = clean_optional(c.email)
        candidate.hidden = hidden
        candidate.uploaded_by = uploaded_by
        self._db.flush()
        return candidate

    def _link(self, candidate: Candidate, election: Election, c: StructuredCandidate) -> None:
        existing = (
            self._db.query(ElectionLink)
            .filter(ElectionLink.candidate_id == candidate.id, ElectionLink.election_id == election.id)
            .first()
        )
        if existing is not None:
            return
        self._db.add(
            ElectionLink(
                candidate_id=candidate.id,
                election_id=election.id,
                party=c.party or "",
                sources=c.sources or [],
                policies=c.key_policies or [],
                additional_notes=c.additional_notes,
            )
        )
        self._db.flush()
