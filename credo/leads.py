"""Lead enrichment: pull a person from Leadspicker and keep a local copy."""
from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from credo.config import Settings, get_settings
from credo.db import SessionScope, session_scope as default_session_scope
from credo.models import Person

log = logging.getLogger(__name__)

_TIMEOUT = 30.0


class LeadsError(Exception):
    """Leadspicker is not configured or the request failed."""


class ContactValue(BaseModel):
    value: Any = None


class LeadspickerPerson(BaseModel):
    """The subset of a Leadspicker person record that is stored locally."""
    id: int
    contact_data: dict[str, ContactValue | None] | None = None

    def contact_value(self, key: str) -> str | None:
        entry = (self.contact_data or {}).get(key)
        if entry is None or entry.value in (None, ""):
            return None
        return str(entry.value).strip() or None


# contact_data key -> Person column
CONTACT_FIELDS = {
    "full_name": "full_name",
    "first_name": "first_name",
    "last_name": "last_name",
    "email": "email",
    "position": "position",
    "linkedin": "linkedin_url",
    "company_name": "company_name",
    "company_linkedin": "company_linkedin_url",
    "company_website": "company_website_url",
    "linkedin_company_description": "company_description",
    "website_text_summary": "website_text_summary",
    "past_experiences": "past_experiences",
    "education_summary": "education_summary",
    "country": "country",
    "source_robot": "source_robot",
}

INT_FIELDS = {
    "followers_count": "followers_count",
    "company_employee_count": "company_employee_count",
}


def _parse_int(value: str | None) -> int | None:
    """Leading integer of *value* ("1,200+" -> 1200); None when there is none."""
    if not value:
        return None
    digits = ""
    for ch in value.replace(",", "").strip():
        if ch.isdigit():
            digits += ch
        elif digits:
            break
    return int(digits) if digits else None


async def fetch_person_details(
    person_id: int,
    api_key: str,
    base_url: str,
    client: httpx.AsyncClient | None = None,
) -> LeadspickerPerson:
    """GET one person from the Leadspicker API.

    Raises:
        LeadsError: missing API key, HTTP failure or a payload that does not validate.
    """
    if not api_key:
        raise LeadsError("LEADSPICKER_API_KEY is not set")

    url = f"{base_url.rstrip('/')}/persons/{person_id}"
    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {api_key}",
        "X-API-Key": api_key,
    }
    log.info("Fetching Leadspicker person %s", person_id)
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=httpx.Timeout(_TIMEOUT)) as own_client:
                resp = await own_client.get(url, headers=headers)
        else:
            resp = await client.get(url, headers=headers)
    except httpx.HTTPError as exc:
        raise LeadsError(f"Leadspicker request failed: {exc}") from exc

    if resp.status_code >= 400:
        raise LeadsError(f"Leadspicker returned {resp.status_code}: {resp.text[:300]}")
    try:
        return LeadspickerPerson.model_validate(resp.json())
    except (ValueError, ValidationError) as exc:
        raise LeadsError(f"Unexpected Leadspicker payload for person {person_id}: {exc}") from exc


def save_person(session: Session, person: LeadspickerPerson) -> Person:
    """Insert or update the local Person row for *person*. Caller must commit."""
    row = session.execute(
        select(Person).where(Person.leadspicker_id == person.id)
    ).scalars().first()
    if row is None:
        row = Person(leadspicker_id=person.id)
        session.add(row)

    for key, column in CONTACT_FIELDS.items():
        setattr(row, column, person.contact_value(key))
    for key, column in INT_FIELDS.items():
        setattr(row, column, _parse_int(person.contact_value(key)))
    session.flush()
    return row


def _step(name: str, status: str) -> dict[str, str]:
    return {"step": name, "status": status, "timestamp": datetime.now(UTC).isoformat()}


async def add_person(
    person_id: int,
    settings: Settings | None = None,
    session_scope: SessionScope = default_session_scope,
    client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Fetch a person and store it; return a step report. Never raises."""
    settings = settings or get_settings()
    steps: list[dict[str, str]] = []

    try:
        person = await fetch_person_details(
            person_id, settings.leadspicker_api_key, settings.leadspicker_base_url, client=client,
        )
    except LeadsError as exc:
        log.warning("Could not fetch person %s: %s", person_id, exc)
        steps.append(_step("fetch_person_details", "failed"))
        return {"success": False, "person_id": person_id, "steps": steps, "error": str(exc)}
    steps.append(_step("fetch_person_details", "completed"))

    try:
        with session_scope() as session:
            row = save_person(session, person)
            session.commit()
            saved = {"id": row.id, "leadspicker_id": row.leadspicker_id,
                     "full_name": row.full_name, "company_name": row.company_name}
    except SQLAlchemyError as exc:
        log.warning("Could not save person %s: %s", person_id, exc)
        steps.append(_step("save_person", "failed"))
        return {"success": False, "person_id": person_id, "steps": steps, "error": str(exc)}
    steps.append(_step("save_person", "completed"))

    log.info("Stored person %s (%s)", person_id, saved["full_name"] or "no name")
    return {"success": True, "person_id": person_id, "steps": steps, "person": saved}
