from __future__ import annotations
from dataclasses import replace
from typing import Any, Dict, List, Optional
import logging
import re
import unicodedata

from pydantic import BaseModel, Field, field_validator

from observability.logging import sanitize
from state.errors import not_found, validate_input
from state.models import NOTES_MAX, Ministry, Volunteer, new_id
from state.repository import Store, Transaction

NAME_PATTERN = re.compile(r"^[a-zA-ZÀ-ÿ\s]+$")
PHONE_PATTERN = re.compile(r"^\d{10,15}$")
SEARCH_MIN_CHARS = 2
SEARCH_LIMIT = 10


def _blank_to_none(v):
    if isinstance(v, str):
        v = v.strip()
        return v or None
    return v


def _check_name(v: Optional[str]) -> Optional[str]:
    if v is not None and not NAME_PATTERN.match(v):
        raise ValueError("name may only contain letters and spaces")
    return v


def _check_phone(v: Optional[str]) -> Optional[str]:
    if v is not None and not PHONE_PATTERN.match(v):
        raise ValueError("phone must have 10 to 15 digits")
    return v


class VolunteerCreateArgs(BaseModel):
    name: str = Field(min_length=2, max_length=100)
    phone: Optional[str] = None
    ministry: Ministry
    notes: Optional[str] = Field(default=None, max_length=NOTES_MAX)

    @field_validator("name", "phone", mode="before")
    @classmethod
    def strip_blank(cls, v):
        return _blank_to_none(v)

    @field_validator("name")
    @classmethod
    def name_letters(cls, v):
        return _check_name(v)

    @field_validator("phone")
    @classmethod
    def phone_digits(cls, v):
        return _check_phone(v)


class VolunteerUpdateArgs(BaseModel):
    # session and stats are owned by check-in/check-out
    model_config = {"extra": "forbid"}

    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    phone: Optional[str] = None
    ministry: Optional[Ministry] = None
    active: Optional[bool] = None
    notes: Optional[str] = Field(default=None, max_length=NOTES_MAX)

    @field_validator("name", "phone", mode="before")
    @classmethod
    def strip_blank(cls, v):
        return _blank_to_none(v)

    @field_validator("name")
    @classmethod
    def name_letters(cls, v):
        return _check_name(v)

    @field_validator("phone")
    @classmethod
    def phone_digits(cls, v):
        return _check_phone(v)


def _fold(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text.lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def fuzzy_match(text: str, term: str) -> bool:
    """True when the letters of ``term`` appear in order inside ``text``."""
    if not text or not term:
        return False
    haystack = iter(_fold(text))
    return all(ch in haystack for ch in _fold(term))


class VolunteerService:
    def __init__(self, store: Store):
        self.store = store
        self.logger = logging.getLogger("volunteers.service")

    async def create(self, data: Dict[str, Any]) -> Volunteer:
        self.logger.info("Creating volunteer %s", sanitize(data))
        args = validate_input(VolunteerCreateArgs, data)
        volunteer = Volunteer(
            id=new_id(),
            name=args.name,
            phone=args.phone,
            ministry=args.ministry,
            notes=args.notes,
        )
        await self.store.put("volunteers", volunteer)
        self.logger.info("Volunteer %s created", volunteer.id)
        return volunteer

    async def get(self, volunteer_id: str) -> Optional[Volunteer]:
        return await self.store.get("volunteers", volunteer_id)

    async def require(self, volunteer_id: str) -> Volunteer:
        volunteer = await self.get(volunteer_id)
        if volunteer is None:
            raise not_found("volunteer", volunteer_id)
        return volunteer

    async def search(self, term: str) -> List[Volunteer]:
        term = (term or "").strip()
        if len(term) < SEARCH_MIN_CHARS:
            return []
        volunteers = await self.store.get_all("volunteers")
        found = sorted((v for v in volunteers if fuzzy_match(v.name, term)), key=lambda v: (_fold(v.name), v.id))
        return found[:SEARCH_LIMIT]

    async def list_active(self) -> List[Volunteer]:
        """Volunteers currently checked in, earliest check-in first."""
        volunteers = await self.store.get_all("volunteers")
        active = [v for v in volunteers if v.active_session is not None]
        active.sort(key=lambda v: (v.active_session.started_at, v.id))
        return active

    async def list_by_ministry(self, ministry: Ministry) -> List[Volunteer]:
        volunteers = await self.store.find_by("volunteers", "ministry", Ministry(ministry))
        return sorted(volunteers, key=lambda v: _fold(v.name))

    async def update(self, volunteer_id: str, changes: Dict[str, Any]) -> Volunteer:
        self.logger.info("Updating volunteer %s with %s", volunteer_id, sanitize(changes))
        args = validate_input(VolunteerUpdateArgs, changes)
        fields = args.model_dump(exclude_unset=True)
        # name and ministry are required on the entity
        fields = {k: v for k, v in fields.items() if v is not None or k in ("phone", "notes")}

        async def _body(txn: Transaction) -> Volunteer:
            volunteer = await txn.get("volunteers", volunteer_id)
            if volunteer is None:
                raise not_found("volunteer", volunteer_id)
            updated = replace(volunteer, **fields)
            txn.put("volunteers", updated)
            return updated

        return await self.store.run_transaction(["volunteers"], _body)
