from __future__ import annotations
from dataclasses import replace
from typing import Any, Dict, List, Optional
import logging

from pydantic import BaseModel, Field, field_validator

from state.errors import business_rule, not_found, validate_input
from state.models import NOTES_MAX, Material, MaterialStatus, MaterialType, new_id
from state.repository import Store, Transaction
from . import lifecycle


def _blank_to_none(v):
    if isinstance(v, str):
        v = v.strip()
        return v or None
    return v


class MaterialCreateArgs(BaseModel):
    name: str = Field(min_length=2, max_length=50)
    code: Optional[str] = Field(default=None, max_length=20)
    type: MaterialType
    # intake may register items that are already broken or missing
    status: MaterialStatus = MaterialStatus.AVAILABLE
    notes: Optional[str] = Field(default=None, max_length=NOTES_MAX)

    @field_validator("name", "code", mode="before")
    @classmethod
    def strip_blank(cls, v):
        return _blank_to_none(v)

    @field_validator("status")
    @classmethod
    def not_loaned(cls, v: MaterialStatus) -> MaterialStatus:
        if v == MaterialStatus.LOANED:
            raise ValueError("materials can only be loaned through check-in")
        return v


class MaterialUpdateArgs(BaseModel):
    model_config = {"extra": "forbid"}

    name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    code: Optional[str] = Field(default=None, max_length=20)
    type: Optional[MaterialType] = None
    notes: Optional[str] = Field(default=None, max_length=NOTES_MAX)

    @field_validator("name", "code", mode="before")
    @classmethod
    def strip_blank(cls, v):
        return _blank_to_none(v)


class StatusChangeArgs(BaseModel):
    status: MaterialStatus


def _ensure_unique(existing: List[Material], name: Optional[str], code: Optional[str], skip_id: Optional[str] = None):
    for other in existing:
        if other.id == skip_id:
            continue
        if name and other.name.lower() == name.lower():
            raise business_rule("duplicate_name", f"material name '{name}' already exists", material_id=other.id)
        if code and other.code and other.code.lower() == code.lower():
            raise business_rule("duplicate_code", f"material code '{code}' already exists", material_id=other.id)


class MaterialService:
    def __init__(self, store: Store):
        self.store = store
        self.logger = logging.getLogger("inventory.materials")

    async def create(self, data: Dict[str, Any]) -> Material:
        self.logger.info("Creating material %s", data)
        args = validate_input(MaterialCreateArgs, data)
        material = Material(
            id=new_id(),
            name=args.name,
            code=args.code,
            type=args.type,
            status=args.status,
            notes=args.notes,
        )

        async def _body(txn: Transaction) -> Material:
            # uniqueness is checked under the collection lock
            _ensure_unique(await txn.get_all("materials"), material.name, material.code)
            txn.put("materials", material)
            return material

        created = await self.store.run_transaction(["materials"], _body)
        self.logger.info("Material %s created", created.id)
        return created

    async def get(self, material_id: str) -> Optional[Material]:
        return await self.store.get("materials", material_id)

    async def list_available(self, type: Optional[MaterialType] = None) -> List[Material]:
        available = await self.store.find_by("materials", "status", MaterialStatus.AVAILABLE)
        if type is not None:
            available = [m for m in available if m.type == MaterialType(type)]
        return sorted(available, key=lambda m: (m.name.lower(), m.id))

    async def list_loaned_to(self, volunteer_id: str) -> List[Material]:
        loaned = await self.store.find_by("materials", "loaned_to", volunteer_id)
        return sorted(loaned, key=lambda m: (m.name.lower(), m.id))

    async def update(self, material_id: str, changes: Dict[str, Any]) -> Material:
        self.logger.info("Updating material %s with %s", material_id, changes)
        args = validate_input(MaterialUpdateArgs, changes)
        fields = args.model_dump(exclude_unset=True)
        fields = {k: v for k, v in fields.items() if v is not None or k in ("code", "notes")}

        async def _body(txn: Transaction) -> Material:
            material = await txn.get("materials", material_id)
            if material is None:
                raise not_found("material", material_id)
            _ensure_unique(await txn.get_all("materials"), fields.get("name"), fields.get("code"), skip_id=material_id)
            updated = replace(material, **fields)
            txn.put("materials", updated)
            return updated

        return await self.store.run_transaction(["materials"], _body)

    async def update_status(self, material_id: str, status: MaterialStatus) -> Material:
        self.logger.info("Changing status of material %s to %s", material_id, status)
        args = validate_input(StatusChangeArgs, {"status": status})
        if args.status == MaterialStatus.LOANED:
            # a loan without a session would never be settled by check-out
            raise business_rule("loan_requires_checkin", "materials are loaned through check-in only")
        return await lifecycle.update_status(self.store, material_id, args.status)

    async def delete(self, material_id: str):
        async def _body(txn: Transaction):
            material = await txn.get("materials", material_id)
            if material is None:
                raise not_found("material", material_id)
            if material.status == MaterialStatus.LOANED:
                raise business_rule(
                    "material_on_loan",
                    f"material '{material.name}' is on loan and cannot be removed",
                    loaned_to=material.loaned_to,
                )
            txn.delete("materials", material_id)

        await self.store.run_transaction(["materials"], _body)
        self.logger.info("Material %s deleted", material_id)
