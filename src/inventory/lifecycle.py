"""Material status state machine.

Every status change of a material goes through ``transition`` so that the
``loaned`` status and the ``loaned_to`` holder always travel together.
"""
from __future__ import annotations
from dataclasses import replace
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from state.errors import business_rule, invalid_transition, not_found
from state.models import Material, MaterialStats, MaterialStatus, _now
from state.repository import Store, Transaction

S = MaterialStatus

TRANSITIONS: Dict[MaterialStatus, FrozenSet[MaterialStatus]] = {
    S.AVAILABLE: frozenset({S.LOANED, S.MAINTENANCE}),
    S.LOANED: frozenset({S.AVAILABLE, S.LOST, S.MAINTENANCE}),
    S.MAINTENANCE: frozenset({S.AVAILABLE}),
    S.LOST: frozenset({S.AVAILABLE, S.MAINTENANCE}),
}


def allowed_targets(from_status: MaterialStatus) -> FrozenSet[MaterialStatus]:
    return TRANSITIONS.get(MaterialStatus(from_status), frozenset())


def can_transition(from_status: MaterialStatus, to_status: MaterialStatus) -> bool:
    return MaterialStatus(to_status) in allowed_targets(from_status)


def transition(
    material: Material,
    to_status: MaterialStatus,
    *,
    loaned_to: Optional[str] = None,
    at: Optional[datetime] = None,
) -> Material:
    """Return a copy of ``material`` moved to ``to_status``.

    Raises a business-rule error for transitions outside ``TRANSITIONS`` and
    for loans without a holder. The input object is left untouched.
    """
    to_status = MaterialStatus(to_status)
    if not can_transition(material.status, to_status):
        raise invalid_transition(material.status.value, to_status.value)

    if to_status == S.LOANED:
        if not loaned_to:
            raise business_rule(
                "missing_loan_target",
                f"material '{material.name}' cannot be loaned without a volunteer",
                material_id=material.id,
            )
        when = at or _now()
        stats = MaterialStats(total_loans=material.stats.total_loans + 1, last_loan_at=when)
        return replace(material, status=to_status, loaned_to=loaned_to, loaned_at=when, stats=stats)

    return replace(
        material,
        status=to_status,
        loaned_to=None,
        loaned_at=None,
        stats=replace(material.stats),
    )


async def apply_in(
    txn: Transaction,
    material_id: str,
    to_status: MaterialStatus,
    *,
    loaned_to: Optional[str] = None,
    at: Optional[datetime] = None,
) -> Material:
    material = await txn.get("materials", material_id)
    if material is None:
        raise not_found("material", material_id)
    updated = transition(material, to_status, loaned_to=loaned_to, at=at)
    txn.put("materials", updated)
    return updated


async def update_status(
    store: Store,
    material_id: str,
    to_status: MaterialStatus,
    *,
    loaned_to: Optional[str] = None,
) -> Material:
    """Administrative status change committed on its own."""

    async def _body(txn: Transaction) -> Material:
        return await apply_in(txn, material_id, to_status, loaned_to=loaned_to)

    return await store.run_transaction(["materials"], _body)
