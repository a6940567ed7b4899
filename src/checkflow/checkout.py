from __future__ import annotations
from datetime import datetime
from typing import Any, Callable, Dict, Optional
import logging

from inventory.lifecycle import transition
from observability import metrics
from observability.logging import structured_log
from state.errors import ServiceError, business_rule, not_found, validate_input
from state.models import (
    Activity,
    ActivityKind,
    ActivityMaterial,
    Disposition,
    MaterialStatus,
    _now,
    new_id,
)
from state.repository import Store, Transaction
from volunteers.sessions import close_session, is_checked_in
from .schemas import CheckoutRequest

COLLECTIONS = ("volunteers", "materials", "activities")

DISPOSITION_STATUS: Dict[Disposition, MaterialStatus] = {
    Disposition.RETURNED: MaterialStatus.AVAILABLE,
    Disposition.DAMAGED: MaterialStatus.MAINTENANCE,
    Disposition.LOST: MaterialStatus.LOST,
}

_DISPOSITION_VALUES = {d.value for d in Disposition}

logger = logging.getLogger("checkflow.checkout")


class CheckoutService:
    """Closes a volunteer session, settling every borrowed material in one commit."""

    def __init__(self, store: Store, clock: Callable[[], datetime] = _now):
        self.store = store
        self.clock = clock

    async def process(self, volunteer_id: str, dispositions: Dict[str, Any], notes: Optional[str] = None) -> str:
        req = validate_input(
            CheckoutRequest,
            {"volunteer_id": volunteer_id, "dispositions": dispositions, "notes": notes},
        )
        ended_at = self.clock()
        activity_id = new_id()
        logger.info("Processing check-out for volunteer %s", req.volunteer_id)

        async def _body(txn: Transaction) -> Activity:
            volunteer = await txn.get("volunteers", req.volunteer_id)
            if volunteer is None:
                raise not_found("volunteer", req.volunteer_id)
            if not is_checked_in(volunteer):
                raise business_rule(
                    "not_checked_in",
                    f"volunteer '{volunteer.name}' has no active check-in",
                    volunteer_id=volunteer.id,
                )
            session = volunteer.active_session

            expected = set(session.material_ids)
            given = set(req.dispositions)
            if expected != given:
                raise business_rule(
                    "incomplete_disposition",
                    "a disposition is required for exactly the materials of the check-in",
                    missing=sorted(expected - given),
                    unexpected=sorted(given - expected),
                )
            invalid = {
                mid: v for mid, v in req.dispositions.items() if not isinstance(v, str) or v not in _DISPOSITION_VALUES
            }
            if invalid:
                raise business_rule(
                    "invalid_disposition",
                    f"disposition must be one of {', '.join(sorted(_DISPOSITION_VALUES))}",
                    invalid=invalid,
                )

            checked_out, minutes = close_session(volunteer, ended_at)
            items = []
            for mid in session.material_ids:
                material = await txn.get("materials", mid)
                if material is None:
                    raise not_found("material", mid)
                disposition = Disposition(req.dispositions[mid])
                target = DISPOSITION_STATUS[disposition]
                if material.status == MaterialStatus.LOANED and material.loaned_to != volunteer.id:
                    raise business_rule(
                        "material_held_elsewhere",
                        f"material '{material.name}' is now loaned to another volunteer",
                        material_id=mid,
                        loaned_to=material.loaned_to,
                    )
                if material.status != target:
                    txn.put("materials", transition(material, target, at=ended_at))
                items.append(ActivityMaterial(material_id=mid, material_name=material.name, disposition=disposition))

            activity = Activity(
                id=activity_id,
                volunteer_id=volunteer.id,
                volunteer_name=volunteer.name,
                kind=ActivityKind.CHECKOUT,
                timestamp=ended_at,
                materials=items,
                notes=req.notes,
                duration_minutes=minutes,
                checkin_activity_id=session.activity_id,
            )
            txn.put("activities", activity)
            txn.put("volunteers", checked_out)
            return activity

        try:
            activity = await self.store.run_transaction(COLLECTIONS, _body)
        except ServiceError as err:
            metrics.inc("checkout.rejected")
            structured_log("checkout_rejected", activity_id, {"volunteer_id": req.volunteer_id, "error": err.to_dict()})
            raise
        metrics.inc("checkout.committed")
        structured_log(
            "checkout_committed",
            activity.id,
            {
                "volunteer_id": activity.volunteer_id,
                "duration_minutes": activity.duration_minutes,
                "dispositions": {m.material_id: m.disposition.value for m in activity.materials},
            },
        )
        return activity.id
