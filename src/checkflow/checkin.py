from __future__ import annotations
from datetime import datetime
from typing import Callable, List, Optional
import logging

from inventory.lifecycle import transition
from observability import metrics
from observability.logging import structured_log
from state.errors import ServiceError, business_rule, not_found, validate_input
from state.models import (
    Activity,
    ActivityKind,
    ActivityMaterial,
    MaterialStatus,
    _now,
    new_id,
)
from state.repository import Store, Transaction
from volunteers.sessions import open_session
from .schemas import CheckinRequest

COLLECTIONS = ("volunteers", "materials", "activities")

logger = logging.getLogger("checkflow.checkin")


class CheckinService:
    """Opens a volunteer session and loans the selected materials in one commit."""

    def __init__(self, store: Store, clock: Callable[[], datetime] = _now):
        self.store = store
        self.clock = clock

    async def process(self, volunteer_id: str, material_ids: List[str], notes: Optional[str] = None) -> str:
        req = validate_input(
            CheckinRequest,
            {"volunteer_id": volunteer_id, "material_ids": material_ids, "notes": notes},
        )
        timestamp = self.clock()
        activity_id = new_id()
        logger.info("Processing check-in for volunteer %s (%d materials)", req.volunteer_id, len(req.material_ids))

        async def _body(txn: Transaction) -> Activity:
            volunteer = await txn.get("volunteers", req.volunteer_id)
            if volunteer is None:
                raise not_found("volunteer", req.volunteer_id)
            # raises already_checked_in before anything about materials is looked at
            checked_in = open_session(volunteer, activity_id, timestamp, req.material_ids)
            if not req.material_ids:
                raise business_rule("no_materials_selected", "select at least one material to check in")

            materials = [await txn.get("materials", mid) for mid in req.material_ids]
            unavailable = [
                (mid, m) for mid, m in zip(req.material_ids, materials) if m is None or not m.is_available()
            ]
            if unavailable:
                names = [m.name if m is not None else f"unknown id {mid}" for mid, m in unavailable]
                raise business_rule(
                    "materials_unavailable",
                    f"materials not available: {', '.join(names)}",
                    material_ids=[mid for mid, _ in unavailable],
                    names=names,
                )

            activity = Activity(
                id=activity_id,
                volunteer_id=volunteer.id,
                volunteer_name=volunteer.name,
                kind=ActivityKind.CHECKIN,
                timestamp=timestamp,
                materials=[
                    ActivityMaterial(material_id=m.id, material_name=m.name, status_at_event=MaterialStatus.LOANED)
                    for m in materials
                ],
                notes=req.notes,
            )
            txn.put("activities", activity)
            txn.put("volunteers", checked_in)
            for material in materials:
                txn.put("materials", transition(material, MaterialStatus.LOANED, loaned_to=volunteer.id, at=timestamp))
            return activity

        try:
            activity = await self.store.run_transaction(COLLECTIONS, _body)
        except ServiceError as err:
            metrics.inc("checkin.rejected")
            structured_log("checkin_rejected", activity_id, {"volunteer_id": req.volunteer_id, "error": err.to_dict()})
            raise
        metrics.inc("checkin.committed")
        structured_log(
            "checkin_committed",
            activity.id,
            {
                "volunteer_id": activity.volunteer_id,
                "volunteer_name": activity.volunteer_name,
                "material_ids": req.material_ids,
            },
        )
        return activity.id
