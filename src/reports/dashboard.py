from __future__ import annotations
from typing import Any, Dict, List, Optional

from state.errors import not_found
from state.models import Activity, MaterialStatus
from state.repository import Store


def format_duration(minutes: Optional[int]) -> str:
    if minutes is None:
        return "N/A"
    if minutes < 60:
        return f"{minutes} min"
    hours, rest = divmod(minutes, 60)
    return f"{hours}h {rest}min"


async def dashboard_metrics(store: Store) -> Dict[str, Any]:
    volunteers = await store.get_all("volunteers")
    materials = await store.get_all("materials")
    by_status = {status.value: 0 for status in MaterialStatus}
    for m in materials:
        by_status[m.status.value] += 1
    return {
        "active_volunteers": sum(1 for v in volunteers if v.active_session is not None),
        "registered_volunteers": len(volunteers),
        "materials_total": len(materials),
        "materials_by_status": by_status,
    }


async def active_volunteers(store: Store) -> List[Dict[str, Any]]:
    volunteers = [v for v in await store.get_all("volunteers") if v.active_session is not None]
    volunteers.sort(key=lambda v: (v.active_session.started_at, v.id))
    return [
        {
            "volunteer_id": v.id,
            "name": v.name,
            "ministry": v.ministry.value,
            "started_at": v.active_session.started_at,
            "material_ids": list(v.active_session.material_ids),
        }
        for v in volunteers
    ]


async def volunteer_history(store: Store, volunteer_id: str, limit: Optional[int] = None) -> List[Activity]:
    """Activities of one volunteer, newest first."""
    if await store.get("volunteers", volunteer_id) is None:
        raise not_found("volunteer", volunteer_id)
    activities = await store.find_by("activities", "volunteer_id", volunteer_id)
    activities.sort(key=lambda a: (a.timestamp, a.id), reverse=True)
    if limit:
        return activities[:limit]
    return activities
