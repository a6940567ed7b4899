from __future__ import annotations
from dataclasses import replace
from datetime import datetime
from typing import List
import math

from state.errors import business_rule
from state.models import ActiveSession, Volunteer, VolunteerStats


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def elapsed_minutes(started_at: datetime, ended_at: datetime) -> int:
    seconds = (ended_at - started_at).total_seconds()
    return max(0, round_half_up(seconds / 60))


def is_checked_in(volunteer: Volunteer) -> bool:
    return volunteer.active_session is not None


def open_session(volunteer: Volunteer, activity_id: str, started_at: datetime, material_ids: List[str]) -> Volunteer:
    """Return a copy of the volunteer holding a new session and updated stats."""
    if is_checked_in(volunteer):
        raise business_rule(
            "already_checked_in",
            f"volunteer '{volunteer.name}' is already checked in",
            volunteer_id=volunteer.id,
            activity_id=volunteer.active_session.activity_id,
        )
    session = ActiveSession(activity_id=activity_id, started_at=started_at, material_ids=list(material_ids))
    stats = VolunteerStats(
        total_checkins=volunteer.stats.total_checkins + 1,
        hours_served=volunteer.stats.hours_served,
        last_checkin_at=started_at,
    )
    return replace(volunteer, active_session=session, stats=stats)


def close_session(volunteer: Volunteer, ended_at: datetime) -> tuple[Volunteer, int]:
    """Clear the session; returns the updated copy and the elapsed minutes."""
    if not is_checked_in(volunteer):
        raise business_rule(
            "not_checked_in",
            f"volunteer '{volunteer.name}' has no active check-in",
            volunteer_id=volunteer.id,
        )
    minutes = elapsed_minutes(volunteer.active_session.started_at, ended_at)
    stats = replace(volunteer.stats, hours_served=volunteer.stats.hours_served + round_half_up(minutes / 60))
    return replace(volunteer, active_session=None, stats=stats), minutes
