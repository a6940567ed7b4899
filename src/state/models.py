from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List
import uuid

# Core domain models. Stored as JSON-compatible dicts by the repository.

def _now() -> datetime:
    return datetime.now(timezone.utc)


class Ministry(str, Enum):
    LOUVOR = "louvor"
    RECEPCAO = "recepcao"
    MIDIA = "midia"
    INFANTIL = "infantil"
    LIMPEZA = "limpeza"
    SEGURANCA = "seguranca"
    OUTRO = "outro"


class MaterialType(str, Enum):
    CRACHA = "cracha"
    RADIO = "radio"
    CHAVE = "chave"
    EQUIPAMENTO = "equipamento"
    OUTRO = "outro"


class MaterialStatus(str, Enum):
    AVAILABLE = "available"
    LOANED = "loaned"
    MAINTENANCE = "maintenance"
    LOST = "lost"


class ActivityKind(str, Enum):
    CHECKIN = "checkin"
    CHECKOUT = "checkout"


class Disposition(str, Enum):
    RETURNED = "returned"
    DAMAGED = "damaged"
    LOST = "lost"


@dataclass
class ActiveSession:
    activity_id: str
    started_at: datetime
    material_ids: List[str] = field(default_factory=list)


@dataclass
class VolunteerStats:
    total_checkins: int = 0
    hours_served: int = 0
    last_checkin_at: Optional[datetime] = None


@dataclass
class Volunteer:
    id: str
    name: str
    ministry: Ministry
    phone: Optional[str] = None
    active: bool = True
    notes: Optional[str] = None
    active_session: Optional[ActiveSession] = None
    stats: VolunteerStats = field(default_factory=VolunteerStats)
    created_at: datetime = field(default_factory=_now)


@dataclass
class MaterialStats:
    total_loans: int = 0
    last_loan_at: Optional[datetime] = None


@dataclass
class Material:
    id: str
    name: str
    type: MaterialType
    code: Optional[str] = None
    status: MaterialStatus = MaterialStatus.AVAILABLE
    loaned_to: Optional[str] = None  # volunteer id, set only while LOANED
    loaned_at: Optional[datetime] = None
    notes: Optional[str] = None
    stats: MaterialStats = field(default_factory=MaterialStats)
    created_at: datetime = field(default_factory=_now)

    def is_available(self) -> bool:
        return self.status == MaterialStatus.AVAILABLE


@dataclass
class ActivityMaterial:
    material_id: str
    material_name: str  # snapshot at event time
    status_at_event: Optional[MaterialStatus] = None  # checkin
    disposition: Optional[Disposition] = None  # checkout


@dataclass
class Activity:
    id: str
    volunteer_id: str
    volunteer_name: str  # snapshot at event time, survives renames
    kind: ActivityKind
    timestamp: datetime
    materials: List[ActivityMaterial] = field(default_factory=list)
    notes: Optional[str] = None
    duration_minutes: Optional[int] = None  # checkout only
    checkin_activity_id: Optional[str] = None  # checkout only


NOTES_MAX = 500

# Utility factories

def new_id() -> str:
    return uuid.uuid4().hex
