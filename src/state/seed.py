from __future__ import annotations
from datetime import datetime, time, timezone
from hashlib import sha256
import json
import os

from .models import Material, MaterialStatus, MaterialType, Ministry, Volunteer
from .repository import ENTITY_TYPES, Store, Transaction, dump_entity

ANCHOR_ENV_VAR = "CHECKIN_SEED_ANCHOR"  # YYYY-MM-DD


def _anchor() -> datetime:
    val = os.getenv(ANCHOR_ENV_VAR, "2025-01-05")  # a fixed Sunday
    day = datetime.strptime(val, "%Y-%m-%d").date()
    return datetime.combine(day, time(hour=8), tzinfo=timezone.utc)


# (id, name, phone, ministry)
VOLUNTEERS = [
    ("vol_ana", "Ana Souza", "11987654321", Ministry.RECEPCAO),
    ("vol_bruno", "Bruno Lima", "11912345678", Ministry.MIDIA),
    ("vol_carla", "Carla Mendes", None, Ministry.LOUVOR),
    ("vol_davi", "Davi Rocha", "21998765432", Ministry.SEGURANCA),
    ("vol_elisa", "Elisa Prado", None, Ministry.INFANTIL),
    ("vol_fabio", "Fábio Nunes", "31987651234", Ministry.LIMPEZA),
]

# (id, name, code, type, status)
MATERIALS = [
    ("mat_radio_1", "Rádio 1", "RAD-01", MaterialType.RADIO, MaterialStatus.AVAILABLE),
    ("mat_radio_2", "Rádio 2", "RAD-02", MaterialType.RADIO, MaterialStatus.AVAILABLE),
    ("mat_radio_3", "Rádio 3", "RAD-03", MaterialType.RADIO, MaterialStatus.MAINTENANCE),
    ("mat_cracha_recepcao", "Crachá Recepção", "CRA-01", MaterialType.CRACHA, MaterialStatus.AVAILABLE),
    ("mat_cracha_midia", "Crachá Mídia", "CRA-02", MaterialType.CRACHA, MaterialStatus.AVAILABLE),
    ("mat_chave_som", "Chave Sala de Som", "CHV-01", MaterialType.CHAVE, MaterialStatus.AVAILABLE),
    ("mat_chave_infantil", "Chave Sala Infantil", "CHV-02", MaterialType.CHAVE, MaterialStatus.LOST),
    ("mat_mic_sem_fio", "Microfone Sem Fio", None, MaterialType.EQUIPAMENTO, MaterialStatus.AVAILABLE),
]


async def load_dev_seed(store: Store) -> bool:
    """Load deterministic demo data.

    Stable ids and anchored timestamps keep the snapshot hash reproducible.
    Returns False when the seed was already present.
    """
    created_at = _anchor()

    async def _body(txn: Transaction) -> bool:
        if await txn.get("volunteers", VOLUNTEERS[0][0]) is not None:
            return False
        for vid, name, phone, ministry in VOLUNTEERS:
            txn.put("volunteers", Volunteer(id=vid, name=name, phone=phone, ministry=ministry, created_at=created_at))
        for mid, name, code, mtype, status in MATERIALS:
            txn.put(
                "materials",
                Material(id=mid, name=name, code=code, type=mtype, status=status, created_at=created_at),
            )
        return True

    return await store.run_transaction(["volunteers", "materials"], _body)


async def snapshot_hash(store: Store) -> str:
    """Stable hash of every stored record, independent of read order."""
    payload = {}
    for collection in ENTITY_TYPES:
        records = [dump_entity(collection, e) for e in await store.get_all(collection)]
        payload[collection] = sorted(records, key=lambda r: r["id"])
    ser = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    return sha256(ser.encode()).hexdigest()
