from __future__ import annotations
from typing import Any, Dict, Optional
from datetime import datetime, timezone
import json
import logging
import os

SENSITIVE_FIELDS = {"phone", "password", "token"}

_events = logging.getLogger("checkin.events")


def configure_logging(level: Optional[str] = None):
    """Install a root handler once; level from CHECKIN_LOG_LEVEL by default."""
    name = (level or os.getenv("CHECKIN_LOG_LEVEL") or "INFO").upper()
    numeric = getattr(logging, name, logging.INFO)
    if not logging.getLogger().handlers:
        logging.basicConfig(level=numeric, format="%(levelname)s %(name)s: %(message)s")
    logging.getLogger().setLevel(numeric)


def sanitize(data: Any) -> Any:
    if isinstance(data, dict):
        return {
            k: "[REDACTED]" if str(k).lower() in SENSITIVE_FIELDS else sanitize(v)
            for k, v in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [sanitize(v) for v in data]
    return data


def structured_log(event: str, correlation_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    record = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "event": event,
        "cid": correlation_id,
        "data": sanitize(data),
    }
    _events.info(json.dumps(record, default=str))
    return record
