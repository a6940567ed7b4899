import json
import logging

import pytest

from observability.logging import sanitize, structured_log
from state.errors import ErrorKind, invalid_transition, not_found, storage_error, validation_error


def test_error_variants_expose_kind():
    assert not_found("volunteer", "v1").kind == ErrorKind.NOT_FOUND
    assert validation_error("name", "too short").field == "name"
    err = invalid_transition("maintenance", "lost")
    assert err.kind == ErrorKind.BUSINESS_RULE
    assert err.to_dict() == {
        "kind": "business_rule",
        "message": "status transition from 'maintenance' to 'lost' is not allowed",
        "rule": "invalid_transition",
        "details": {"from": "maintenance", "to": "lost"},
    }


def test_storage_error_keeps_cause():
    cause = OSError("unplugged")
    err = storage_error("commit", cause)
    assert err.cause is cause
    assert err.to_dict()["operation"] == "commit"


def test_sanitize_redacts_nested_fields():
    data = {"name": "Ana", "Phone": "11987654321", "contacts": [{"token": "abc", "ok": 1}]}
    assert sanitize(data) == {
        "name": "Ana",
        "Phone": "[REDACTED]",
        "contacts": [{"token": "[REDACTED]", "ok": 1}],
    }


def test_structured_log_emits_json(caplog):
    with caplog.at_level(logging.INFO, logger="checkin.events"):
        record = structured_log("checkin_committed", "act1", {"phone": "11987654321", "volunteer_id": "v1"})
    assert record["data"]["phone"] == "[REDACTED]"
    emitted = json.loads(caplog.records[-1].getMessage())
    assert emitted["event"] == "checkin_committed"
    assert emitted["cid"] == "act1"
    assert emitted["data"] == {"phone": "[REDACTED]", "volunteer_id": "v1"}


@pytest.mark.asyncio
async def test_checkin_logs_commit_event(caplog, checkin, team):
    v, m1, _ = team
    with caplog.at_level(logging.INFO, logger="checkin.events"):
        activity_id = await checkin.process(v.id, [m1.id])
    events = [json.loads(r.getMessage()) for r in caplog.records if r.name == "checkin.events"]
    assert events[-1]["event"] == "checkin_committed"
    assert events[-1]["cid"] == activity_id
