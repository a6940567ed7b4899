import asyncio

import pytest

from observability import metrics
from state.errors import ErrorKind, ServiceError
from state.models import ActivityKind, MaterialStatus
from state.repository import InMemoryStore, dump_entity
from checkflow.checkin import CheckinService


async def _dumps(store, volunteer_id, material_ids):
    v = await store.get("volunteers", volunteer_id)
    ms = [await store.get("materials", mid) for mid in material_ids]
    return dump_entity("volunteers", v), [dump_entity("materials", m) for m in ms if m is not None]


@pytest.mark.asyncio
async def test_checkin_loans_materials_and_opens_session(store, checkin, team, clock):
    v, m1, m2 = team
    activity_id = await checkin.process(v.id, [m1.id, m2.id], notes="culto da manhã")

    vol = await store.get("volunteers", v.id)
    assert vol.active_session.activity_id == activity_id
    assert vol.active_session.material_ids == [m1.id, m2.id]
    assert vol.active_session.started_at == clock.now
    assert vol.stats.total_checkins == 1
    assert vol.stats.last_checkin_at == clock.now

    for mid in (m1.id, m2.id):
        m = await store.get("materials", mid)
        assert m.status == MaterialStatus.LOANED
        assert m.loaned_to == v.id
        assert m.loaned_at == clock.now
        assert m.stats.total_loans == 1

    activity = await store.get("activities", activity_id)
    assert activity.kind == ActivityKind.CHECKIN
    assert activity.volunteer_name == "Vitor Alves"
    assert activity.notes == "culto da manhã"
    assert [(i.material_id, i.material_name, i.status_at_event) for i in activity.materials] == [
        (m1.id, "Rádio", MaterialStatus.LOANED),
        (m2.id, "Crachá", MaterialStatus.LOANED),
    ]
    assert metrics.get("checkin.committed") == 1


@pytest.mark.asyncio
async def test_second_checkin_rejected_without_changes(store, checkin, team):
    v, m1, m2 = team
    await checkin.process(v.id, [m1.id, m2.id])
    before = await _dumps(store, v.id, [m1.id, m2.id])
    activities_before = len(await store.get_all("activities"))

    with pytest.raises(ServiceError) as exc:
        await checkin.process(v.id, [m1.id])
    assert exc.value.kind == ErrorKind.BUSINESS_RULE
    assert exc.value.rule == "already_checked_in"

    assert await _dumps(store, v.id, [m1.id, m2.id]) == before
    assert len(await store.get_all("activities")) == activities_before
    assert metrics.get("checkin.rejected") == 1


@pytest.mark.asyncio
async def test_unknown_volunteer_is_not_found(checkin, team):
    _, m1, _ = team
    with pytest.raises(ServiceError) as exc:
        await checkin.process("ghost", [m1.id])
    assert exc.value.kind == ErrorKind.NOT_FOUND
    assert exc.value.entity == "volunteer"
    assert exc.value.entity_id == "ghost"


@pytest.mark.asyncio
async def test_empty_selection_is_business_rule(checkin, team):
    v, _, _ = team
    with pytest.raises(ServiceError) as exc:
        await checkin.process(v.id, [])
    assert exc.value.rule == "no_materials_selected"


@pytest.mark.asyncio
async def test_already_checked_in_wins_over_empty_selection(checkin, team):
    v, m1, _ = team
    await checkin.process(v.id, [m1.id])
    with pytest.raises(ServiceError) as exc:
        await checkin.process(v.id, [])
    assert exc.value.rule == "already_checked_in"


@pytest.mark.asyncio
async def test_unavailable_materials_named_and_nothing_written(store, checkin, materials, volunteers, team):
    v, m1, m2 = team
    broken = await materials.create({"name": "Rádio Velho", "type": "radio", "status": "maintenance"})
    ids = [m1.id, broken.id, "missing-id", m2.id]
    before = await _dumps(store, v.id, ids)

    with pytest.raises(ServiceError) as exc:
        await checkin.process(v.id, ids)
    err = exc.value
    assert err.rule == "materials_unavailable"
    assert err.details["material_ids"] == [broken.id, "missing-id"]
    assert "Rádio Velho" in err.message
    assert "unknown id missing-id" in err.message

    assert await _dumps(store, v.id, ids) == before
    assert await store.get_all("activities") == []


@pytest.mark.asyncio
async def test_material_loaned_to_someone_else_is_unavailable(checkin, volunteers, team):
    v, m1, m2 = team
    other = await volunteers.create({"name": "Bruna Dias", "ministry": "louvor"})
    await checkin.process(other.id, [m1.id])
    with pytest.raises(ServiceError) as exc:
        await checkin.process(v.id, [m1.id, m2.id])
    assert exc.value.rule == "materials_unavailable"
    assert exc.value.details["names"] == ["Rádio"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "volunteer_id,material_ids,notes,field",
    [
        ("", ["m1"], None, "volunteer_id"),
        ("v1", ["m1", "m1"], None, "material_ids"),
        ("v1", ["m1", "  "], None, "material_ids"),
        ("v1", ["m1"], "x" * 501, "notes"),
    ],
)
async def test_malformed_input_never_opens_a_transaction(volunteer_id, material_ids, notes, field):
    class CountingStore(InMemoryStore):
        opened = 0

        async def run_transaction(self, collections, body):
            CountingStore.opened += 1
            return await super().run_transaction(collections, body)

    service = CheckinService(CountingStore())
    with pytest.raises(ServiceError) as exc:
        await service.process(volunteer_id, material_ids, notes)
    assert exc.value.kind == ErrorKind.VALIDATION
    assert exc.value.field == field
    assert CountingStore.opened == 0


@pytest.mark.asyncio
async def test_concurrent_checkins_only_one_succeeds(store, checkin, materials, team):
    v, m1, m2 = team
    results = await asyncio.gather(
        checkin.process(v.id, [m1.id]),
        checkin.process(v.id, [m2.id]),
        return_exceptions=True,
    )
    succeeded = [r for r in results if isinstance(r, str)]
    failed = [r for r in results if isinstance(r, ServiceError)]
    assert len(succeeded) == 1
    assert len(failed) == 1 and failed[0].rule == "already_checked_in"

    vol = await store.get("volunteers", v.id)
    assert vol.active_session.activity_id == succeeded[0]
    loaned = await store.find_by("materials", "status", MaterialStatus.LOANED)
    assert [m.id for m in loaned] == vol.active_session.material_ids


@pytest.mark.asyncio
async def test_storage_failure_reports_storage_error(volunteers, materials, clock, store):
    class BrokenStore(InMemoryStore):
        def _apply(self, writes):
            raise OSError("disk full")

    broken = BrokenStore()
    broken._data = store._data  # same committed records, failing commits
    v = await volunteers.create({"name": "Caio Reis", "ministry": "outro"})
    m = await materials.create({"name": "Chave Som", "type": "chave"})

    with pytest.raises(ServiceError) as exc:
        await CheckinService(broken, clock=clock).process(v.id, [m.id])
    assert exc.value.kind == ErrorKind.STORAGE
    assert (await store.get("volunteers", v.id)).active_session is None
    assert (await store.get("materials", m.id)).status == MaterialStatus.AVAILABLE
