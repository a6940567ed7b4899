#!/usr/bin/env python3
"""Simulate a Sunday check-in / check-out against the dev seed and show system logs"""
import asyncio
import json
import logging
import sys
sys.path.insert(0, 'src')

from checkflow.checkin import CheckinService
from checkflow.checkout import CheckoutService
from observability import metrics
from observability.logging import configure_logging
from reports.dashboard import active_volunteers, dashboard_metrics, format_duration, volunteer_history
from state.errors import ServiceError
from state.seed import load_dev_seed
from state.repository import open_store


class _Capture(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(json.loads(record.getMessage()))


async def main():
    configure_logging("WARNING")
    capture = _Capture()
    events = logging.getLogger("checkin.events")
    events.addHandler(capture)
    events.setLevel(logging.INFO)

    store = open_store()
    await store.open()
    await load_dev_seed(store)
    checkin = CheckinService(store)
    checkout = CheckoutService(store)

    volunteer_id = "vol_bruno"
    material_ids = ["mat_radio_1", "mat_cracha_midia"]

    print("=" * 60)
    print("CHECK-IN")
    print("=" * 60)
    print(f"Volunteer: {volunteer_id}")
    print(f"Materials: {material_ids}")
    activity_id = await checkin.process(volunteer_id, material_ids, notes="culto da manhã")
    print(f"Activity: {activity_id}")
    print()

    print("=" * 60)
    print("DUPLICATE CHECK-IN")
    print("=" * 60)
    try:
        await checkin.process(volunteer_id, ["mat_radio_2"])
    except ServiceError as err:
        print(f"Rejected: {json.dumps(err.to_dict(), indent=4)}")
    print()

    print("=" * 60)
    print("DASHBOARD")
    print("=" * 60)
    print(json.dumps(await dashboard_metrics(store), indent=4))
    for row in await active_volunteers(store):
        print(f"  {row['name']} ({row['ministry']}) since {row['started_at'].isoformat()}")
    print()

    print("=" * 60)
    print("CHECK-OUT")
    print("=" * 60)
    await checkout.process(volunteer_id, {"mat_radio_1": "returned", "mat_cracha_midia": "damaged"})
    for activity in await volunteer_history(store, volunteer_id):
        print(f"  {activity.kind.value:<8} {activity.timestamp.isoformat()}  {format_duration(activity.duration_minutes)}")
    print()

    # Show the background system logs
    print("=" * 60)
    print("SYSTEM BACKGROUND LOGS")
    print("=" * 60)
    for i, event in enumerate(capture.records, 1):
        print(f"[Log Entry {i}]")
        print(f"  Event Type: {event['event']}")
        print(f"  Timestamp: {event['ts']}")
        print(f"  Correlation ID: {event['cid']}")
        print(f"  Data: {json.dumps(event['data'], indent=4)}")
        print()

    print(f"Counters: {metrics.snapshot()}")
    await store.close()


if __name__ == "__main__":
    asyncio.run(main())
