"""Background jobs run by the worker scheduler"""
import asyncio
from datetime import timedelta

from approval_engine.domain.enums import EventType
from approval_engine.scheduler.scheduler import WorkflowScheduler
from approval_engine.utils.time import utc_now


def test_start_registers_jobs(engine):
    scheduler = WorkflowScheduler(engine)

    async def start_and_stop():
        scheduler.start()
        job_ids = {job.id for job in scheduler.scheduler.get_jobs()}
        running = scheduler.is_running
        scheduler.stop()
        return job_ids, running

    job_ids, running = asyncio.run(start_and_stop())

    assert job_ids == {"dispatch_events", "cleanup_stale_locks", "scan_delays"}
    assert running is True
    assert scheduler.is_running is False


def test_dispatch_job_locks_with_server_id(engine, requester, admin, publish):
    received = []
    engine.subscribe(EventType.INSTANCE_CANCELLED, received.append)
    instance = engine.start_instance(publish().definition_id, "DL-1", requester)
    engine.cancel_instance(instance.instance_id, admin)
    scheduler = WorkflowScheduler(engine)

    asyncio.run(scheduler._dispatch_events())

    assert [event.instance_id for event in received] == [instance.instance_id]
    assert engine.events.pending_count() == 0


def test_cleanup_job_releases_stale_locks(engine, requester, admin, publish, test_db):
    instance = engine.start_instance(publish().definition_id, "DL-1", requester)
    engine.cancel_instance(instance.instance_id, admin)
    test_db["event_outbox"].update_many({}, {"$set": {
        "locked_by": "crashed-worker",
        "locked_until": utc_now() - timedelta(hours=1),
    }})

    asyncio.run(WorkflowScheduler(engine)._cleanup_stale_locks())

    event = engine.events.repo.get_events_for_subject("DL-1")[0]
    assert event.locked_by is None
