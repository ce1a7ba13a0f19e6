"""Event outbox delivery to subscribers"""
from approval_engine.config.settings import settings
from approval_engine.domain.enums import EventStatus, EventType
from approval_engine.services import ALL_EVENTS


def reject_first_step(engine, requester, agent, publish, subject_id="DL-1"):
    definition = publish()
    instance = engine.start_instance(definition.definition_id, subject_id, requester)
    engine.record_step_outcome(instance.instance_id, 0, agent, "reject", comments="Non conforme")
    return instance


def test_subscriber_receives_terminal_event(engine, requester, agent, publish):
    received = []
    engine.subscribe(EventType.INSTANCE_REJECTED, received.append)
    instance = reject_first_step(engine, requester, agent, publish)

    # Nothing is delivered inside the engine call
    assert received == []
    assert engine.events.pending_count() == 1

    stats = engine.dispatch_events(worker_id="worker-test")

    assert stats == {"sent": 1, "failed": 0, "skipped": 0}
    assert [event.instance_id for event in received] == [instance.instance_id]
    event = engine.events.repo.get_events_for_subject("DL-1")[0]
    assert event.status == EventStatus.SENT
    assert event.attempts == 1
    assert engine.events.pending_count() == 0


def test_catch_all_subscriber(engine, requester, agent, admin, publish):
    received = []
    engine.subscribe(ALL_EVENTS, lambda event: received.append(event.event_type))
    reject_first_step(engine, requester, agent, publish)
    other = engine.start_instance(publish().definition_id, "DL-2", requester)
    engine.cancel_instance(other.instance_id, admin)

    engine.dispatch_events()

    assert sorted(received) == sorted([EventType.INSTANCE_REJECTED, EventType.INSTANCE_CANCELLED])


def test_failing_subscriber_is_retried_later(engine, requester, agent, publish):
    def broken(event):
        raise RuntimeError("document service unavailable")

    engine.subscribe(EventType.INSTANCE_REJECTED, broken)
    reject_first_step(engine, requester, agent, publish)

    stats = engine.dispatch_events()

    assert stats["failed"] == 1
    event = engine.events.repo.get_events_for_subject("DL-1")[0]
    assert event.status == EventStatus.PENDING
    assert event.attempts == 1
    assert event.last_error == "document service unavailable"
    assert event.next_retry_at is not None
    # Backoff keeps it out of the next batch
    assert engine.dispatch_events() == {"sent": 0, "failed": 0, "skipped": 0}


def test_event_fails_after_max_retries(engine, requester, agent, publish, monkeypatch):
    monkeypatch.setattr(settings, "event_max_retries", 1)

    def broken(event):
        raise RuntimeError("boom")

    engine.subscribe(EventType.INSTANCE_REJECTED, broken)
    reject_first_step(engine, requester, agent, publish)

    engine.dispatch_events()

    event = engine.events.repo.get_events_for_subject("DL-1")[0]
    assert event.status == EventStatus.FAILED
    assert engine.events.repo.count_by_status(EventStatus.FAILED) == 1


def test_locked_event_is_skipped(engine, requester, agent, publish):
    reject_first_step(engine, requester, agent, publish)
    event = engine.events.repo.get_events_for_subject("DL-1")[0]

    assert engine.events.repo.acquire_lock(event.event_id, "other-worker") is True

    assert engine.dispatch_events(worker_id="worker-test") == {"sent": 0, "failed": 0, "skipped": 0}
