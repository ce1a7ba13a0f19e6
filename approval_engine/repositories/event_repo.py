"""Event Repository - Data access for the workflow event outbox

Locking relies on atomic find_one_and_update so several workers can poll the
same outbox without delivering an event twice at the same time.
"""
from datetime import datetime, timedelta
from typing import List, Optional
from pymongo.collection import Collection
from pymongo import ASCENDING

from .mongo_client import get_collection, to_document
from ..domain.models import WorkflowEvent
from ..domain.enums import EventStatus
from ..domain.errors import NotFoundError
from ..config.settings import settings
from ..utils.logger import get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)


class EventRepository:
    """Repository for outbox events"""

    def __init__(self):
        self._outbox: Collection = get_collection("event_outbox")

    def create_event(self, event: WorkflowEvent) -> WorkflowEvent:
        """Append an event to the outbox"""
        doc = to_document(event)
        doc["_id"] = event.event_id

        self._outbox.insert_one(doc)
        logger.info(
            f"Queued event: {event.event_type.value}",
            extra={"event_id": event.event_id, "instance_id": event.instance_id, "subject_id": event.subject_id}
        )
        return event

    def get_event(self, event_id: str) -> Optional[WorkflowEvent]:
        """Get event by ID"""
        doc = self._outbox.find_one({"event_id": event_id})
        if doc:
            doc.pop("_id", None)
            return WorkflowEvent.model_validate(doc)
        return None

    def get_pending_events(self, limit: int = 100) -> List[WorkflowEvent]:
        """
        Pending events ready for delivery

        Only returns events that are unlocked (or whose lock expired) and whose
        retry time has come.
        """
        now = utc_now()
        cursor = self._outbox.find({
            "status": EventStatus.PENDING.value,
            "$and": [
                {"$or": [{"next_retry_at": {"$lte": now}}, {"next_retry_at": None}]},
                {"$or": [{"locked_until": {"$lte": now}}, {"locked_until": None}]},
            ]
        }).sort("created_at", ASCENDING).limit(limit)

        events = []
        for doc in cursor:
            doc.pop("_id", None)
            events.append(WorkflowEvent.model_validate(doc))
        return events

    def get_events_for_subject(self, subject_id: str) -> List[WorkflowEvent]:
        """All events emitted for a subject, oldest first"""
        cursor = self._outbox.find({"subject_id": subject_id}).sort("created_at", ASCENDING)

        events = []
        for doc in cursor:
            doc.pop("_id", None)
            events.append(WorkflowEvent.model_validate(doc))
        return events

    def acquire_lock(self, event_id: str, lock_by: str, lock_duration_seconds: int = 60) -> bool:
        """Atomically lock a pending event for delivery; False if someone else holds it"""
        now = utc_now()
        result = self._outbox.find_one_and_update(
            {
                "event_id": event_id,
                "status": EventStatus.PENDING.value,
                "$or": [{"locked_until": {"$lte": now}}, {"locked_until": None}],
            },
            {"$set": {"locked_until": now + timedelta(seconds=lock_duration_seconds), "locked_by": lock_by}}
        )
        if result is None:
            logger.debug(f"Could not lock event {event_id}", extra={"event_id": event_id})
            return False
        return True

    def mark_sent(self, event_id: str) -> WorkflowEvent:
        """Mark event as delivered"""
        result = self._outbox.find_one_and_update(
            {"event_id": event_id},
            {
                "$set": {
                    "status": EventStatus.SENT.value,
                    "sent_at": utc_now(),
                    "locked_until": None,
                    "locked_by": None,
                },
                "$inc": {"attempts": 1},
            },
            return_document=True
        )
        if result is None:
            raise NotFoundError(f"Event {event_id} not found")

        result.pop("_id", None)
        logger.info(f"Event delivered: {event_id}", extra={"event_id": event_id})
        return WorkflowEvent.model_validate(result)

    def mark_failed(self, event_id: str, error: str, retry_at: Optional[datetime] = None) -> WorkflowEvent:
        """Record a failed delivery; retries with exponential backoff until max retries"""
        event = self.get_event(event_id)
        if not event:
            raise NotFoundError(f"Event {event_id} not found")

        attempts = event.attempts + 1
        if attempts >= settings.event_max_retries:
            status = EventStatus.FAILED.value
            next_retry = None
        else:
            status = EventStatus.PENDING.value
            # 1, 2, 4, 8 ... minutes
            next_retry = retry_at or utc_now() + timedelta(minutes=2 ** event.attempts)

        result = self._outbox.find_one_and_update(
            {"event_id": event_id},
            {
                "$set": {
                    "status": status,
                    "attempts": attempts,
                    "last_error": error,
                    "next_retry_at": next_retry,
                    "locked_until": None,
                    "locked_by": None,
                }
            },
            return_document=True
        )

        result.pop("_id", None)
        logger.warning(
            f"Event delivery failed: {event_id} (attempt {attempts})",
            extra={"event_id": event_id, "status": status}
        )
        return WorkflowEvent.model_validate(result)

    def cleanup_stale_locks(self, max_lock_age_minutes: int = 10) -> int:
        """Release locks left behind by crashed workers"""
        cutoff = utc_now() - timedelta(minutes=max_lock_age_minutes)
        result = self._outbox.update_many(
            {"locked_until": {"$lte": cutoff}, "locked_by": {"$ne": None}},
            {"$set": {"locked_until": None, "locked_by": None}}
        )
        if result.modified_count:
            logger.warning(f"Released {result.modified_count} stale event locks")
        return result.modified_count

    def count_by_status(self, status: EventStatus) -> int:
        """Number of events in a delivery status"""
        return self._outbox.count_documents({"status": status.value})
