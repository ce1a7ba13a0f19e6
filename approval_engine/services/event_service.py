"""Event Service - Outbox emission and subscriber delivery

Terminal instance outcomes and committee resolutions are written to the
event outbox inside the engine call. Delivery to subscribers (document
generation, notifications, payment unlocking) happens later, from the
scheduler, through `dispatch_pending`.
"""
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from ..domain.models import WorkflowEvent, WorkflowInstance, ReviewRound
from ..domain.enums import EventType, EventStatus, InstanceStatus, ConsensusOutcome
from ..repositories.event_repo import EventRepository
from ..config.settings import settings
from ..utils.idgen import generate_event_id, generate_id
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)

EventHandler = Callable[[WorkflowEvent], None]

# Subscribers registered under this key receive every event type
ALL_EVENTS = "*"

_TERMINAL_EVENT_TYPES = {
    InstanceStatus.COMPLETED: EventType.INSTANCE_COMPLETED,
    InstanceStatus.REJECTED: EventType.INSTANCE_REJECTED,
    InstanceStatus.CANCELLED: EventType.INSTANCE_CANCELLED,
}


class EventService:
    """Emit events to the outbox and deliver them to subscribers"""

    def __init__(self, repo: EventRepository = None):
        self.repo = repo or EventRepository()
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    # =========================================================================
    # Subscription
    # =========================================================================

    def subscribe(self, event_type: Any, handler: EventHandler) -> None:
        """Register a handler for an EventType, or ALL_EVENTS"""
        key = getattr(event_type, "value", event_type)
        self._handlers[key].append(handler)
        logger.debug(f"Subscribed {getattr(handler, '__name__', handler)} to {key}")

    def handlers_for(self, event_type: EventType) -> List[EventHandler]:
        return self._handlers.get(event_type.value, []) + self._handlers.get(ALL_EVENTS, [])

    # =========================================================================
    # Emission
    # =========================================================================

    def emit(
        self,
        event_type: EventType,
        subject_id: str,
        outcome: str,
        instance_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None
    ) -> WorkflowEvent:
        """Append an event to the outbox"""
        event = WorkflowEvent(
            event_id=generate_event_id(),
            event_type=event_type,
            subject_id=subject_id,
            instance_id=instance_id,
            outcome=outcome,
            payload=payload or {},
            created_at=utc_now()
        )
        return self.repo.create_event(event)

    def emit_instance_terminal(self, instance: WorkflowInstance) -> WorkflowEvent:
        """Emit the event matching an instance's terminal status"""
        return self.emit(
            _TERMINAL_EVENT_TYPES[instance.status],
            subject_id=instance.subject_id,
            outcome=instance.status.value,
            instance_id=instance.instance_id,
            payload={
                "definition_id": instance.definition_id,
                "kind": instance.kind.value,
                "current_step_index": instance.current_step_index,
                "cancellation_reason": instance.cancellation_reason,
            }
        )

    def emit_consensus(self, review_round: ReviewRound, outcome: ConsensusOutcome) -> WorkflowEvent:
        """Emit a committee resolution"""
        event_type = (
            EventType.CONSENSUS_APPROVED if outcome == ConsensusOutcome.APPROVED
            else EventType.CONSENSUS_REJECTED
        )
        return self.emit(
            event_type,
            subject_id=review_round.subject_id,
            outcome=outcome.value,
            instance_id=review_round.instance_id,
            payload={"round_id": review_round.round_id, "round_number": review_round.round_number}
        )

    def emit_revision_requested(
        self,
        review_round: ReviewRound,
        comments: List[str]
    ) -> WorkflowEvent:
        """Tell the submitter the committee wants changes before deciding"""
        return self.emit(
            EventType.REVISION_REQUESTED,
            subject_id=review_round.subject_id,
            outcome=ConsensusOutcome.PENDING.value,
            instance_id=review_round.instance_id,
            payload={"round_id": review_round.round_id, "comments": comments}
        )

    # =========================================================================
    # Delivery
    # =========================================================================

    def deliver(self, event: WorkflowEvent) -> None:
        """Run every subscriber for the event; the first failure propagates"""
        for handler in self.handlers_for(event.event_type):
            handler(event)

    def dispatch_pending(self, worker_id: Optional[str] = None, limit: Optional[int] = None) -> Dict[str, int]:
        """
        Deliver pending outbox events

        Each event is locked before delivery so concurrent workers skip it.
        A failing subscriber marks the event for retry with backoff.
        """
        worker_id = worker_id or f"worker-{generate_id()[:8]}"
        stats = {"sent": 0, "failed": 0, "skipped": 0}

        for event in self.repo.get_pending_events(limit=limit or settings.event_batch_size):
            if not self.repo.acquire_lock(
                event.event_id,
                worker_id,
                lock_duration_seconds=settings.event_lock_duration_seconds
            ):
                stats["skipped"] += 1
                continue

            try:
                self.deliver(event)
            except Exception as e:
                # Subscriber failures are recorded on the event and retried
                logger.error(
                    f"Subscriber failed for event {event.event_id}: {e}",
                    extra={"event_id": event.event_id, "subject_id": event.subject_id},
                    exc_info=True
                )
                self.repo.mark_failed(event.event_id, str(e))
                stats["failed"] += 1
                continue

            self.repo.mark_sent(event.event_id)
            stats["sent"] += 1

        if stats["sent"] or stats["failed"]:
            logger.info(
                f"Dispatched events: {stats['sent']} sent, {stats['failed']} failed, {stats['skipped']} skipped",
                extra={"server_id": worker_id}
            )
        return stats

    def pending_count(self) -> int:
        """Events still waiting for delivery"""
        return self.repo.count_by_status(EventStatus.PENDING)
