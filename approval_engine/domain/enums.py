"""Domain Enumerations - All status and type definitions"""
from enum import Enum


# Sentinel role carried by steps that no human is expected to perform
SYSTEM_ROLE = "system"


class WorkflowKind(str, Enum):
    """Family of approval workflow a definition belongs to"""
    PUBLICATION = "publication"
    LEGAL_DEPOSIT = "legal_deposit"
    REPRODUCTION = "reproduction"
    RESTORATION = "restoration"


class DefinitionStatus(str, Enum):
    """Definition lifecycle status"""
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class InstanceStatus(str, Enum):
    """Global workflow instance status"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_INSTANCE_STATUSES


TERMINAL_INSTANCE_STATUSES = frozenset({
    InstanceStatus.COMPLETED,
    InstanceStatus.REJECTED,
    InstanceStatus.CANCELLED,
})


class StepStatus(str, Enum):
    """Runtime status per step execution"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"
    SKIPPED = "skipped"

    @property
    def is_actionable(self) -> bool:
        return self in (StepStatus.PENDING, StepStatus.IN_PROGRESS)


class StepDecision(str, Enum):
    """Outcome an actor records on a step"""
    APPROVE = "approve"
    REJECT = "reject"


class CommitteeRole(str, Enum):
    """Seat held by a committee member"""
    PRESIDENT = "president"
    SECRETARY = "secretary"
    MEMBER = "member"


class ReviewStatus(str, Enum):
    """Committee review (vote) status"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    NEEDS_REVISION = "needs_revision"


class RoundStatus(str, Enum):
    """Review round status"""
    OPEN = "open"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUPERSEDED = "superseded"
    CANCELLED = "cancelled"


class ConsensusOutcome(str, Enum):
    """Aggregated committee outcome"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AuditSubjectType(str, Enum):
    """Kind of record an audit entry describes"""
    WORKFLOW_DEFINITION = "workflow_definition"
    WORKFLOW_INSTANCE = "workflow_instance"
    STEP_EXECUTION = "step_execution"
    COMMITTEE_MEMBER = "committee_member"
    REVIEW_ROUND = "review_round"
    COMMITTEE_REVIEW = "committee_review"


class AuditAction(str, Enum):
    """Audit log actions"""
    CREATE_DEFINITION = "create_definition"
    UPDATE_DEFINITION = "update_definition"
    PUBLISH = "publish"
    ACTIVATE = "activate"
    DEACTIVATE = "deactivate"
    ARCHIVE = "archive"
    CREATE = "create"
    APPROVE = "approve"
    REJECT = "reject"
    AUTO_COMPLETE = "auto_complete"
    CANCEL = "cancel"
    APPOINT_MEMBER = "appoint_member"
    DEACTIVATE_MEMBER = "deactivate_member"
    REACTIVATE_MEMBER = "reactivate_member"
    OPEN_ROUND = "open_round"
    VOTE = "vote"
    CONSENSUS = "consensus"
    REQUEST_REVISION = "request_revision"
    SUPERSEDE_ROUND = "supersede_round"
    CANCEL_ROUND = "cancel_round"


class EventType(str, Enum):
    """Events emitted to the outbox"""
    INSTANCE_COMPLETED = "instance_completed"
    INSTANCE_REJECTED = "instance_rejected"
    INSTANCE_CANCELLED = "instance_cancelled"
    CONSENSUS_APPROVED = "consensus_approved"
    CONSENSUS_REJECTED = "consensus_rejected"
    REVISION_REQUESTED = "revision_requested"


class EventStatus(str, Enum):
    """Outbox delivery status"""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
