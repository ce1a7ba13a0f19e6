"""Domain Models - Pydantic schemas for all entities"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Type
from pydantic import BaseModel, Field, ConfigDict, field_validator

from .enums import (
    SYSTEM_ROLE, WorkflowKind, DefinitionStatus, InstanceStatus, StepStatus,
    StepDecision, CommitteeRole, ReviewStatus, RoundStatus, AuditSubjectType,
    AuditAction, EventType, EventStatus
)
from ..utils.time import ensure_utc


class StoredModel(BaseModel):
    """Base for persisted records - datetimes read back from MongoDB are naive"""

    @field_validator("*", mode="after")
    @classmethod
    def _attach_utc(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return ensure_utc(value)
        return value


# ============================================================================
# Actor
# ============================================================================

class ActorContext(BaseModel):
    """Identity of whoever performs an engine call"""
    model_config = ConfigDict(extra="forbid")

    actor_id: str = Field(..., min_length=1, description="Stable user reference")
    display_name: Optional[str] = Field(None, description="User display name")
    roles: List[str] = Field(default_factory=list, description="Role claims carried by the caller")

    @classmethod
    def system(cls) -> "ActorContext":
        """Actor used for automatic transitions"""
        return cls(actor_id=SYSTEM_ROLE, display_name="System", roles=[SYSTEM_ROLE])

    @property
    def is_system(self) -> bool:
        return self.actor_id == SYSTEM_ROLE and SYSTEM_ROLE in self.roles


# ============================================================================
# Workflow Definition
# ============================================================================

class StepDefinition(BaseModel):
    """One ordered step of a workflow template"""
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1)
    required_role: str = Field(..., description="Role tag, or 'system' for automatic steps")
    auto_complete: bool = Field(default=False, description="Approve immediately when reached (system steps only)")
    validation_criteria: List[str] = Field(default_factory=list)
    committee_review: bool = Field(default=False, description="Resolved by committee consensus")
    estimated_duration_hours: Optional[float] = Field(default=None, ge=0)

    @field_validator("validation_criteria")
    @classmethod
    def _dedupe_criteria(cls, value: List[str]) -> List[str]:
        # Criteria form a set; keep first-seen order for display
        return list(dict.fromkeys(value))

    @property
    def is_system(self) -> bool:
        return self.required_role == SYSTEM_ROLE


class WorkflowDefinition(StoredModel):
    """Workflow template; steps are frozen once published"""
    model_config = ConfigDict(extra="ignore")

    definition_id: str = Field(..., description="Unique definition ID")
    name: str
    kind: WorkflowKind
    description: Optional[str] = None
    steps: List[StepDefinition] = Field(default_factory=list)
    active: bool = Field(default=False)
    status: DefinitionStatus = Field(default=DefinitionStatus.DRAFT)
    start_pending: bool = Field(default=False, description="New instances start in 'pending'")
    created_by: str
    created_at: datetime
    updated_at: datetime
    published_at: Optional[datetime] = None
    version: int = Field(default=1, description="Optimistic concurrency version")


# ============================================================================
# Per-kind instance metadata
# ============================================================================

Priority = Literal["low", "normal", "high", "urgent"]


class InstanceMetadata(BaseModel):
    """Common base for the typed metadata payloads"""
    model_config = ConfigDict(extra="forbid")

    request_number: Optional[str] = None
    user_notes: Optional[str] = None


class PublicationMetadata(InstanceMetadata):
    title: Optional[str] = None
    author_name: Optional[str] = None
    publisher_name: Optional[str] = None
    language: Optional[str] = None
    page_count: Optional[int] = Field(default=None, ge=1)


class LegalDepositMetadata(InstanceMetadata):
    title: Optional[str] = None
    author_name: Optional[str] = None
    monograph_type: Optional[str] = None
    publisher_name: Optional[str] = None
    printer_name: Optional[str] = None
    priority: Priority = "normal"
    dl_number: Optional[str] = None
    isbn: Optional[str] = None
    issn: Optional[str] = None
    ismn: Optional[str] = None


class ReproductionMetadata(InstanceMetadata):
    reproduction_modality: Optional[Literal[
        "numerique_mail", "numerique_espace", "support_physique", "papier"
    ]] = None
    reproduction_format: Optional[str] = None
    item_refs: List[str] = Field(default_factory=list)
    copies: int = Field(default=1, ge=1)
    total_amount: Optional[float] = Field(default=None, ge=0)
    payment_reference: Optional[str] = None


class RestorationMetadata(InstanceMetadata):
    manuscript_title: Optional[str] = None
    manuscript_cote: Optional[str] = None
    damage_description: Optional[str] = None
    urgency_level: Priority = "normal"
    estimated_cost: Optional[float] = Field(default=None, ge=0)
    estimated_duration_days: Optional[int] = Field(default=None, ge=0)
    quote_amount: Optional[float] = Field(default=None, ge=0)


METADATA_MODELS: Dict[WorkflowKind, Type[InstanceMetadata]] = {
    WorkflowKind.PUBLICATION: PublicationMetadata,
    WorkflowKind.LEGAL_DEPOSIT: LegalDepositMetadata,
    WorkflowKind.REPRODUCTION: ReproductionMetadata,
    WorkflowKind.RESTORATION: RestorationMetadata,
}


# ============================================================================
# Runtime: instances and step executions
# ============================================================================

class WorkflowInstance(StoredModel):
    """Workflow instance (runtime)"""
    model_config = ConfigDict(extra="ignore")  # Storage-only fields such as live_key

    instance_id: str = Field(..., description="Unique instance ID")
    definition_id: str
    definition_name: str
    kind: WorkflowKind
    subject_id: str
    current_step_index: int = Field(default=0, ge=0)
    status: InstanceStatus = Field(default=InstanceStatus.IN_PROGRESS)
    started_by: str
    started_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    version: int = Field(default=1, description="Optimistic concurrency version")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class StepExecution(StoredModel):
    """Runtime state for one step of an instance"""
    model_config = ConfigDict(extra="ignore")

    step_execution_id: str
    instance_id: str
    step_index: int = Field(..., ge=0)
    name: str
    required_role: str
    status: StepStatus = Field(default=StepStatus.PENDING)
    assigned_role: Optional[str] = None
    assigned_pool: List[str] = Field(default_factory=list, description="Actors eligible to self-assign")
    assigned_to: Optional[str] = None
    decided_by: Optional[str] = None
    decision: Optional[StepDecision] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    comments: Optional[str] = None
    version: int = Field(default=1)


# ============================================================================
# Committee
# ============================================================================

class CommitteeMember(StoredModel):
    """Committee seat; deactivated, never deleted"""
    model_config = ConfigDict(extra="ignore")

    member_id: str
    user_ref: str
    role: CommitteeRole = Field(default=CommitteeRole.MEMBER)
    specialization: Optional[str] = None
    active: bool = Field(default=True)
    appointed_by: Optional[str] = None
    appointed_at: datetime
    deactivated_at: Optional[datetime] = None


class ReviewRound(StoredModel):
    """One batch of reviews collected for a subject"""
    model_config = ConfigDict(extra="ignore")

    round_id: str
    subject_id: str
    round_number: int = Field(default=1, ge=1)
    status: RoundStatus = Field(default=RoundStatus.OPEN)
    instance_id: Optional[str] = None
    step_index: Optional[int] = None
    member_ids: List[str] = Field(default_factory=list, description="Seats polled when the round opened")
    revision_requested: bool = Field(default=False)
    policy: str
    opened_by: str
    opened_at: datetime
    resolved_at: Optional[datetime] = None
    version: int = Field(default=1)

    @property
    def is_open(self) -> bool:
        return self.status == RoundStatus.OPEN


class CommitteeReview(StoredModel):
    """One member's vote inside a review round"""
    model_config = ConfigDict(extra="ignore")

    review_id: str
    round_id: str
    subject_id: str
    member_id: str
    status: ReviewStatus = Field(default=ReviewStatus.PENDING)
    comments: Optional[str] = None
    rationale: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    version: int = Field(default=1)


# ============================================================================
# Audit & Events
# ============================================================================

class AuditEntry(StoredModel):
    """Append-only audit record"""
    model_config = ConfigDict(extra="ignore")

    audit_entry_id: str
    subject_type: AuditSubjectType
    subject_id: str
    action: AuditAction
    actor: str
    before: Optional[str] = Field(None, description="Status before the change")
    after: Optional[str] = Field(None, description="Status after the change")
    instance_id: Optional[str] = None
    step_index: Optional[int] = None
    decision: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    correlation_id: Optional[str] = None


class WorkflowEvent(StoredModel):
    """Outbox entry announcing a terminal outcome or a consensus resolution"""
    model_config = ConfigDict(extra="ignore")

    event_id: str
    event_type: EventType
    subject_id: str
    instance_id: Optional[str] = None
    outcome: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: EventStatus = Field(default=EventStatus.PENDING)
    attempts: int = Field(default=0)
    last_error: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    locked_by: Optional[str] = None
    created_at: datetime
    sent_at: Optional[datetime] = None
