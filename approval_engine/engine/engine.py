"""
Workflow Engine - Single entry point of the approval engine

This module wires repositories, services and engine components together and
exposes every operation callers use.

=============================================================================
MODULE STRUCTURE
=============================================================================

1. INITIALIZATION
   - Builds repositories, directory, guard, audit writer and event service
   - Registers committee hooks on the transition engine

2. DEFINITIONS
   - create_definition, update_draft, validate_definition
   - publish_definition, set_definition_active, archive_definition
   - install_predefined, get_definition, list_definitions

3. INSTANCES
   - start_instance, record_step_outcome, cancel_instance
   - get_instance, get_steps, list_instances, get_audit_trail

4. COMMITTEE
   - appoint_member, deactivate_member, reactivate_member, list_members
   - open_review_round, record_vote, evaluate_consensus
   - get_review_round, list_reviews

5. SLA / EVENTS / ROLES
   - list_delayed
   - subscribe, dispatch_events
   - grant_role, revoke_role

Every public call runs under a correlation ID, which ends up on each log
line and audit entry the call produces.

=============================================================================
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..domain.models import (
    ActorContext, AuditEntry, CommitteeMember, CommitteeReview, ReviewRound,
    StepDefinition, StepExecution, WorkflowDefinition, WorkflowInstance
)
from ..domain.enums import CommitteeRole, ConsensusOutcome, InstanceStatus, WorkflowKind
from ..repositories.audit_repo import AuditRepository
from ..repositories.committee_repo import CommitteeRepository
from ..repositories.definition_repo import DefinitionRepository
from ..repositories.event_repo import EventRepository
from ..repositories.instance_repo import InstanceRepository
from ..services.directory_service import DirectoryService, RoleDirectory
from ..services.event_service import EventService, EventHandler
from .audit_writer import AuditWriter
from .committee import CommitteeService
from .consensus import ConsensusPolicy
from .definition_store import DefinitionStore
from .delay_monitor import DelayMonitor
from .instance_manager import InstanceManager
from .permission_guard import PermissionGuard
from .transition_engine import TransitionEngine
from ..utils.logger import correlation_scope, get_logger

logger = get_logger(__name__)


class WorkflowEngine:
    """
    The Workflow Engine - Central orchestrator for approval workflows

    Responsibilities:
    - Author and publish workflow definitions
    - Start instances and drive them through their steps
    - Collect committee votes and apply consensus
    - Enforce permissions via PermissionGuard
    - Write audit entries and the event outbox
    - Report instances past the processing delay
    """

    def __init__(
        self,
        directory: Optional[RoleDirectory] = None,
        policy: Optional[ConsensusPolicy] = None
    ):
        self.definition_repo = DefinitionRepository()
        self.instance_repo = InstanceRepository()
        self.committee_repo = CommitteeRepository()
        self.audit_repo = AuditRepository()

        self.directory = directory or DirectoryService()
        self.permission_guard = PermissionGuard(self.directory)
        self.audit_writer = AuditWriter(self.audit_repo)
        self.events = EventService(EventRepository())

        self.definitions = DefinitionStore(self.permission_guard, self.audit_writer, self.definition_repo)
        self.transitions = TransitionEngine(
            self.instance_repo,
            self.definition_repo,
            self.directory,
            self.permission_guard,
            self.audit_writer,
            self.events
        )
        self.instances = InstanceManager(
            self.instance_repo,
            self.definition_repo,
            self.transitions,
            self.audit_writer
        )
        self.committee = CommitteeService(
            self.permission_guard,
            self.audit_writer,
            self.events,
            self.transitions,
            repo=self.committee_repo,
            policy=policy
        )
        self.delay_monitor = DelayMonitor(self.instance_repo)

        self.transitions.committee_step_hooks.append(self.committee.on_committee_step)
        self.transitions.cancel_hooks.append(self.committee.on_instance_cancelled)
        self.transitions.step_decided_hooks.append(self.committee.on_step_decided)
        logger.debug(f"Workflow engine ready with {self.committee.policy.name} consensus")

    # =========================================================================
    # Definitions
    # =========================================================================

    def create_definition(
        self,
        name: str,
        kind: WorkflowKind,
        steps: List[StepDefinition],
        actor: ActorContext,
        description: Optional[str] = None,
        start_pending: bool = False
    ) -> WorkflowDefinition:
        with correlation_scope():
            return self.definitions.create_definition(
                name, kind, steps, actor, description=description, start_pending=start_pending
            )

    def update_draft(
        self,
        definition_id: str,
        steps: List[StepDefinition],
        actor: ActorContext,
        description: Optional[str] = None
    ) -> WorkflowDefinition:
        with correlation_scope():
            return self.definitions.update_draft(definition_id, steps, actor, description=description)

    def validate_definition(self, definition_id: str) -> Dict[str, Any]:
        return self.definitions.validate_definition(definition_id)

    def publish_definition(self, definition_id: str, actor: ActorContext) -> WorkflowDefinition:
        with correlation_scope():
            return self.definitions.publish_definition(definition_id, actor)

    def set_definition_active(self, definition_id: str, active: bool, actor: ActorContext) -> WorkflowDefinition:
        with correlation_scope():
            return self.definitions.set_active(definition_id, active, actor)

    def archive_definition(self, definition_id: str, actor: ActorContext) -> WorkflowDefinition:
        with correlation_scope():
            return self.definitions.archive_definition(definition_id, actor)

    def install_predefined(self, actor: Optional[ActorContext] = None) -> List[WorkflowDefinition]:
        """Create and publish the stock workflows that are missing"""
        with correlation_scope():
            return self.definitions.install_predefined(actor or ActorContext.system())

    def get_definition(self, definition_id: str) -> WorkflowDefinition:
        return self.definitions.get_definition(definition_id)

    def list_definitions(
        self,
        kind: Optional[WorkflowKind] = None,
        active_only: bool = False
    ) -> List[WorkflowDefinition]:
        return self.definitions.list_definitions(kind=kind, active_only=active_only)

    # =========================================================================
    # Instances
    # =========================================================================

    def start_instance(
        self,
        definition_id: str,
        subject_id: str,
        actor: ActorContext,
        metadata: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None
    ) -> WorkflowInstance:
        """Start a workflow for a subject (see InstanceManager.start_instance)"""
        with correlation_scope(correlation_id):
            return self.instances.start_instance(definition_id, subject_id, actor, metadata=metadata)

    def record_step_outcome(
        self,
        instance_id: str,
        step_index: int,
        actor: ActorContext,
        decision: Any,
        comments: Optional[str] = None,
        correlation_id: Optional[str] = None
    ) -> StepExecution:
        """Approve or reject the current step (see TransitionEngine.record_step_outcome)"""
        with correlation_scope(correlation_id):
            return self.transitions.record_step_outcome(instance_id, step_index, actor, decision, comments)

    def cancel_instance(
        self,
        instance_id: str,
        actor: ActorContext,
        reason: Optional[str] = None,
        correlation_id: Optional[str] = None
    ) -> WorkflowInstance:
        with correlation_scope(correlation_id):
            return self.transitions.cancel_instance(instance_id, actor, reason)

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        return self.instance_repo.get_instance_or_raise(instance_id)

    def get_steps(self, instance_id: str) -> List[StepExecution]:
        """Step executions of an instance, in order"""
        self.instance_repo.get_instance_or_raise(instance_id)
        return self.instance_repo.get_steps_for_instance(instance_id)

    def list_instances(
        self,
        statuses: Optional[List[InstanceStatus]] = None,
        definition_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 0
    ) -> List[WorkflowInstance]:
        return self.instance_repo.list_instances(
            statuses=statuses,
            definition_id=definition_id,
            subject_id=subject_id,
            skip=skip,
            limit=limit
        )

    def get_audit_trail(self, instance_id: str) -> List[AuditEntry]:
        """Every entry recorded against an instance, oldest first"""
        return self.audit_repo.get_entries_for_instance(instance_id)

    # =========================================================================
    # Committee
    # =========================================================================

    def appoint_member(
        self,
        user_ref: str,
        actor: ActorContext,
        role: CommitteeRole = CommitteeRole.MEMBER,
        specialization: Optional[str] = None
    ) -> CommitteeMember:
        with correlation_scope():
            return self.committee.appoint_member(user_ref, actor, role=role, specialization=specialization)

    def deactivate_member(self, member_id: str, actor: ActorContext) -> CommitteeMember:
        with correlation_scope():
            return self.committee.deactivate_member(member_id, actor)

    def reactivate_member(self, member_id: str, actor: ActorContext) -> CommitteeMember:
        with correlation_scope():
            return self.committee.reactivate_member(member_id, actor)

    def list_members(self, active_only: bool = True) -> List[CommitteeMember]:
        return self.committee.list_members(active_only=active_only)

    def open_review_round(
        self,
        subject_id: str,
        actor: ActorContext,
        instance_id: Optional[str] = None,
        step_index: Optional[int] = None
    ) -> ReviewRound:
        with correlation_scope():
            return self.committee.open_review_round(
                subject_id, actor, instance_id=instance_id, step_index=step_index
            )

    def record_vote(
        self,
        subject_id: str,
        member_id: str,
        decision: Any,
        actor: ActorContext,
        comments: Optional[str] = None,
        rationale: Optional[str] = None,
        correlation_id: Optional[str] = None
    ) -> CommitteeReview:
        """Record a committee vote (see CommitteeService.record_vote)"""
        with correlation_scope(correlation_id):
            return self.committee.record_vote(
                subject_id, member_id, decision, actor, comments=comments, rationale=rationale
            )

    def evaluate_consensus(self, subject_id: str) -> ConsensusOutcome:
        with correlation_scope():
            return self.committee.evaluate_consensus(subject_id)

    def get_review_round(self, subject_id: str) -> ReviewRound:
        return self.committee.get_round(subject_id)

    def list_reviews(self, subject_id: str) -> List[CommitteeReview]:
        return self.committee.list_reviews(subject_id)

    # =========================================================================
    # SLA, events, roles
    # =========================================================================

    def list_delayed(
        self,
        threshold_days: Optional[float] = None,
        now: Optional[datetime] = None
    ) -> List[WorkflowInstance]:
        """Open instances started more than `threshold_days` ago"""
        return self.delay_monitor.scan(threshold_days=threshold_days, now=now)

    def subscribe(self, event_type: Any, handler: EventHandler) -> None:
        self.events.subscribe(event_type, handler)

    def dispatch_events(self, worker_id: Optional[str] = None, limit: Optional[int] = None) -> Dict[str, int]:
        """Deliver pending outbox events to subscribers"""
        return self.events.dispatch_pending(worker_id=worker_id, limit=limit)

    def grant_role(self, actor_id: str, role: str, granted_by: ActorContext) -> bool:
        """Persist a role grant consulted by eligibility checks"""
        self.permission_guard.require_role_admin(granted_by)
        return self.directory.grant_role(actor_id, role, granted_by)

    def revoke_role(self, actor_id: str, role: str, revoked_by: ActorContext) -> bool:
        self.permission_guard.require_role_admin(revoked_by)
        return self.directory.revoke_role(actor_id, role)
