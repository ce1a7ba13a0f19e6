"""Audit Writer - Append-only audit entries"""
from typing import Any, Dict, List, Optional

from ..domain.models import (
    AuditEntry, ActorContext, WorkflowDefinition, WorkflowInstance, StepExecution,
    CommitteeMember, ReviewRound, CommitteeReview
)
from ..domain.enums import AuditAction, AuditSubjectType
from ..repositories.audit_repo import AuditRepository
from ..utils.idgen import generate_audit_entry_id
from ..utils.logger import get_correlation_id
from ..utils.time import utc_now


def _status(value: Any) -> Optional[str]:
    if value is None:
        return None
    return getattr(value, "value", value)


class AuditWriter:
    """
    Write audit entries (append-only)

    Every state change produces exactly one entry. A call that changes
    several records on purpose (an auto-complete chain, a consensus that
    resolves a committee step) writes one entry per logical change.
    """

    def __init__(self, repo: AuditRepository = None):
        self.repo = repo or AuditRepository()

    def write_entry(
        self,
        subject_type: AuditSubjectType,
        subject_id: str,
        action: AuditAction,
        actor: ActorContext,
        before: Any = None,
        after: Any = None,
        instance_id: Optional[str] = None,
        step_index: Optional[int] = None,
        decision: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> AuditEntry:
        """Write a single audit entry"""
        entry = AuditEntry(
            audit_entry_id=generate_audit_entry_id(),
            subject_type=subject_type,
            subject_id=subject_id,
            action=action,
            actor=actor.actor_id,
            before=_status(before),
            after=_status(after),
            instance_id=instance_id,
            step_index=step_index,
            decision=decision,
            details=details or {},
            timestamp=utc_now(),
            correlation_id=get_correlation_id()
        )
        return self.repo.create_entry(entry)

    # =========================================================================
    # Definitions
    # =========================================================================

    def write_definition_change(
        self,
        definition: WorkflowDefinition,
        action: AuditAction,
        actor: ActorContext,
        before: Any = None,
        details: Optional[Dict[str, Any]] = None
    ) -> AuditEntry:
        """Write create / update / publish / (de)activate / archive of a definition"""
        return self.write_entry(
            subject_type=AuditSubjectType.WORKFLOW_DEFINITION,
            subject_id=definition.definition_id,
            action=action,
            actor=actor,
            before=before,
            after=definition.status,
            details={"name": definition.name, "active": definition.active, **(details or {})}
        )

    # =========================================================================
    # Instances and steps
    # =========================================================================

    def write_instance_created(
        self,
        instance: WorkflowInstance,
        actor: ActorContext,
        step_count: int
    ) -> AuditEntry:
        """Write instance creation"""
        return self.write_entry(
            subject_type=AuditSubjectType.WORKFLOW_INSTANCE,
            subject_id=instance.instance_id,
            action=AuditAction.CREATE,
            actor=actor,
            before=None,
            after=instance.status,
            instance_id=instance.instance_id,
            step_index=instance.current_step_index,
            details={
                "definition_id": instance.definition_id,
                "subject_id": instance.subject_id,
                "step_count": step_count,
            }
        )

    def write_step_outcome(
        self,
        step_before: StepExecution,
        step_after: StepExecution,
        instance_before: WorkflowInstance,
        instance_after: WorkflowInstance,
        action: AuditAction,
        actor: ActorContext,
        comments: Optional[str] = None
    ) -> AuditEntry:
        """Write an approve / reject / auto-complete on a step"""
        return self.write_entry(
            subject_type=AuditSubjectType.STEP_EXECUTION,
            subject_id=step_after.step_execution_id,
            action=action,
            actor=actor,
            before=step_before.status,
            after=step_after.status,
            instance_id=step_after.instance_id,
            step_index=step_after.step_index,
            decision=_status(step_after.decision),
            details={
                "step_name": step_after.name,
                "comments": comments,
                "instance_status_before": _status(instance_before.status),
                "instance_status_after": _status(instance_after.status),
                "current_step_index": instance_after.current_step_index,
            }
        )

    def write_instance_cancelled(
        self,
        instance_before: WorkflowInstance,
        instance_after: WorkflowInstance,
        actor: ActorContext,
        reason: Optional[str],
        skipped_steps: int
    ) -> AuditEntry:
        """Write instance cancellation"""
        return self.write_entry(
            subject_type=AuditSubjectType.WORKFLOW_INSTANCE,
            subject_id=instance_after.instance_id,
            action=AuditAction.CANCEL,
            actor=actor,
            before=instance_before.status,
            after=instance_after.status,
            instance_id=instance_after.instance_id,
            step_index=instance_after.current_step_index,
            details={"reason": reason, "skipped_steps": skipped_steps}
        )

    # =========================================================================
    # Committee
    # =========================================================================

    def write_member_change(
        self,
        member: CommitteeMember,
        action: AuditAction,
        actor: ActorContext,
        before_active: Optional[bool]
    ) -> AuditEntry:
        """Write appointment / deactivation / reactivation of a member"""
        return self.write_entry(
            subject_type=AuditSubjectType.COMMITTEE_MEMBER,
            subject_id=member.member_id,
            action=action,
            actor=actor,
            before=None if before_active is None else ("active" if before_active else "inactive"),
            after="active" if member.active else "inactive",
            details={"user_ref": member.user_ref, "role": member.role.value}
        )

    def write_round_opened(
        self,
        review_round: ReviewRound,
        actor: ActorContext,
        superseded_round_id: Optional[str] = None
    ) -> AuditEntry:
        """Write opening of a review round"""
        return self.write_entry(
            subject_type=AuditSubjectType.REVIEW_ROUND,
            subject_id=review_round.round_id,
            action=AuditAction.OPEN_ROUND,
            actor=actor,
            before=None,
            after=review_round.status,
            instance_id=review_round.instance_id,
            step_index=review_round.step_index,
            details={
                "subject_id": review_round.subject_id,
                "round_number": review_round.round_number,
                "member_ids": review_round.member_ids,
                "superseded_round_id": superseded_round_id,
            }
        )

    def write_vote(
        self,
        review_before: CommitteeReview,
        review_after: CommitteeReview,
        actor: ActorContext,
        instance_id: Optional[str] = None
    ) -> AuditEntry:
        """Write a committee vote"""
        return self.write_entry(
            subject_type=AuditSubjectType.COMMITTEE_REVIEW,
            subject_id=review_after.review_id,
            action=AuditAction.VOTE,
            actor=actor,
            before=review_before.status,
            after=review_after.status,
            instance_id=instance_id,
            decision=_status(review_after.status),
            details={
                "subject_id": review_after.subject_id,
                "round_id": review_after.round_id,
                "member_id": review_after.member_id,
                "comments": review_after.comments,
                "rationale": review_after.rationale,
            }
        )

    def write_round_closed(
        self,
        round_before: ReviewRound,
        round_after: ReviewRound,
        actor: ActorContext,
        action: AuditAction = AuditAction.CONSENSUS,
        details: Optional[Dict[str, Any]] = None
    ) -> AuditEntry:
        """Write consensus resolution, supersession or cancellation of a round"""
        return self.write_entry(
            subject_type=AuditSubjectType.REVIEW_ROUND,
            subject_id=round_after.round_id,
            action=action,
            actor=actor,
            before=round_before.status,
            after=round_after.status,
            instance_id=round_after.instance_id,
            step_index=round_after.step_index,
            decision=_status(round_after.status),
            details={"subject_id": round_after.subject_id, "policy": round_after.policy, **(details or {})}
        )

    def write_revision_requested(
        self,
        round_before: ReviewRound,
        round_after: ReviewRound,
        comments: List[str]
    ) -> AuditEntry:
        """Write the hold of a round awaiting a resubmission"""
        return self.write_entry(
            subject_type=AuditSubjectType.REVIEW_ROUND,
            subject_id=round_after.round_id,
            action=AuditAction.REQUEST_REVISION,
            actor=ActorContext.system(),
            before=round_before.status,
            after=round_after.status,
            instance_id=round_after.instance_id,
            step_index=round_after.step_index,
            details={"subject_id": round_after.subject_id, "comments": comments}
        )
