"""Committee Service - Members, review rounds, votes and consensus

A review round polls every active member once. Votes are compare-and-swapped
onto pending reviews; each vote re-evaluates the round with the configured
consensus policy. A resolved round linked to an instance step decides that
step through the transition engine, as the system actor.
"""
from typing import Any, Dict, List, Optional

from ..domain.models import (
    ActorContext, CommitteeMember, CommitteeReview, ReviewRound,
    StepDefinition, StepExecution, WorkflowInstance
)
from ..domain.enums import (
    AuditAction, CommitteeRole, ConsensusOutcome, ReviewStatus, RoundStatus, StepDecision
)
from ..domain.errors import (
    AlreadyExistsError, AlreadyRunningError, ConcurrencyError, ReviewNotFoundError,
    StateError, ValidationError
)
from ..repositories.committee_repo import CommitteeRepository
from ..services.event_service import EventService
from ..config.settings import settings
from .audit_writer import AuditWriter
from .consensus import ConsensusPolicy, VoteTally, get_policy
from .permission_guard import PermissionGuard
from .transition_engine import TransitionEngine
from ..utils.idgen import generate_member_id, generate_review_id, generate_round_id
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)

_RESOLVED_OUTCOMES = {
    RoundStatus.APPROVED: ConsensusOutcome.APPROVED,
    RoundStatus.REJECTED: ConsensusOutcome.REJECTED,
}


class CommitteeService:
    """Committee consensus for submissions and committee steps"""

    def __init__(
        self,
        permission_guard: PermissionGuard,
        audit_writer: AuditWriter,
        event_service: EventService,
        transitions: TransitionEngine,
        repo: CommitteeRepository = None,
        policy: Optional[ConsensusPolicy] = None
    ):
        self.repo = repo or CommitteeRepository()
        self.permission_guard = permission_guard
        self.audit_writer = audit_writer
        self.event_service = event_service
        self.transitions = transitions
        self.policy = policy or get_policy(settings.consensus_policy)

    # =========================================================================
    # Members
    # =========================================================================

    def appoint_member(
        self,
        user_ref: str,
        actor: ActorContext,
        role: CommitteeRole = CommitteeRole.MEMBER,
        specialization: Optional[str] = None
    ) -> CommitteeMember:
        """Give a user a seat on the committee"""
        self.permission_guard.require_committee_admin(actor)
        if not user_ref or not user_ref.strip():
            raise ValidationError("user_ref is required")

        if self.repo.find_active_member_by_user(user_ref):
            raise AlreadyExistsError(
                f"User {user_ref} already holds an active seat",
                details={"user_ref": user_ref}
            )
        role = CommitteeRole(role)
        if role == CommitteeRole.PRESIDENT and self._active_president():
            raise AlreadyExistsError("The committee already has an active president")

        member = CommitteeMember(
            member_id=generate_member_id(),
            user_ref=user_ref,
            role=role,
            specialization=specialization,
            active=True,
            appointed_by=actor.actor_id,
            appointed_at=utc_now()
        )
        self.repo.create_member(member)
        self.audit_writer.write_member_change(member, AuditAction.APPOINT_MEMBER, actor, before_active=None)
        return member

    def deactivate_member(self, member_id: str, actor: ActorContext) -> CommitteeMember:
        """
        Withdraw a member's seat

        Open rounds polling the member are re-evaluated since the member's
        review now counts as an abstention.
        """
        self.permission_guard.require_committee_admin(actor)
        member = self.repo.get_member_or_raise(member_id)
        if not member.active:
            return member

        updated = self.repo.update_member(member_id, {"active": False, "deactivated_at": utc_now()})
        self.audit_writer.write_member_change(updated, AuditAction.DEACTIVATE_MEMBER, actor, before_active=True)

        for review_round in self.repo.list_open_rounds_for_member(member_id):
            self.evaluate_consensus(review_round.subject_id)
        return updated

    def reactivate_member(self, member_id: str, actor: ActorContext) -> CommitteeMember:
        """Restore a withdrawn seat"""
        self.permission_guard.require_committee_admin(actor)
        member = self.repo.get_member_or_raise(member_id)
        if member.active:
            return member
        if self.repo.find_active_member_by_user(member.user_ref):
            raise AlreadyExistsError(
                f"User {member.user_ref} already holds an active seat",
                details={"user_ref": member.user_ref}
            )
        if member.role == CommitteeRole.PRESIDENT and self._active_president():
            raise AlreadyExistsError("The committee already has an active president")

        updated = self.repo.update_member(member_id, {"active": True, "deactivated_at": None})
        self.audit_writer.write_member_change(updated, AuditAction.REACTIVATE_MEMBER, actor, before_active=False)
        return updated

    def list_members(self, active_only: bool = True) -> List[CommitteeMember]:
        return self.repo.list_members(active_only=active_only)

    def _active_president(self) -> Optional[CommitteeMember]:
        for member in self.repo.list_members(active_only=True):
            if member.role == CommitteeRole.PRESIDENT:
                return member
        return None

    # =========================================================================
    # Rounds
    # =========================================================================

    def open_review_round(
        self,
        subject_id: str,
        actor: ActorContext,
        instance_id: Optional[str] = None,
        step_index: Optional[int] = None
    ) -> ReviewRound:
        """
        Open a review round with one pending review per active member

        A round held for revision (or whose polled members have all left)
        is superseded by the new one.

        Raises:
            ValidationError: the committee has no active member
            AlreadyRunningError: an open round is still collecting votes
        """
        self.permission_guard.require_committee_admin(actor)
        members = self.repo.list_members(active_only=True)
        if not members:
            raise ValidationError(
                "The committee has no active member",
                details={"subject_id": subject_id}
            )

        previous = self.repo.get_latest_round(subject_id)
        superseded = None
        if previous and previous.is_open:
            if not self._can_supersede(previous):
                raise AlreadyRunningError(
                    f"Review round {previous.round_number} is still open for subject {subject_id}",
                    details={"subject_id": subject_id, "round_id": previous.round_id}
                )
            superseded = self._close_round(previous, RoundStatus.SUPERSEDED, actor, AuditAction.SUPERSEDE_ROUND)
            # A resubmission stays attached to the same committee step
            if instance_id is None:
                instance_id, step_index = previous.instance_id, previous.step_index

        review_round = ReviewRound(
            round_id=generate_round_id(),
            subject_id=subject_id,
            round_number=previous.round_number + 1 if previous else 1,
            instance_id=instance_id,
            step_index=step_index,
            member_ids=[member.member_id for member in members],
            policy=self.policy.name,
            opened_by=actor.actor_id,
            opened_at=utc_now()
        )
        reviews = [
            CommitteeReview(
                review_id=generate_review_id(),
                round_id=review_round.round_id,
                subject_id=subject_id,
                member_id=member.member_id
            )
            for member in members
        ]
        self.repo.create_round(review_round, reviews)
        self.audit_writer.write_round_opened(
            review_round, actor, superseded_round_id=superseded.round_id if superseded else None
        )
        return review_round

    def _can_supersede(self, review_round: ReviewRound) -> bool:
        if review_round.revision_requested:
            return True
        active_ids = {member.member_id for member in self.repo.list_members(active_only=True)}
        return not active_ids.intersection(review_round.member_ids)

    def _close_round(
        self,
        review_round: ReviewRound,
        status: RoundStatus,
        actor: ActorContext,
        action: AuditAction,
        details: Optional[Dict[str, Any]] = None
    ) -> ReviewRound:
        closed = self.repo.update_round(
            review_round.round_id,
            {"status": status.value, "resolved_at": utc_now()},
            expected_version=review_round.version,
            expected_status=RoundStatus.OPEN
        )
        self.audit_writer.write_round_closed(review_round, closed, actor, action=action, details=details)
        return closed

    def get_round(self, subject_id: str) -> ReviewRound:
        """Latest round of a subject"""
        return self.repo.get_latest_round_or_raise(subject_id)

    def list_reviews(self, subject_id: str) -> List[CommitteeReview]:
        """Reviews of the latest round of a subject"""
        review_round = self.repo.get_latest_round_or_raise(subject_id)
        return self.repo.get_reviews_for_round(review_round.round_id)

    # =========================================================================
    # Votes
    # =========================================================================

    def record_vote(
        self,
        subject_id: str,
        member_id: str,
        decision: Any,
        actor: ActorContext,
        comments: Optional[str] = None,
        rationale: Optional[str] = None
    ) -> CommitteeReview:
        """
        Record a member's vote on the open round of a subject

        Raises:
            NotFoundError: no round, no member, or no pending review for the member
            StateError: the round is resolved or the member left the committee
            PermissionDeniedError: actor cannot vote for this member
            ValidationError: rejection or revision request without explanation
            ConflictError: the review changed, or the round closed, concurrently
        """
        status = self._coerce_vote(decision)

        review_round = self.repo.get_latest_round_or_raise(subject_id)
        if not review_round.is_open:
            raise StateError(
                f"Review round {review_round.round_number} of subject {subject_id} is {review_round.status.value}",
                details={"subject_id": subject_id, "round_id": review_round.round_id}
            )

        review = self.repo.get_review_or_raise(review_round.round_id, member_id)
        if review.status != ReviewStatus.PENDING:
            raise ReviewNotFoundError(
                f"Member {member_id} has no pending review in round {review_round.round_number}",
                details={"subject_id": subject_id, "member_id": member_id, "status": review.status.value}
            )

        member = self.repo.get_member_or_raise(member_id)
        self.permission_guard.require_vote_permission(actor, member)
        if not member.active:
            raise StateError(
                f"Member {member_id} is no longer on the committee",
                details={"member_id": member_id}
            )

        comments = comments.strip() if comments and comments.strip() else None
        rationale = rationale.strip() if rationale and rationale.strip() else None
        if status != ReviewStatus.APPROVED and not (comments or rationale):
            raise ValidationError(
                f"A '{status.value}' vote requires comments or a rationale",
                details={"subject_id": subject_id, "member_id": member_id}
            )

        recorded = self.repo.update_review(
            review.review_id,
            {
                "status": status.value,
                "comments": comments,
                "rationale": rationale,
                "reviewed_by": actor.actor_id,
                "reviewed_at": utc_now(),
            },
            expected_version=review.version
        )
        current = self.repo.get_round(review_round.round_id)
        if current is None or not current.is_open:
            # The round closed between the check above and the write
            self.repo.withdraw_review(recorded.review_id, expected_version=recorded.version)
            raise ConcurrencyError(
                f"Review round {review_round.round_number} of subject {subject_id} closed while the vote was recorded",
                details={"subject_id": subject_id, "round_id": review_round.round_id, "member_id": member_id}
            )

        self.audit_writer.write_vote(review, recorded, actor, instance_id=review_round.instance_id)

        logger.info(
            f"Vote '{status.value}' recorded for member {member_id}",
            extra={
                "subject_id": subject_id,
                "round_id": review_round.round_id,
                "member_id": member_id,
                "actor_id": actor.actor_id,
            }
        )

        self.evaluate_consensus(subject_id)
        return recorded

    @staticmethod
    def _coerce_vote(decision: Any) -> ReviewStatus:
        aliases = {
            StepDecision.APPROVE.value: ReviewStatus.APPROVED,
            StepDecision.REJECT.value: ReviewStatus.REJECTED,
        }
        value = getattr(decision, "value", decision)
        try:
            status = aliases.get(value) or ReviewStatus(value)
        except ValueError:
            status = None
        if status is None or status == ReviewStatus.PENDING:
            raise ValidationError(
                f"Unknown vote '{decision}'",
                details={"allowed": [s.value for s in ReviewStatus if s != ReviewStatus.PENDING]}
            )
        return status

    # =========================================================================
    # Consensus
    # =========================================================================

    def tally(self, review_round: ReviewRound) -> VoteTally:
        """Counted votes of a round; reviews of inactive members are abstentions"""
        members = {member.member_id: member for member in self.repo.list_members(active_only=False)}
        votes = []
        abstentions = 0
        for review in self.repo.get_reviews_for_round(review_round.round_id):
            member = members.get(review.member_id)
            if member is None or not member.active:
                abstentions += 1
                continue
            votes.append(review)
        return VoteTally(votes=votes, members=members, abstentions=abstentions)

    def evaluate_consensus(self, subject_id: str) -> ConsensusOutcome:
        """
        Evaluate the latest round of a subject

        Any pending counted vote keeps the round pending. Otherwise the policy
        decides; a decision resolves the round and, when the round is linked
        to an instance step, decides that step.
        """
        review_round = self.repo.get_latest_round_or_raise(subject_id)
        if not review_round.is_open:
            return _RESOLVED_OUTCOMES.get(review_round.status, ConsensusOutcome.PENDING)

        tally = self.tally(review_round)
        if tally.pending or not tally.votes:
            return ConsensusOutcome.PENDING

        outcome = self.policy.decide(tally)
        if outcome == ConsensusOutcome.PENDING:
            self._hold_for_revision(review_round, tally)
            return outcome

        return self._resolve(review_round, outcome, tally)

    def _hold_for_revision(self, review_round: ReviewRound, tally: VoteTally) -> None:
        if review_round.revision_requested:
            return
        comments = [
            vote.comments or vote.rationale
            for vote in tally.votes
            if vote.status == ReviewStatus.NEEDS_REVISION
        ]
        try:
            held = self.repo.update_round(
                review_round.round_id,
                {"revision_requested": True},
                expected_version=review_round.version,
                expected_status=RoundStatus.OPEN
            )
        except ConcurrencyError:
            # Another evaluation already held or resolved the round
            return

        self.audit_writer.write_revision_requested(review_round, held, comments)
        self.event_service.emit_revision_requested(held, comments)
        logger.info(
            f"Round {held.round_number} held for revision",
            extra={"subject_id": held.subject_id, "round_id": held.round_id}
        )

    def _resolve(
        self,
        review_round: ReviewRound,
        outcome: ConsensusOutcome,
        tally: VoteTally
    ) -> ConsensusOutcome:
        status = RoundStatus.APPROVED if outcome == ConsensusOutcome.APPROVED else RoundStatus.REJECTED
        system = ActorContext.system()
        try:
            resolved = self._close_round(
                review_round, status, system, AuditAction.CONSENSUS, details=tally.summary()
            )
        except ConcurrencyError:
            current = self.repo.get_round(review_round.round_id)
            if current and not current.is_open:
                return _RESOLVED_OUTCOMES.get(current.status, ConsensusOutcome.PENDING)
            raise

        self.event_service.emit_consensus(resolved, outcome)
        logger.info(
            f"Committee consensus: {outcome.value}",
            extra={"subject_id": resolved.subject_id, "round_id": resolved.round_id, "status": outcome.value}
        )

        if resolved.instance_id is not None and resolved.step_index is not None:
            self._decide_linked_step(resolved, outcome, tally)
        return outcome

    def _decide_linked_step(
        self,
        review_round: ReviewRound,
        outcome: ConsensusOutcome,
        tally: VoteTally
    ) -> None:
        decision = StepDecision.APPROVE if outcome == ConsensusOutcome.APPROVED else StepDecision.REJECT
        explanations = [vote.rationale or vote.comments for vote in tally.votes if vote.rationale or vote.comments]
        summary = (
            f"Committee {outcome.value} in round {review_round.round_number} "
            f"({tally.approvals} for, {tally.rejections} against, {tally.abstentions} abstaining)"
        )
        if explanations:
            summary = f"{summary}: " + " | ".join(explanations)
        try:
            self.transitions.record_step_outcome(
                review_round.instance_id,
                review_round.step_index,
                ActorContext.system(),
                decision,
                comments=summary
            )
        except StateError as e:
            # Terminal instance, or the step was already decided by an override
            logger.warning(
                f"Committee resolved a round whose step is no longer open: {e.message}",
                extra={"instance_id": review_round.instance_id, "round_id": review_round.round_id}
            )

    # =========================================================================
    # Instance hooks
    # =========================================================================

    def on_committee_step(
        self,
        instance: WorkflowInstance,
        step: StepExecution,
        step_definition: StepDefinition
    ) -> Optional[ReviewRound]:
        """Open a round for a committee step that just became current"""
        try:
            return self.open_review_round(
                instance.subject_id,
                ActorContext.system(),
                instance_id=instance.instance_id,
                step_index=step.step_index
            )
        except (ValidationError, AlreadyRunningError) as e:
            # The step waits until an administrator opens the round
            logger.warning(
                f"Could not open a review round for step '{step.name}': {e.message}",
                extra={"instance_id": instance.instance_id, "step_index": step.step_index}
            )
            return None

    def on_instance_cancelled(self, instance: WorkflowInstance, actor: ActorContext) -> None:
        """Cancel the open round linked to a cancelled instance"""
        review_round = self.repo.find_open_round_for_instance(instance.instance_id)
        if review_round:
            self._close_round(review_round, RoundStatus.CANCELLED, actor, AuditAction.CANCEL_ROUND)

    def on_step_decided(self, instance: WorkflowInstance, step: StepExecution, actor: ActorContext) -> None:
        """
        Cancel the open round linked to a step decided outside the committee

        Also closes any round left open on an instance that just ended.
        """
        review_round = self.repo.find_open_round_for_instance(instance.instance_id)
        if review_round is None:
            return
        if review_round.step_index != step.step_index and not instance.is_terminal:
            return
        try:
            self._close_round(
                review_round,
                RoundStatus.CANCELLED,
                actor,
                AuditAction.CANCEL_ROUND,
                details={
                    "step_index": step.step_index,
                    "step_decision": step.decision.value if step.decision else None,
                }
            )
        except ConcurrencyError:
            # The round resolved or closed concurrently
            return
        logger.info(
            f"Round {review_round.round_number} cancelled: step '{step.name}' decided by {actor.actor_id}",
            extra={"instance_id": instance.instance_id, "round_id": review_round.round_id, "actor_id": actor.actor_id}
        )
