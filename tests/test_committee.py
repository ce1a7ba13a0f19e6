"""Committee review rounds, votes and consensus driving committee steps"""
import pytest

from approval_engine.domain.enums import (
    AuditAction, CommitteeRole, ConsensusOutcome, EventType, InstanceStatus, ReviewStatus,
    RoundStatus, StepStatus, WorkflowKind
)
from approval_engine.domain.errors import (
    AlreadyExistsError, AlreadyRunningError, ConflictError, PermissionDeniedError,
    ReviewNotFoundError, RoundNotFoundError, StateError, ValidationError
)
from approval_engine.domain.models import ActorContext
from approval_engine.engine import WorkflowEngine
from approval_engine.engine.consensus import MajorityPolicy

from .conftest import as_member, committee_steps


@pytest.fixture
def submission(engine, requester, publish, committee):
    """Publication instance waiting on its committee step."""
    definition = publish(steps=committee_steps(), kind=WorkflowKind.PUBLICATION)
    return engine.start_instance(definition.definition_id, "PUB-2024-007", requester)


def vote_all(engine, subject_id, members, decision, **kwargs):
    for member in members:
        engine.record_vote(subject_id, member.member_id, decision, as_member(member), **kwargs)


def test_committee_step_opens_a_round(engine, submission, committee):
    review_round = engine.get_review_round("PUB-2024-007")

    assert submission.current_step_index == 1
    assert review_round.round_number == 1
    assert review_round.status == RoundStatus.OPEN
    assert review_round.instance_id == submission.instance_id
    assert review_round.step_index == 1
    assert sorted(review_round.member_ids) == sorted(m.member_id for m in committee)
    reviews = engine.list_reviews("PUB-2024-007")
    assert len(reviews) == 3
    assert all(review.status == ReviewStatus.PENDING for review in reviews)


def test_unanimous_approval_advances_the_instance(engine, submission, committee):
    vote_all(engine, "PUB-2024-007", committee[:2], "approved")
    assert engine.evaluate_consensus("PUB-2024-007") == ConsensusOutcome.PENDING
    assert engine.get_instance(submission.instance_id).current_step_index == 1

    engine.record_vote(
        "PUB-2024-007", committee[2].member_id, "approved", as_member(committee[2]),
        rationale="Contenu conforme"
    )

    assert engine.evaluate_consensus("PUB-2024-007") == ConsensusOutcome.APPROVED
    instance = engine.get_instance(submission.instance_id)
    assert instance.current_step_index == 2
    committee_step = engine.get_steps(submission.instance_id)[1]
    assert committee_step.status == StepStatus.COMPLETED
    assert committee_step.decided_by == "system"
    assert "Contenu conforme" in committee_step.comments
    events = engine.events.repo.get_events_for_subject("PUB-2024-007")
    assert [event.event_type for event in events] == [EventType.CONSENSUS_APPROVED]


def test_any_rejection_rejects_the_instance(engine, submission, committee):
    engine.record_vote(
        "PUB-2024-007", committee[0].member_id, "rejected", as_member(committee[0]),
        comments="Plagiat partiel"
    )
    # Pending votes keep the round open even after a rejection
    assert engine.evaluate_consensus("PUB-2024-007") == ConsensusOutcome.PENDING

    vote_all(engine, "PUB-2024-007", committee[1:], "approved")

    assert engine.get_review_round("PUB-2024-007").status == RoundStatus.REJECTED
    instance = engine.get_instance(submission.instance_id)
    assert instance.status == InstanceStatus.REJECTED
    assert [s.status for s in engine.get_steps(submission.instance_id)] == [
        StepStatus.COMPLETED, StepStatus.REJECTED, StepStatus.SKIPPED
    ]
    event_types = [e.event_type for e in engine.events.repo.get_events_for_subject("PUB-2024-007")]
    assert event_types == [EventType.CONSENSUS_REJECTED, EventType.INSTANCE_REJECTED]


def test_revision_request_holds_the_round(engine, submission, committee):
    vote_all(engine, "PUB-2024-007", committee[:2], "approved")
    engine.record_vote(
        "PUB-2024-007", committee[2].member_id, "needs_revision", as_member(committee[2]),
        comments="Revoir la bibliographie"
    )

    assert engine.evaluate_consensus("PUB-2024-007") == ConsensusOutcome.PENDING
    assert engine.evaluate_consensus("PUB-2024-007") == ConsensusOutcome.PENDING
    held = engine.get_review_round("PUB-2024-007")
    assert held.status == RoundStatus.OPEN
    assert held.revision_requested is True
    events = engine.events.repo.get_events_for_subject("PUB-2024-007")
    assert [event.event_type for event in events] == [EventType.REVISION_REQUESTED]
    assert events[0].payload["comments"] == ["Revoir la bibliographie"]
    assert engine.get_instance(submission.instance_id).current_step_index == 1


def test_resubmission_supersedes_the_held_round(engine, submission, committee, admin):
    vote_all(engine, "PUB-2024-007", committee[:2], "approved")
    engine.record_vote(
        "PUB-2024-007", committee[2].member_id, "needs_revision", as_member(committee[2]),
        comments="Revoir la bibliographie"
    )

    second = engine.open_review_round("PUB-2024-007", admin)

    assert second.round_number == 2
    assert second.instance_id == submission.instance_id
    assert second.step_index == 1
    superseded = engine.committee_repo.get_round(
        engine.audit_repo.get_entries_for_instance(
            submission.instance_id, actions=[AuditAction.SUPERSEDE_ROUND]
        )[0].subject_id
    )
    assert superseded.status == RoundStatus.SUPERSEDED

    vote_all(engine, "PUB-2024-007", committee, "approved")
    assert engine.get_instance(submission.instance_id).current_step_index == 2


def test_open_round_cannot_be_replaced(engine, submission, admin):
    with pytest.raises(AlreadyRunningError):
        engine.open_review_round("PUB-2024-007", admin)


def test_vote_rules(engine, submission, committee, requester):
    member = committee[0]

    with pytest.raises(PermissionDeniedError):
        engine.record_vote("PUB-2024-007", member.member_id, "approved", requester)
    with pytest.raises(ValidationError):
        engine.record_vote("PUB-2024-007", member.member_id, "rejected", as_member(member))
    with pytest.raises(ValidationError):
        engine.record_vote("PUB-2024-007", member.member_id, "pending", as_member(member))

    engine.record_vote("PUB-2024-007", member.member_id, "approve", as_member(member))
    with pytest.raises(ReviewNotFoundError):
        engine.record_vote("PUB-2024-007", member.member_id, "approved", as_member(member))


def test_override_may_vote_for_a_member(engine, submission, committee, admin):
    review = engine.record_vote("PUB-2024-007", committee[0].member_id, "approved", admin)

    assert review.reviewed_by == admin.actor_id


def test_vote_on_resolved_round_fails(engine, submission, committee):
    vote_all(engine, "PUB-2024-007", committee, "approved")

    with pytest.raises(StateError):
        engine.record_vote("PUB-2024-007", committee[0].member_id, "approved", as_member(committee[0]))


def test_deactivated_member_abstains(engine, submission, committee, admin):
    vote_all(engine, "PUB-2024-007", committee[:2], "approved")

    engine.deactivate_member(committee[2].member_id, admin)

    assert engine.get_review_round("PUB-2024-007").status == RoundStatus.APPROVED
    assert engine.get_instance(submission.instance_id).current_step_index == 2
    consensus = engine.audit_repo.get_entries_for_instance(
        submission.instance_id, actions=[AuditAction.CONSENSUS]
    )[0]
    assert consensus.details["abstentions"] == 1
    assert consensus.details["approvals"] == 2


def test_committee_step_without_members_waits(engine, requester, publish, admin):
    definition = publish(steps=committee_steps(), kind=WorkflowKind.PUBLICATION)

    instance = engine.start_instance(definition.definition_id, "PUB-1", requester)

    assert instance.current_step_index == 1
    with pytest.raises(RoundNotFoundError):
        engine.get_review_round("PUB-1")

    # An administrator opens the round once the committee is seated
    member = engine.appoint_member("reviewer-1", admin)
    engine.open_review_round("PUB-1", admin, instance_id=instance.instance_id, step_index=1)
    engine.record_vote("PUB-1", member.member_id, "approved", as_member(member))
    assert engine.get_instance(instance.instance_id).current_step_index == 2


def test_round_requires_active_members(engine, admin):
    with pytest.raises(ValidationError):
        engine.open_review_round("PUB-1", admin)


def test_committee_step_cannot_be_decided_directly(engine, submission, validator):
    with pytest.raises(PermissionDeniedError):
        engine.record_step_outcome(submission.instance_id, 1, validator, "approve")


def test_cancelling_the_instance_cancels_its_round(engine, submission, admin):
    engine.cancel_instance(submission.instance_id, admin, reason="Retrait de l'auteur")

    assert engine.get_review_round("PUB-2024-007").status == RoundStatus.CANCELLED
    cancel_round = engine.audit_repo.get_entries_for_instance(
        submission.instance_id, actions=[AuditAction.CANCEL_ROUND]
    )
    assert len(cancel_round) == 1
    assert cancel_round[0].actor == admin.actor_id


def test_override_approval_cancels_the_round(engine, submission, committee, admin):
    vote_all(engine, "PUB-2024-007", committee[:2], "approved")

    engine.record_step_outcome(submission.instance_id, 1, admin, "approve", comments="Urgence éditoriale")

    assert engine.get_instance(submission.instance_id).current_step_index == 2
    assert engine.get_review_round("PUB-2024-007").status == RoundStatus.CANCELLED
    with pytest.raises(StateError):
        engine.record_vote("PUB-2024-007", committee[2].member_id, "approved", as_member(committee[2]))

    # Leaving the committee no longer touches the closed round
    engine.deactivate_member(committee[2].member_id, admin)

    votes = engine.audit_repo.get_entries_for_instance(submission.instance_id, actions=[AuditAction.VOTE])
    assert len(votes) == 2
    cancel_round = engine.audit_repo.get_entries_for_instance(
        submission.instance_id, actions=[AuditAction.CANCEL_ROUND]
    )
    assert [entry.actor for entry in cancel_round] == [admin.actor_id]
    assert cancel_round[0].details["step_decision"] == "approve"
    assert engine.events.repo.get_events_for_subject("PUB-2024-007") == []
    assert engine.get_steps(submission.instance_id)[1].decided_by == admin.actor_id


def test_override_rejection_cancels_the_round(engine, submission, committee, admin):
    engine.record_step_outcome(submission.instance_id, 1, admin, "reject", comments="Hors ligne éditoriale")

    assert engine.get_instance(submission.instance_id).status == InstanceStatus.REJECTED
    assert engine.get_review_round("PUB-2024-007").status == RoundStatus.CANCELLED
    with pytest.raises(StateError):
        engine.record_vote("PUB-2024-007", committee[0].member_id, "approved", as_member(committee[0]))
    assert all(review.status == ReviewStatus.PENDING for review in engine.list_reviews("PUB-2024-007"))


def test_vote_racing_a_round_closure_is_withdrawn(engine, submission, committee, monkeypatch):
    repo = engine.committee_repo
    review_round = engine.get_review_round("PUB-2024-007")
    record = repo.update_review

    def record_then_close(review_id, updates, expected_version):
        recorded = record(review_id, updates, expected_version)
        repo.update_round(review_round.round_id, {"status": RoundStatus.CANCELLED.value})
        return recorded

    monkeypatch.setattr(repo, "update_review", record_then_close)

    with pytest.raises(ConflictError):
        engine.record_vote("PUB-2024-007", committee[0].member_id, "approved", as_member(committee[0]))

    review = repo.get_review_or_raise(review_round.round_id, committee[0].member_id)
    assert review.status == ReviewStatus.PENDING
    assert review.reviewed_by is None
    votes = engine.audit_repo.get_entries_for_instance(submission.instance_id, actions=[AuditAction.VOTE])
    assert votes == []
    assert engine.get_instance(submission.instance_id).current_step_index == 1


def test_standalone_round(engine, committee, admin):
    engine.open_review_round("MS-42", admin)

    vote_all(engine, "MS-42", committee, "approved")

    review_round = engine.get_review_round("MS-42")
    assert review_round.status == RoundStatus.APPROVED
    assert review_round.instance_id is None
    events = engine.events.repo.get_events_for_subject("MS-42")
    assert [(e.event_type, e.instance_id) for e in events] == [(EventType.CONSENSUS_APPROVED, None)]


def test_majority_policy_engine(test_db, admin, committee):
    engine = WorkflowEngine(policy=MajorityPolicy())
    engine.open_review_round("MS-7", admin)

    engine.record_vote("MS-7", committee[0].member_id, "rejected", as_member(committee[0]), comments="Non")
    vote_all(engine, "MS-7", committee[1:], "approved")

    round_after = engine.get_review_round("MS-7")
    assert round_after.status == RoundStatus.APPROVED
    assert round_after.policy == "majority"


def test_member_management(engine, admin, agent):
    member = engine.appoint_member("reviewer-1", admin)

    with pytest.raises(AlreadyExistsError):
        engine.appoint_member("reviewer-1", admin)
    with pytest.raises(PermissionDeniedError):
        engine.appoint_member("reviewer-2", agent)

    engine.deactivate_member(member.member_id, admin)
    assert engine.list_members() == []
    assert len(engine.list_members(active_only=False)) == 1

    reactivated = engine.reactivate_member(member.member_id, admin)
    assert reactivated.active is True
    assert reactivated.deactivated_at is None

    actions = [e.action for e in engine.audit_repo.get_entries_for_subject(member.member_id)]
    assert actions == [
        AuditAction.APPOINT_MEMBER, AuditAction.DEACTIVATE_MEMBER, AuditAction.REACTIVATE_MEMBER
    ]


def test_single_president(engine, committee, admin):
    with pytest.raises(AlreadyExistsError):
        engine.appoint_member("reviewer-9", admin, role=CommitteeRole.PRESIDENT)


def test_system_actor_manages_rounds(engine, committee):
    review_round = engine.open_review_round("MS-1", ActorContext.system())

    assert review_round.opened_by == "system"
