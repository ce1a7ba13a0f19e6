"""Audit trail completeness and correlation"""
import pytest

from approval_engine.domain.enums import AuditAction, AuditSubjectType, StepStatus, WorkflowKind
from approval_engine.domain.errors import PermissionDeniedError
from approval_engine.utils.logger import correlation_scope, get_correlation_id

from .conftest import as_member, committee_steps


def test_every_decision_is_audited(engine, requester, agent, validator, curator, publish):
    definition = publish()
    instance = engine.start_instance(definition.definition_id, "DL-1", requester)

    for index, actor in enumerate([agent, validator, curator]):
        engine.record_step_outcome(instance.instance_id, index, actor, "approve")

    trail = engine.get_audit_trail(instance.instance_id)

    assert [entry.action for entry in trail] == [
        AuditAction.CREATE, AuditAction.APPROVE, AuditAction.APPROVE, AuditAction.APPROVE
    ]
    assert [entry.step_index for entry in trail[1:]] == [0, 1, 2]
    assert [entry.actor for entry in trail[1:]] == [agent.actor_id, validator.actor_id, curator.actor_id]
    assert all(entry.subject_type == AuditSubjectType.STEP_EXECUTION for entry in trail[1:])
    assert trail[-1].before == StepStatus.IN_PROGRESS.value
    assert trail[-1].after == StepStatus.COMPLETED.value
    assert trail[-1].details["instance_status_after"] == "completed"


def test_refused_operations_leave_no_entry(engine, requester, validator, publish):
    definition = publish()
    instance = engine.start_instance(definition.definition_id, "DL-1", requester)
    before = engine.audit_repo.count_for_instance(instance.instance_id)

    with pytest.raises(PermissionDeniedError):
        engine.record_step_outcome(instance.instance_id, 0, validator, "approve")

    assert engine.audit_repo.count_for_instance(instance.instance_id) == before


def test_each_call_gets_its_own_correlation_id(engine, requester, agent, publish):
    definition = publish()
    instance = engine.start_instance(definition.definition_id, "DL-1", requester)
    engine.record_step_outcome(instance.instance_id, 0, agent, "approve")

    trail = engine.get_audit_trail(instance.instance_id)

    assert all(entry.correlation_id for entry in trail)
    assert trail[0].correlation_id != trail[1].correlation_id
    assert get_correlation_id() is None


def test_consensus_shares_the_vote_correlation_id(engine, requester, publish, committee):
    definition = publish(steps=committee_steps(), kind=WorkflowKind.PUBLICATION)
    instance = engine.start_instance(definition.definition_id, "PUB-1", requester)
    for member in committee[:2]:
        engine.record_vote("PUB-1", member.member_id, "approved", as_member(member))

    engine.record_vote(
        "PUB-1", committee[2].member_id, "approved", as_member(committee[2]),
        correlation_id="COR-final-vote"
    )

    entries = engine.audit_repo.get_entries_by_correlation_id("COR-final-vote")
    assert [entry.action for entry in entries] == [
        AuditAction.VOTE, AuditAction.CONSENSUS, AuditAction.APPROVE
    ]
    assert entries[-1].instance_id == instance.instance_id
    assert entries[-1].step_index == 1


def test_outer_scope_is_reused(engine, publish):
    with correlation_scope("COR-batch"):
        first = publish()
        second = publish()

    ids = {
        entry.correlation_id
        for definition in (first, second)
        for entry in engine.audit_repo.get_entries_for_subject(definition.definition_id)
    }
    assert ids == {"COR-batch"}
