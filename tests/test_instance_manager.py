"""Starting instances: step materialization, metadata and the live-instance guard"""
import pytest

from approval_engine.domain.enums import (
    AuditAction, InstanceStatus, StepStatus, WorkflowKind
)
from approval_engine.domain.errors import (
    AlreadyRunningError, DefinitionNotFoundError, MetadataValidationError, ValidationError
)
from approval_engine.domain.models import WorkflowInstance
from approval_engine.utils.idgen import generate_instance_id
from approval_engine.utils.time import utc_now


def test_start_materializes_every_step(engine, requester, publish):
    definition = publish()

    instance = engine.start_instance(definition.definition_id, "DL-2024-001", requester)
    steps = engine.get_steps(instance.instance_id)

    assert instance.status == InstanceStatus.IN_PROGRESS
    assert instance.current_step_index == 0
    assert instance.definition_name == definition.name
    assert instance.started_by == requester.actor_id
    assert [step.step_index for step in steps] == [0, 1, 2]
    assert [step.name for step in steps] == [step.name for step in definition.steps]
    assert [step.status for step in steps] == [
        StepStatus.IN_PROGRESS, StepStatus.PENDING, StepStatus.PENDING
    ]
    assert steps[0].assigned_role == "agent_dl"
    assert steps[0].started_at is not None
    assert steps[1].assigned_role is None


def test_single_candidate_is_assigned(engine, admin, requester, publish):
    engine.grant_role("agent-7", "agent_dl", admin)
    definition = publish()

    instance = engine.start_instance(definition.definition_id, "DL-1", requester)
    first = engine.get_steps(instance.instance_id)[0]

    assert first.assigned_pool == ["agent-7"]
    assert first.assigned_to == "agent-7"


def test_pool_with_several_candidates_stays_unassigned(engine, admin, requester, publish):
    engine.grant_role("agent-7", "agent_dl", admin)
    engine.grant_role("agent-8", "agent_dl", admin)
    definition = publish()

    instance = engine.start_instance(definition.definition_id, "DL-1", requester)
    first = engine.get_steps(instance.instance_id)[0]

    assert first.assigned_pool == ["agent-7", "agent-8"]
    assert first.assigned_to is None


def test_start_pending_definition(engine, agent, requester, publish):
    definition = publish(start_pending=True)

    instance = engine.start_instance(definition.definition_id, "REP-1", requester)
    assert instance.status == InstanceStatus.PENDING
    assert engine.get_steps(instance.instance_id)[0].status == StepStatus.IN_PROGRESS

    engine.record_step_outcome(instance.instance_id, 0, agent, "approve")
    assert engine.get_instance(instance.instance_id).status == InstanceStatus.IN_PROGRESS


def test_second_live_instance_is_refused(engine, requester, publish):
    definition = publish()
    engine.start_instance(definition.definition_id, "DL-1", requester)

    with pytest.raises(AlreadyRunningError):
        engine.start_instance(definition.definition_id, "DL-1", requester)

    assert len(engine.list_instances(subject_id="DL-1")) == 1


def test_other_subject_or_definition_may_run(engine, requester, publish):
    first = publish()
    second = publish()
    engine.start_instance(first.definition_id, "DL-1", requester)

    engine.start_instance(first.definition_id, "DL-2", requester)
    engine.start_instance(second.definition_id, "DL-1", requester)

    assert len(engine.list_instances()) == 3


def test_subject_can_restart_after_terminal_outcome(engine, agent, requester, publish):
    definition = publish()
    first = engine.start_instance(definition.definition_id, "DL-1", requester)
    engine.record_step_outcome(first.instance_id, 0, agent, "reject", comments="Dossier incomplet")

    second = engine.start_instance(definition.definition_id, "DL-1", requester)

    assert second.instance_id != first.instance_id
    assert second.status == InstanceStatus.IN_PROGRESS


def test_unique_index_backs_the_live_guard(engine, publish):
    definition = publish()
    now = utc_now()

    def build():
        return WorkflowInstance(
            instance_id=generate_instance_id(),
            definition_id=definition.definition_id,
            definition_name=definition.name,
            kind=definition.kind,
            subject_id="DL-RACE",
            started_by="user-42",
            started_at=now,
            updated_at=now
        )

    engine.instance_repo.create_instance(build(), [])

    # Simulates a start that raced past the read check
    with pytest.raises(AlreadyRunningError):
        engine.instance_repo.create_instance(build(), [])


def test_metadata_is_validated_against_kind(engine, requester, publish):
    definition = publish(kind=WorkflowKind.LEGAL_DEPOSIT)

    with pytest.raises(MetadataValidationError) as exc_info:
        engine.start_instance(
            definition.definition_id, "DL-1", requester,
            metadata={"priority": "someday", "unknown_field": 1}
        )

    fields = {error["field"] for error in exc_info.value.details["errors"]}
    assert fields == {"priority", "unknown_field"}
    assert engine.list_instances() == []


def test_metadata_is_stored_normalized(engine, requester, publish):
    definition = publish(kind=WorkflowKind.REPRODUCTION)

    instance = engine.start_instance(
        definition.definition_id, "REP-1", requester,
        metadata={"reproduction_modality": "papier", "copies": 3}
    )

    assert instance.metadata == {"reproduction_modality": "papier", "copies": 3, "item_refs": []}


def test_blank_subject_is_refused(engine, requester, publish):
    definition = publish()

    with pytest.raises(ValidationError):
        engine.start_instance(definition.definition_id, "  ", requester)


def test_unknown_definition_is_refused(engine, requester):
    with pytest.raises(DefinitionNotFoundError):
        engine.start_instance("WFD-missing", "DL-1", requester)


def test_start_is_audited(engine, requester, publish):
    definition = publish()

    instance = engine.start_instance(definition.definition_id, "DL-1", requester, correlation_id="COR-start")
    trail = engine.get_audit_trail(instance.instance_id)

    assert len(trail) == 1
    assert trail[0].action == AuditAction.CREATE
    assert trail[0].actor == requester.actor_id
    assert trail[0].after == InstanceStatus.IN_PROGRESS.value
    assert trail[0].details["step_count"] == 3
    assert trail[0].correlation_id == "COR-start"
