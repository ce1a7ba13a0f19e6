"""Definition lifecycle: drafting, validation, publication, activation"""
import pytest

from approval_engine.domain.enums import AuditAction, DefinitionStatus, WorkflowKind, SYSTEM_ROLE
from approval_engine.domain.errors import (
    DefinitionInactiveError, DefinitionNotFoundError, PermissionDeniedError,
    StateError, WorkflowValidationError
)
from approval_engine.domain.models import ActorContext, StepDefinition

from .conftest import three_steps


def test_create_definition_is_inactive_draft(engine, admin):
    draft = engine.create_definition("Dépôt légal", WorkflowKind.LEGAL_DEPOSIT, three_steps(), admin)

    assert draft.status == DefinitionStatus.DRAFT
    assert draft.active is False
    assert engine.get_definition(draft.definition_id).name == "Dépôt légal"


def test_draft_cannot_start_instances(engine, admin, requester):
    draft = engine.create_definition("Dépôt légal", WorkflowKind.LEGAL_DEPOSIT, three_steps(), admin)

    with pytest.raises(DefinitionInactiveError):
        engine.start_instance(draft.definition_id, "DL-1", requester)


def test_publish_activates_definition(engine, admin):
    draft = engine.create_definition("Dépôt légal", WorkflowKind.LEGAL_DEPOSIT, three_steps(), admin)

    published = engine.publish_definition(draft.definition_id, admin)

    assert published.status == DefinitionStatus.PUBLISHED
    assert published.active is True
    assert published.published_at is not None
    assert published.version == draft.version + 1


def test_publish_twice_fails(engine, admin, publish):
    definition = publish()

    with pytest.raises(StateError):
        engine.publish_definition(definition.definition_id, admin)


def test_update_draft_replaces_steps(engine, admin):
    draft = engine.create_definition("Dépôt légal", WorkflowKind.LEGAL_DEPOSIT, three_steps(), admin)

    updated = engine.update_draft(
        draft.definition_id,
        [StepDefinition(name="Unique", required_role="agent_dl")],
        admin,
        description="Version courte"
    )

    assert [step.name for step in updated.steps] == ["Unique"]
    assert updated.description == "Version courte"


def test_published_steps_are_frozen(engine, admin, publish):
    definition = publish()

    with pytest.raises(StateError):
        engine.update_draft(definition.definition_id, three_steps()[:1], admin)


def test_publish_rejects_invalid_steps(engine, admin):
    steps = [
        StepDefinition(name="Contrôle", required_role="agent_dl", auto_complete=True),
        StepDefinition(name="Contrôle", required_role="validateur"),
        StepDefinition(name="Comité", required_role=SYSTEM_ROLE, committee_review=True),
    ]
    draft = engine.create_definition("Invalide", WorkflowKind.PUBLICATION, steps, admin)

    with pytest.raises(WorkflowValidationError) as exc_info:
        engine.publish_definition(draft.definition_id, admin)

    error_types = {error["type"] for error in exc_info.value.details["errors"]}
    assert error_types == {"AUTO_COMPLETE_NOT_SYSTEM", "DUPLICATE_STEP_NAME", "COMMITTEE_SYSTEM_STEP"}
    assert engine.get_definition(draft.definition_id).status == DefinitionStatus.DRAFT


def test_publish_rejects_empty_definition(engine, admin):
    draft = engine.create_definition("Vide", WorkflowKind.PUBLICATION, [], admin)

    report = engine.validate_definition(draft.definition_id)

    assert report["is_valid"] is False
    assert report["errors"][0]["type"] == "EMPTY_STEPS"


def test_deactivated_definition_refuses_new_instances(engine, admin, requester, publish):
    definition = publish()
    running = engine.start_instance(definition.definition_id, "DL-1", requester)

    engine.set_definition_active(definition.definition_id, False, admin)

    with pytest.raises(DefinitionInactiveError):
        engine.start_instance(definition.definition_id, "DL-2", requester)
    # Running instances are unaffected
    assert engine.get_instance(running.instance_id).status.value == "in_progress"

    engine.set_definition_active(definition.definition_id, True, admin)
    assert engine.start_instance(definition.definition_id, "DL-2", requester).subject_id == "DL-2"


def test_archive_definition(engine, admin, requester, publish):
    definition = publish()

    archived = engine.archive_definition(definition.definition_id, admin)

    assert archived.status == DefinitionStatus.ARCHIVED
    assert archived.active is False
    with pytest.raises(DefinitionInactiveError):
        engine.start_instance(definition.definition_id, "DL-1", requester)
    with pytest.raises(StateError):
        engine.set_definition_active(definition.definition_id, True, admin)


def test_definition_management_requires_admin(engine, agent):
    with pytest.raises(PermissionDeniedError):
        engine.create_definition("Dépôt légal", WorkflowKind.LEGAL_DEPOSIT, three_steps(), agent)


def test_system_actor_can_manage_definitions(engine):
    draft = engine.create_definition(
        "Automatique", WorkflowKind.LEGAL_DEPOSIT, three_steps(), ActorContext.system()
    )
    assert draft.created_by == SYSTEM_ROLE


def test_unknown_definition(engine):
    with pytest.raises(DefinitionNotFoundError):
        engine.get_definition("WFD-missing")


def test_install_predefined_is_idempotent(engine):
    installed = engine.install_predefined()

    assert {definition.kind for definition in installed} == set(WorkflowKind)
    assert all(definition.active for definition in installed)
    assert engine.install_predefined() == []
    assert len(engine.list_definitions(active_only=True)) == 4


def test_list_definitions_by_kind(engine, publish):
    publish(kind=WorkflowKind.RESTORATION)
    publish(kind=WorkflowKind.LEGAL_DEPOSIT)

    restorations = engine.list_definitions(kind=WorkflowKind.RESTORATION)

    assert len(restorations) == 1
    assert restorations[0].kind == WorkflowKind.RESTORATION


def test_definition_changes_are_audited(engine, admin):
    draft = engine.create_definition("Dépôt légal", WorkflowKind.LEGAL_DEPOSIT, three_steps(), admin)
    engine.publish_definition(draft.definition_id, admin)
    engine.set_definition_active(draft.definition_id, False, admin)

    entries = engine.audit_repo.get_entries_for_subject(draft.definition_id)
    assert [entry.action for entry in entries] == [
        AuditAction.CREATE_DEFINITION,
        AuditAction.PUBLISH,
        AuditAction.DEACTIVATE,
    ]
    assert all(entry.actor == admin.actor_id for entry in entries)
