"""
Pytest Configuration and Fixtures

Every test runs against a fresh in-memory MongoDB (mongomock) patched into
the shared mongo client module, with the production indexes created.
"""

import mongomock
import pytest

from approval_engine.domain.enums import CommitteeRole, WorkflowKind, SYSTEM_ROLE
from approval_engine.domain.models import ActorContext, StepDefinition
from approval_engine.engine import WorkflowEngine
from approval_engine.repositories import mongo_client
from approval_engine.repositories.mongo_client import create_indexes
from approval_engine.utils.idgen import generate_id


@pytest.fixture
def test_db(monkeypatch):
    """Provide an isolated database with indexes."""
    db = mongomock.MongoClient()["approval_engine_test"]
    monkeypatch.setattr(mongo_client, "_database", db)
    create_indexes()
    yield db


@pytest.fixture
def engine(test_db):
    """Workflow engine wired to the test database."""
    return WorkflowEngine()


# =============================================================================
# Actors
# =============================================================================

@pytest.fixture
def admin():
    return ActorContext(actor_id="admin-1", display_name="Admin", roles=["admin"])


@pytest.fixture
def agent():
    return ActorContext(actor_id="agent-1", display_name="Agent DL", roles=["agent_dl"])


@pytest.fixture
def validator():
    return ActorContext(actor_id="validator-1", display_name="Validateur", roles=["validateur"])


@pytest.fixture
def curator():
    return ActorContext(actor_id="curator-1", display_name="Conservateur", roles=["conservateur"])


@pytest.fixture
def requester():
    return ActorContext(actor_id="user-42", display_name="Requester")


# =============================================================================
# Definitions
# =============================================================================

def three_steps():
    return [
        StepDefinition(name="Réception", required_role="agent_dl"),
        StepDefinition(name="Vérification", required_role="validateur"),
        StepDefinition(name="Archivage", required_role="conservateur"),
    ]


def committee_steps():
    return [
        StepDefinition(name="Enregistrement", required_role=SYSTEM_ROLE, auto_complete=True),
        StepDefinition(name="Examen du comité", required_role="comite_validation", committee_review=True),
        StepDefinition(name="Validation éditoriale", required_role="validateur"),
    ]


@pytest.fixture
def publish(engine, admin):
    """Create and publish a definition; returns the published definition."""
    def _publish(steps=None, kind=WorkflowKind.LEGAL_DEPOSIT, name=None, start_pending=False):
        draft = engine.create_definition(
            name or f"Workflow {generate_id()}",
            kind,
            steps if steps is not None else three_steps(),
            admin,
            start_pending=start_pending
        )
        return engine.publish_definition(draft.definition_id, admin)
    return _publish


@pytest.fixture
def committee(engine, admin):
    """Three active committee members, the first one president."""
    return [
        engine.appoint_member("reviewer-1", admin, role=CommitteeRole.PRESIDENT),
        engine.appoint_member("reviewer-2", admin),
        engine.appoint_member("reviewer-3", admin, specialization="histoire"),
    ]


def as_member(member):
    """Actor casting a member's own vote."""
    return ActorContext(actor_id=member.user_ref)
