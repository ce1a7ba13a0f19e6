"""Definition Store - Authoring, validation and publication of workflow definitions

Definitions are drafted, validated, then published. Publishing freezes the
step list; afterwards only the active flag may change.
"""
from typing import Any, Dict, List, Optional

from ..domain.models import ActorContext, StepDefinition, WorkflowDefinition
from ..domain.enums import AuditAction, DefinitionStatus, WorkflowKind, SYSTEM_ROLE
from ..domain.errors import StateError, WorkflowValidationError
from ..domain.predefined import predefined_definitions
from ..repositories.definition_repo import DefinitionRepository
from .audit_writer import AuditWriter
from .permission_guard import PermissionGuard
from ..utils.idgen import generate_definition_id
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


class DefinitionStore:
    """Service for workflow definition lifecycle"""

    def __init__(
        self,
        permission_guard: PermissionGuard,
        audit_writer: AuditWriter,
        repo: DefinitionRepository = None
    ):
        self.repo = repo or DefinitionRepository()
        self.permission_guard = permission_guard
        self.audit_writer = audit_writer

    # =========================================================================
    # Authoring
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
        """Create a draft definition (inactive until published)"""
        self.permission_guard.require_definition_admin(actor)
        if not name or not name.strip():
            raise WorkflowValidationError("Definition name is required")

        now = utc_now()
        definition = WorkflowDefinition(
            definition_id=generate_definition_id(),
            name=name.strip(),
            kind=kind,
            description=description,
            steps=steps,
            active=False,
            status=DefinitionStatus.DRAFT,
            start_pending=start_pending,
            created_by=actor.actor_id,
            created_at=now,
            updated_at=now
        )
        self.repo.create_definition(definition)
        self.audit_writer.write_definition_change(definition, AuditAction.CREATE_DEFINITION, actor)
        return definition

    def update_draft(
        self,
        definition_id: str,
        steps: List[StepDefinition],
        actor: ActorContext,
        description: Optional[str] = None
    ) -> WorkflowDefinition:
        """Replace the steps of a draft; published definitions are immutable"""
        self.permission_guard.require_definition_admin(actor)
        definition = self.repo.get_definition_or_raise(definition_id)
        if definition.status != DefinitionStatus.DRAFT:
            raise StateError(
                f"Definition {definition_id} is {definition.status.value}; its steps can no longer change",
                details={"definition_id": definition_id, "status": definition.status.value}
            )

        updates: Dict[str, Any] = {"steps": [step.model_dump() for step in steps]}
        if description is not None:
            updates["description"] = description

        updated = self.repo.update_definition(definition_id, updates, expected_version=definition.version)
        self.audit_writer.write_definition_change(
            updated, AuditAction.UPDATE_DEFINITION, actor,
            before=definition.status, details={"step_count": len(steps)}
        )
        return updated

    # =========================================================================
    # Validation
    # =========================================================================

    def validate_steps(self, steps: List[StepDefinition]) -> List[Dict[str, Any]]:
        """
        Validate a step list

        Returns a list of error dicts (empty when valid)
        """
        errors: List[Dict[str, Any]] = []

        if not steps:
            errors.append({
                "type": "EMPTY_STEPS",
                "message": "Workflow must have at least one step",
                "path": "steps"
            })
            return errors

        seen_names = set()
        for i, step in enumerate(steps):
            if step.name in seen_names:
                errors.append({
                    "type": "DUPLICATE_STEP_NAME",
                    "message": f"Step name '{step.name}' is used more than once",
                    "path": f"steps[{i}].name"
                })
            seen_names.add(step.name)

            if not step.required_role or not step.required_role.strip():
                errors.append({
                    "type": "MISSING_ROLE",
                    "message": f"Step '{step.name}' has no required role",
                    "path": f"steps[{i}].required_role"
                })

            if step.auto_complete and step.required_role != SYSTEM_ROLE:
                errors.append({
                    "type": "AUTO_COMPLETE_NOT_SYSTEM",
                    "message": f"Step '{step.name}' auto-completes but is not a system step",
                    "path": f"steps[{i}].auto_complete"
                })

            if step.committee_review and step.required_role == SYSTEM_ROLE:
                errors.append({
                    "type": "COMMITTEE_SYSTEM_STEP",
                    "message": f"Committee step '{step.name}' cannot be a system step",
                    "path": f"steps[{i}].committee_review"
                })

        return errors

    def validate_definition(self, definition_id: str) -> Dict[str, Any]:
        """Validate a stored definition without publishing it"""
        definition = self.repo.get_definition_or_raise(definition_id)
        errors = self.validate_steps(definition.steps)
        return {"is_valid": not errors, "errors": errors}

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def publish_definition(self, definition_id: str, actor: ActorContext) -> WorkflowDefinition:
        """
        Publish a draft and make it active

        Raises:
            WorkflowValidationError: If validation fails
            StateError: If the definition is not a draft
        """
        self.permission_guard.require_definition_admin(actor)
        definition = self.repo.get_definition_or_raise(definition_id)

        if definition.status != DefinitionStatus.DRAFT:
            raise StateError(
                f"Definition {definition_id} is already {definition.status.value}",
                details={"definition_id": definition_id}
            )

        errors = self.validate_steps(definition.steps)
        if errors:
            raise WorkflowValidationError(
                "Workflow validation failed",
                details={"definition_id": definition_id, "errors": errors}
            )

        published = self.repo.update_definition(
            definition_id,
            {
                "status": DefinitionStatus.PUBLISHED.value,
                "active": True,
                "published_at": utc_now(),
            },
            expected_version=definition.version
        )
        self.audit_writer.write_definition_change(published, AuditAction.PUBLISH, actor, before=definition.status)

        logger.info(
            f"Published definition {published.name}",
            extra={"definition_id": definition_id, "actor_id": actor.actor_id}
        )
        return published

    def set_active(self, definition_id: str, active: bool, actor: ActorContext) -> WorkflowDefinition:
        """Toggle whether new instances may start from a published definition"""
        self.permission_guard.require_definition_admin(actor)
        definition = self.repo.get_definition_or_raise(definition_id)

        if definition.status != DefinitionStatus.PUBLISHED:
            raise StateError(
                f"Only published definitions can be {'activated' if active else 'deactivated'}",
                details={"definition_id": definition_id, "status": definition.status.value}
            )
        if definition.active == active:
            return definition

        updated = self.repo.update_definition(
            definition_id, {"active": active}, expected_version=definition.version
        )
        self.audit_writer.write_definition_change(
            updated,
            AuditAction.ACTIVATE if active else AuditAction.DEACTIVATE,
            actor,
            before=definition.status
        )
        return updated

    def archive_definition(self, definition_id: str, actor: ActorContext) -> WorkflowDefinition:
        """Retire a published definition; running instances are unaffected"""
        self.permission_guard.require_definition_admin(actor)
        definition = self.repo.get_definition_or_raise(definition_id)

        if definition.status != DefinitionStatus.PUBLISHED:
            raise StateError(
                f"Definition {definition_id} is {definition.status.value} and cannot be archived",
                details={"definition_id": definition_id}
            )

        archived = self.repo.update_definition(
            definition_id,
            {"status": DefinitionStatus.ARCHIVED.value, "active": False},
            expected_version=definition.version
        )
        self.audit_writer.write_definition_change(archived, AuditAction.ARCHIVE, actor, before=definition.status)
        return archived

    def install_predefined(self, actor: ActorContext) -> List[WorkflowDefinition]:
        """Create and publish the stock workflows that do not exist yet (matched by name)"""
        installed = []
        for template in predefined_definitions():
            if self.repo.get_definition_by_name(template["name"]):
                logger.info(f"Predefined workflow already present: {template['name']}")
                continue
            draft = self.create_definition(
                name=template["name"],
                kind=template["kind"],
                steps=template["steps"],
                actor=actor,
                description=template.get("description"),
                start_pending=template.get("start_pending", False)
            )
            installed.append(self.publish_definition(draft.definition_id, actor))
        return installed

    # =========================================================================
    # Queries
    # =========================================================================

    def get_definition(self, definition_id: str) -> WorkflowDefinition:
        """Get definition or raise DefinitionNotFoundError"""
        return self.repo.get_definition_or_raise(definition_id)

    def list_definitions(
        self,
        kind: Optional[WorkflowKind] = None,
        active_only: bool = False
    ) -> List[WorkflowDefinition]:
        """List definitions"""
        return self.repo.list_definitions(kind=kind, active_only=active_only)
