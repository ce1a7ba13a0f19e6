"""Instance Manager - Starts workflow instances from published definitions"""
from typing import Any, Dict, List, Optional
from pydantic import ValidationError as PydanticValidationError

from ..domain.models import (
    ActorContext, WorkflowDefinition, WorkflowInstance, StepExecution, METADATA_MODELS
)
from ..domain.enums import DefinitionStatus, InstanceStatus, StepStatus, WorkflowKind
from ..domain.errors import (
    AlreadyRunningError, DefinitionInactiveError, MetadataValidationError, ValidationError
)
from ..repositories.definition_repo import DefinitionRepository
from ..repositories.instance_repo import InstanceRepository
from .audit_writer import AuditWriter
from .transition_engine import TransitionEngine
from ..utils.idgen import generate_instance_id, generate_step_execution_id
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


class InstanceManager:
    """Creates instances and materializes their step executions"""

    def __init__(
        self,
        instance_repo: InstanceRepository,
        definition_repo: DefinitionRepository,
        transitions: TransitionEngine,
        audit_writer: AuditWriter
    ):
        self.instance_repo = instance_repo
        self.definition_repo = definition_repo
        self.transitions = transitions
        self.audit_writer = audit_writer

    def start_instance(
        self,
        definition_id: str,
        subject_id: str,
        actor: ActorContext,
        metadata: Optional[Dict[str, Any]] = None
    ) -> WorkflowInstance:
        """
        Start a workflow for a subject

        Every step of the definition gets a StepExecution; the first one is
        in progress and assigned, the rest are pending.

        Raises:
            ValidationError: empty subject or metadata not matching the workflow kind
            NotFoundError: unknown definition
            DefinitionInactiveError: definition not published and active
            AlreadyRunningError: a live instance exists for (definition, subject)
        """
        if not subject_id or not subject_id.strip():
            raise ValidationError("subject_id is required")

        definition = self.definition_repo.get_definition_or_raise(definition_id)
        self._require_startable(definition)
        clean_metadata = self.validate_metadata(definition.kind, metadata)

        existing = self.instance_repo.find_live_instance(definition_id, subject_id)
        if existing:
            raise AlreadyRunningError(
                f"Instance {existing.instance_id} is already running for subject {subject_id}",
                details={"instance_id": existing.instance_id, "subject_id": subject_id}
            )

        now = utc_now()
        instance = WorkflowInstance(
            instance_id=generate_instance_id(),
            definition_id=definition.definition_id,
            definition_name=definition.name,
            kind=definition.kind,
            subject_id=subject_id,
            current_step_index=0,
            status=InstanceStatus.PENDING if definition.start_pending else InstanceStatus.IN_PROGRESS,
            started_by=actor.actor_id,
            started_at=now,
            updated_at=now,
            metadata=clean_metadata
        )
        steps = self._materialize_steps(instance, definition)

        self.instance_repo.create_instance(instance, steps)
        self.audit_writer.write_instance_created(instance, actor, len(steps))

        logger.info(
            f"Started '{definition.name}' for subject {subject_id}",
            extra={
                "instance_id": instance.instance_id,
                "definition_id": definition_id,
                "subject_id": subject_id,
                "actor_id": actor.actor_id,
            }
        )

        self.transitions.after_activation(instance, steps[0], definition.steps[0])
        # Auto-completion or a committee round may already have moved things on
        return self.instance_repo.get_instance_or_raise(instance.instance_id)

    def _require_startable(self, definition: WorkflowDefinition) -> None:
        if definition.status != DefinitionStatus.PUBLISHED or not definition.active or not definition.steps:
            raise DefinitionInactiveError(
                f"Definition '{definition.name}' is not active",
                details={
                    "definition_id": definition.definition_id,
                    "status": definition.status.value,
                    "active": definition.active,
                }
            )

    def _materialize_steps(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition
    ) -> List[StepExecution]:
        steps = []
        for index, step_definition in enumerate(definition.steps):
            step = StepExecution(
                step_execution_id=generate_step_execution_id(),
                instance_id=instance.instance_id,
                step_index=index,
                name=step_definition.name,
                required_role=step_definition.required_role,
                status=StepStatus.PENDING
            )
            if index == 0:
                step = step.model_copy(update={
                    "status": StepStatus.IN_PROGRESS,
                    "started_at": instance.started_at,
                    **self.transitions.assignment_for(step_definition),
                })
            steps.append(step)
        return steps

    @staticmethod
    def validate_metadata(kind: WorkflowKind, metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Check metadata against the typed payload of the workflow kind"""
        model = METADATA_MODELS[kind]
        try:
            payload = model.model_validate(metadata or {})
        except PydanticValidationError as e:
            raise MetadataValidationError(
                f"Invalid metadata for a {kind.value} workflow",
                details={"errors": [
                    {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                    for err in e.errors()
                ]}
            )
        return payload.model_dump(exclude_none=True)
