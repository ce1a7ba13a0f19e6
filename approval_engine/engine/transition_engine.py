"""Transition Engine - The state machine driving instances through their steps

Each mutating call follows the same pattern:
1. Load and check state
2. Check permission
3. Validate input
4. Compare-and-swap the instance (the linearization point), then its steps
5. Write audit entry
6. Emit event when the instance became terminal
"""
from typing import Any, Callable, List, Optional

from ..domain.models import (
    ActorContext, WorkflowDefinition, WorkflowInstance, StepExecution, StepDefinition
)
from ..domain.enums import (
    AuditAction, InstanceStatus, StepDecision, StepStatus
)
from ..domain.errors import StateError, TerminalStateError, ValidationError
from ..repositories.definition_repo import DefinitionRepository
from ..repositories.instance_repo import InstanceRepository
from ..services.directory_service import RoleDirectory
from ..services.event_service import EventService
from .audit_writer import AuditWriter
from .permission_guard import PermissionGuard
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Called with (instance, step execution, step definition) once a committee step becomes current
StepActivatedHook = Callable[[WorkflowInstance, StepExecution, StepDefinition], Any]
# Called with the cancelled instance
InstanceCancelledHook = Callable[[WorkflowInstance, ActorContext], Any]
# Called with (instance, decided step, actor) once a committee step is decided or the instance ended on a decision
StepDecidedHook = Callable[[WorkflowInstance, StepExecution, ActorContext], Any]


class TransitionEngine:
    """Applies actor decisions to workflow instances"""

    def __init__(
        self,
        instance_repo: InstanceRepository,
        definition_repo: DefinitionRepository,
        directory: RoleDirectory,
        permission_guard: PermissionGuard,
        audit_writer: AuditWriter,
        event_service: EventService
    ):
        self.instance_repo = instance_repo
        self.definition_repo = definition_repo
        self.directory = directory
        self.permission_guard = permission_guard
        self.audit_writer = audit_writer
        self.event_service = event_service
        self.committee_step_hooks: List[StepActivatedHook] = []
        self.cancel_hooks: List[InstanceCancelledHook] = []
        self.step_decided_hooks: List[StepDecidedHook] = []

    # =========================================================================
    # Assignment
    # =========================================================================

    def assignment_for(self, step_definition: StepDefinition) -> dict:
        """Role, candidate pool and (when unambiguous) assignee for a step"""
        pool = self.directory.resolve_pool(step_definition.required_role)
        return {
            "assigned_role": step_definition.required_role,
            "assigned_pool": pool,
            "assigned_to": pool[0] if len(pool) == 1 else None,
        }

    def after_activation(
        self,
        instance: WorkflowInstance,
        step: StepExecution,
        step_definition: StepDefinition
    ) -> None:
        """Run whatever must happen as soon as a step becomes current"""
        if step_definition.is_system and step_definition.auto_complete:
            logger.info(
                f"Auto-completing system step '{step.name}'",
                extra={"instance_id": instance.instance_id, "step_index": step.step_index}
            )
            self._record(
                instance.instance_id,
                step.step_index,
                ActorContext.system(),
                StepDecision.APPROVE,
                auto=True
            )
        elif step_definition.committee_review:
            for hook in self.committee_step_hooks:
                hook(instance, step, step_definition)

    # =========================================================================
    # Step outcomes
    # =========================================================================

    def record_step_outcome(
        self,
        instance_id: str,
        step_index: int,
        actor: ActorContext,
        decision: Any,
        comments: Optional[str] = None
    ) -> StepExecution:
        """
        Approve or reject the current step of an instance

        Raises:
            NotFoundError: unknown instance or step
            StateError: terminal instance, or step not current / not actionable
            PermissionDeniedError: actor not eligible for the step's role
            ValidationError: bad decision, or rejection without comments
            ConflictError: another call changed the instance first
        """
        return self._record(instance_id, step_index, actor, decision, comments)

    def _record(
        self,
        instance_id: str,
        step_index: int,
        actor: ActorContext,
        decision: Any,
        comments: Optional[str] = None,
        auto: bool = False
    ) -> StepExecution:
        decision = self._coerce_decision(decision)

        instance = self.instance_repo.get_instance_or_raise(instance_id)
        if instance.is_terminal:
            raise TerminalStateError(
                f"Instance {instance_id} is {instance.status.value}",
                details={"instance_id": instance_id, "status": instance.status.value}
            )

        if step_index != instance.current_step_index:
            raise StateError(
                f"Step {step_index} is not the current step of instance {instance_id}",
                details={
                    "instance_id": instance_id,
                    "step_index": step_index,
                    "current_step_index": instance.current_step_index,
                }
            )

        step = self.instance_repo.get_step_or_raise(instance_id, step_index)
        if not step.status.is_actionable:
            raise StateError(
                f"Step {step_index} of instance {instance_id} is {step.status.value}",
                details={"instance_id": instance_id, "step_index": step_index, "status": step.status.value}
            )

        definition = self.definition_repo.get_definition_or_raise(instance.definition_id)
        step_definition = definition.steps[step_index]
        self.permission_guard.require_step_permission(actor, step, step_definition)

        comments = comments.strip() if comments and comments.strip() else None
        if decision == StepDecision.REJECT and not comments:
            raise ValidationError(
                "A rejection requires a comment",
                details={"instance_id": instance_id, "step_index": step_index}
            )

        if decision == StepDecision.REJECT:
            return self._apply_rejection(instance, step, step_definition, actor, comments)
        return self._apply_approval(instance, step, definition, actor, comments, auto=auto)

    def _apply_approval(
        self,
        instance: WorkflowInstance,
        step: StepExecution,
        definition: WorkflowDefinition,
        actor: ActorContext,
        comments: Optional[str],
        auto: bool = False
    ) -> StepExecution:
        now = utc_now()
        next_index = step.step_index + 1
        is_last = next_index >= len(definition.steps)

        if is_last:
            instance_updates = {
                "status": InstanceStatus.COMPLETED.value,
                "completed_at": now,
            }
        else:
            instance_updates = {
                "status": InstanceStatus.IN_PROGRESS.value,
                "current_step_index": next_index,
            }

        instance_after = self.instance_repo.update_instance(
            instance.instance_id,
            instance_updates,
            expected_version=instance.version,
            expected_status=instance.status
        )

        step_after = self.instance_repo.update_step(
            instance.instance_id,
            step.step_index,
            {
                "status": StepStatus.COMPLETED.value,
                "decision": StepDecision.APPROVE.value,
                "decided_by": actor.actor_id,
                "assigned_to": step.assigned_to or actor.actor_id,
                "comments": comments,
                "completed_at": now,
            },
            expected_version=step.version,
            expected_status=step.status
        )

        self.audit_writer.write_step_outcome(
            step_before=step,
            step_after=step_after,
            instance_before=instance,
            instance_after=instance_after,
            action=AuditAction.AUTO_COMPLETE if auto else AuditAction.APPROVE,
            actor=actor,
            comments=comments
        )

        logger.info(
            f"Step '{step.name}' approved by {actor.actor_id}",
            extra={
                "instance_id": instance.instance_id,
                "step_index": step.step_index,
                "actor_id": actor.actor_id,
                "status": instance_after.status.value,
            }
        )

        self._after_decision(instance_after, step_after, definition.steps[step.step_index], actor)

        if is_last:
            self.event_service.emit_instance_terminal(instance_after)
            return step_after

        next_definition = definition.steps[next_index]
        next_step = self.instance_repo.update_step(
            instance.instance_id,
            next_index,
            {
                "status": StepStatus.IN_PROGRESS.value,
                "started_at": now,
                **self.assignment_for(next_definition),
            },
            expected_status=StepStatus.PENDING
        )
        self.after_activation(instance_after, next_step, next_definition)
        return step_after

    def _apply_rejection(
        self,
        instance: WorkflowInstance,
        step: StepExecution,
        step_definition: StepDefinition,
        actor: ActorContext,
        comments: str
    ) -> StepExecution:
        now = utc_now()

        instance_after = self.instance_repo.update_instance(
            instance.instance_id,
            {
                "status": InstanceStatus.REJECTED.value,
                "completed_at": now,
            },
            expected_version=instance.version,
            expected_status=instance.status
        )

        step_after = self.instance_repo.update_step(
            instance.instance_id,
            step.step_index,
            {
                "status": StepStatus.REJECTED.value,
                "decision": StepDecision.REJECT.value,
                "decided_by": actor.actor_id,
                "assigned_to": step.assigned_to or actor.actor_id,
                "comments": comments,
                "completed_at": now,
            },
            expected_version=step.version,
            expected_status=step.status
        )
        skipped = self.instance_repo.skip_open_steps(instance.instance_id, after_index=step.step_index)

        self.audit_writer.write_step_outcome(
            step_before=step,
            step_after=step_after,
            instance_before=instance,
            instance_after=instance_after,
            action=AuditAction.REJECT,
            actor=actor,
            comments=comments
        )

        logger.info(
            f"Step '{step.name}' rejected by {actor.actor_id}; {skipped} later steps skipped",
            extra={
                "instance_id": instance.instance_id,
                "step_index": step.step_index,
                "actor_id": actor.actor_id,
                "status": instance_after.status.value,
            }
        )

        self._after_decision(instance_after, step_after, step_definition, actor)
        self.event_service.emit_instance_terminal(instance_after)
        return step_after

    def _after_decision(
        self,
        instance_after: WorkflowInstance,
        step_after: StepExecution,
        step_definition: StepDefinition,
        actor: ActorContext
    ) -> None:
        """Notify listeners once a committee step is decided or the instance has ended"""
        if step_definition.committee_review or instance_after.is_terminal:
            for hook in self.step_decided_hooks:
                hook(instance_after, step_after, actor)

    # =========================================================================
    # Cancellation
    # =========================================================================

    def cancel_instance(
        self,
        instance_id: str,
        actor: ActorContext,
        reason: Optional[str] = None
    ) -> WorkflowInstance:
        """Cancel a non-terminal instance; every open step is skipped"""
        instance = self.instance_repo.get_instance_or_raise(instance_id)
        self.permission_guard.require_cancel_permission(actor, instance_id)

        if instance.is_terminal:
            raise TerminalStateError(
                f"Instance {instance_id} is already {instance.status.value}",
                details={"instance_id": instance_id, "status": instance.status.value}
            )

        instance_after = self.instance_repo.update_instance(
            instance_id,
            {
                "status": InstanceStatus.CANCELLED.value,
                "completed_at": utc_now(),
                "cancellation_reason": reason,
            },
            expected_version=instance.version,
            expected_status=instance.status
        )
        skipped = self.instance_repo.skip_open_steps(instance_id)

        self.audit_writer.write_instance_cancelled(instance, instance_after, actor, reason, skipped)
        logger.info(
            f"Instance cancelled by {actor.actor_id}",
            extra={"instance_id": instance_id, "actor_id": actor.actor_id, "status": "cancelled"}
        )

        for hook in self.cancel_hooks:
            hook(instance_after, actor)

        self.event_service.emit_instance_terminal(instance_after)
        return instance_after

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _coerce_decision(decision: Any) -> StepDecision:
        try:
            return StepDecision(decision)
        except ValueError:
            raise ValidationError(
                f"Unknown decision '{decision}'",
                details={"allowed": [d.value for d in StepDecision]}
            )
