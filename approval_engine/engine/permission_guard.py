"""Permission Guard - Authorization enforcement for engine actions"""
from typing import List, Optional

from ..domain.models import ActorContext, StepExecution, StepDefinition, CommitteeMember
from ..domain.errors import PermissionDeniedError
from ..config.settings import settings
from ..services.directory_service import RoleDirectory
from ..utils.logger import get_logger

logger = get_logger(__name__)


class PermissionGuard:
    """
    Permission enforcement for engine operations

    Rules:
    - A step may be decided by an actor the role directory confirms for the
      step's required role, or by an actor holding an override role
    - Committee steps are decided by consensus (the system actor) or an override
    - Cancelling an instance needs a cancel role or an override role
    - A vote is cast by the member's own user or an override
    - Committee administration needs a committee admin role
    """

    def __init__(self, directory: RoleDirectory):
        self.directory = directory

    @staticmethod
    def _holds_any(actor: ActorContext, roles: List[str]) -> bool:
        return any(role in actor.roles for role in roles)

    def has_override(self, actor: ActorContext) -> bool:
        """Administrative bypass of step roles"""
        return self._holds_any(actor, settings.admin_override_roles_list)

    def can_act_on_step(
        self,
        actor: ActorContext,
        step: StepExecution,
        step_definition: Optional[StepDefinition] = None
    ) -> bool:
        """Check if actor may record an outcome on a step"""
        if self.has_override(actor):
            return True
        if step_definition is not None and step_definition.committee_review:
            return actor.is_system
        return self.directory.is_eligible(actor, step.required_role)

    def can_cancel(self, actor: ActorContext) -> bool:
        """Check if actor may cancel an instance"""
        return self.has_override(actor) or self._holds_any(actor, settings.cancel_roles_list)

    def can_vote_as(self, actor: ActorContext, member: CommitteeMember) -> bool:
        """Check if actor may cast the vote of a committee member"""
        return actor.actor_id == member.user_ref or self.has_override(actor)

    def can_manage_committee(self, actor: ActorContext) -> bool:
        """Check if actor may appoint members and open review rounds"""
        return actor.is_system or self._holds_any(actor, settings.committee_admin_roles_list)

    def can_manage_definitions(self, actor: ActorContext) -> bool:
        """Check if actor may author and publish definitions"""
        return actor.is_system or self.has_override(actor)

    # =========================================================================
    # Enforcement helpers
    # =========================================================================

    def _deny(self, actor: ActorContext, message: str, **details) -> None:
        logger.warning(
            f"Permission denied: {message}",
            extra={"actor_id": actor.actor_id, "action": details.get("action")}
        )
        raise PermissionDeniedError(message, details={"actor_id": actor.actor_id, **details})

    def require_step_permission(
        self,
        actor: ActorContext,
        step: StepExecution,
        step_definition: Optional[StepDefinition] = None
    ) -> None:
        """Require permission to decide a step"""
        if not self.can_act_on_step(actor, step, step_definition):
            self._deny(
                actor,
                f"Actor {actor.actor_id} is not eligible for role '{step.required_role}'",
                action="record_step_outcome",
                required_role=step.required_role,
                step_index=step.step_index
            )

    def require_cancel_permission(self, actor: ActorContext, instance_id: str) -> None:
        """Require permission to cancel"""
        if not self.can_cancel(actor):
            self._deny(actor, "Cancelling an instance requires an elevated role",
                       action="cancel_instance", instance_id=instance_id)

    def require_vote_permission(self, actor: ActorContext, member: CommitteeMember) -> None:
        """Require permission to vote for a member"""
        if not self.can_vote_as(actor, member):
            self._deny(actor, f"Actor {actor.actor_id} cannot vote for member {member.member_id}",
                       action="record_vote", member_id=member.member_id)

    def require_committee_admin(self, actor: ActorContext) -> None:
        """Require committee administration permission"""
        if not self.can_manage_committee(actor):
            self._deny(actor, "Committee administration requires an admin role", action="manage_committee")

    def require_definition_admin(self, actor: ActorContext) -> None:
        """Require definition authoring permission"""
        if not self.can_manage_definitions(actor):
            self._deny(actor, "Managing workflow definitions requires an admin role", action="manage_definitions")

    def require_role_admin(self, actor: ActorContext) -> None:
        """Require permission to grant and revoke directory roles"""
        if not self.can_manage_definitions(actor):
            self._deny(actor, "Granting roles requires an admin role", action="manage_roles")
