"""Directory Service - Role eligibility and candidate pool resolution

The engine never decides on its own who may act as a role. It asks a
RoleDirectory. DirectoryService is the stock implementation: role claims on
the caller's ActorContext plus grants persisted in the role_grants collection.
"""
from typing import List

from ..domain.models import ActorContext
from ..domain.enums import SYSTEM_ROLE
from ..domain.errors import ValidationError
from ..repositories.role_grant_repo import RoleGrantRepository
from ..utils.logger import get_logger

logger = get_logger(__name__)


class RoleDirectory:
    """Contract consumed by the engine"""

    def is_eligible(self, actor: ActorContext, role: str) -> bool:
        raise NotImplementedError

    def resolve_pool(self, role: str) -> List[str]:
        raise NotImplementedError


class DirectoryService(RoleDirectory):
    """Role directory backed by actor claims and persisted grants"""

    def __init__(self, grant_repo: RoleGrantRepository = None):
        self.grant_repo = grant_repo or RoleGrantRepository()

    def is_eligible(self, actor: ActorContext, role: str) -> bool:
        """
        Check whether the actor may act as `role`

        The system sentinel role is only ever held by the system actor; it
        cannot be claimed or granted.
        """
        if role == SYSTEM_ROLE:
            return actor.is_system
        if role in actor.roles:
            return True
        return self.grant_repo.has_grant(actor.actor_id, role)

    def resolve_pool(self, role: str) -> List[str]:
        """Actors that may self-assign a step requiring `role`"""
        if role == SYSTEM_ROLE:
            return [SYSTEM_ROLE]
        return self.grant_repo.get_actors_with_role(role)

    def grant_role(self, actor_id: str, role: str, granted_by: ActorContext) -> bool:
        """Persist a role grant"""
        if role == SYSTEM_ROLE:
            raise ValidationError("The system role cannot be granted", details={"role": role})
        return self.grant_repo.grant(actor_id, role, granted_by.actor_id)

    def revoke_role(self, actor_id: str, role: str) -> bool:
        """Remove a persisted role grant"""
        return self.grant_repo.revoke(actor_id, role)

    def roles_for(self, actor: ActorContext) -> List[str]:
        """Effective roles of an actor"""
        granted = self.grant_repo.get_roles_for_actor(actor.actor_id)
        return sorted(set(actor.roles) | set(granted))
