"""Role Grant Repository - Persisted role memberships used by the role directory"""
from typing import List
from pymongo.collection import Collection
from pymongo import ASCENDING

from .mongo_client import get_collection
from ..utils.logger import get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)


class RoleGrantRepository:
    """Repository for (actor, role) grants"""

    def __init__(self):
        self._grants: Collection = get_collection("role_grants")

    def grant(self, actor_id: str, role: str, granted_by: str) -> bool:
        """Grant a role; returns False when the grant already existed"""
        result = self._grants.update_one(
            {"actor_id": actor_id, "role": role},
            {"$setOnInsert": {
                "actor_id": actor_id,
                "role": role,
                "granted_by": granted_by,
                "granted_at": utc_now(),
            }},
            upsert=True
        )
        created = result.upserted_id is not None
        if created:
            logger.info(f"Granted role {role} to {actor_id}", extra={"actor_id": actor_id})
        return created

    def revoke(self, actor_id: str, role: str) -> bool:
        """Remove a grant; returns False when there was none"""
        result = self._grants.delete_one({"actor_id": actor_id, "role": role})
        if result.deleted_count:
            logger.info(f"Revoked role {role} from {actor_id}", extra={"actor_id": actor_id})
        return bool(result.deleted_count)

    def has_grant(self, actor_id: str, role: str) -> bool:
        """Check a single grant"""
        return self._grants.count_documents({"actor_id": actor_id, "role": role}, limit=1) > 0

    def get_actors_with_role(self, role: str) -> List[str]:
        """Actor ids holding a role"""
        cursor = self._grants.find({"role": role}).sort("actor_id", ASCENDING)
        return [doc["actor_id"] for doc in cursor]

    def get_roles_for_actor(self, actor_id: str) -> List[str]:
        """Roles granted to an actor"""
        cursor = self._grants.find({"actor_id": actor_id}).sort("role", ASCENDING)
        return [doc["role"] for doc in cursor]
