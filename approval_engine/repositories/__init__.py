"""Repository modules - Data access layer"""
from .mongo_client import (
    get_client, get_database, get_collection, close_connection, create_indexes, health_check
)
from .definition_repo import DefinitionRepository
from .instance_repo import InstanceRepository
from .committee_repo import CommitteeRepository
from .audit_repo import AuditRepository
from .event_repo import EventRepository
from .role_grant_repo import RoleGrantRepository

__all__ = [
    "get_database",
    "get_collection",
    "create_indexes",
    "get_client",
    "close_connection",
    "health_check",
    "DefinitionRepository",
    "InstanceRepository",
    "CommitteeRepository",
    "AuditRepository",
    "EventRepository",
    "RoleGrantRepository",
]
