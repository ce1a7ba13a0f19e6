"""Workflow Engine - The brain of the system"""
from .engine import WorkflowEngine
from .permission_guard import PermissionGuard
from .audit_writer import AuditWriter
from .definition_store import DefinitionStore
from .instance_manager import InstanceManager
from .transition_engine import TransitionEngine
from .committee import CommitteeService
from .consensus import (
    ConsensusPolicy, UnanimityPolicy, MajorityPolicy, PresidentTiebreakPolicy, get_policy
)
from .delay_monitor import DelayMonitor, list_delayed

__all__ = [
    "WorkflowEngine",
    "PermissionGuard",
    "AuditWriter",
    "DefinitionStore",
    "InstanceManager",
    "TransitionEngine",
    "CommitteeService",
    "ConsensusPolicy",
    "UnanimityPolicy",
    "MajorityPolicy",
    "PresidentTiebreakPolicy",
    "get_policy",
    "DelayMonitor",
    "list_delayed",
]
