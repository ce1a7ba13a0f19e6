"""Service modules - Collaborators of the engine"""
from .directory_service import DirectoryService, RoleDirectory
from .event_service import EventService, ALL_EVENTS

__all__ = [
    "DirectoryService",
    "RoleDirectory",
    "EventService",
    "ALL_EVENTS",
]
