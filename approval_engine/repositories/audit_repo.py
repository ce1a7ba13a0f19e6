"""Audit Repository - Data access for the append-only audit log"""
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo import ASCENDING

from .mongo_client import get_collection, to_document
from ..domain.models import AuditEntry
from ..domain.enums import AuditAction, AuditSubjectType
from ..utils.logger import get_logger

logger = get_logger(__name__)


class AuditRepository:
    """Repository for audit entries (insert-only, no update or delete)"""

    def __init__(self):
        self._audit_log: Collection = get_collection("audit_log")

    def create_entry(self, entry: AuditEntry) -> AuditEntry:
        """Append an audit entry"""
        # The generated ObjectId orders entries sharing a timestamp
        doc = to_document(entry)

        self._audit_log.insert_one(doc)
        logger.info(
            f"Audit: {entry.action.value} on {entry.subject_type.value} {entry.subject_id}",
            extra={
                "instance_id": entry.instance_id,
                "subject_id": entry.subject_id,
                "actor_id": entry.actor,
                "action": entry.action.value,
            }
        )
        return entry

    def _find(self, query: Dict[str, Any], limit: int = 0) -> List[AuditEntry]:
        cursor = self._audit_log.find(query).sort([("timestamp", ASCENDING), ("_id", ASCENDING)])
        if limit:
            cursor = cursor.limit(limit)

        entries = []
        for doc in cursor:
            doc.pop("_id", None)
            entries.append(AuditEntry.model_validate(doc))
        return entries

    def get_entries_for_subject(
        self,
        subject_id: str,
        subject_type: Optional[AuditSubjectType] = None
    ) -> List[AuditEntry]:
        """Entries describing one record, oldest first"""
        query: Dict[str, Any] = {"subject_id": subject_id}
        if subject_type:
            query["subject_type"] = subject_type.value
        return self._find(query)

    def get_entries_for_instance(
        self,
        instance_id: str,
        actions: Optional[List[AuditAction]] = None
    ) -> List[AuditEntry]:
        """Entries touching an instance or any of its steps, oldest first"""
        query: Dict[str, Any] = {"instance_id": instance_id}
        if actions:
            query["action"] = {"$in": [a.value for a in actions]}
        return self._find(query)

    def get_entries_by_correlation_id(self, correlation_id: str) -> List[AuditEntry]:
        """Entries written while serving one engine call"""
        return self._find({"correlation_id": correlation_id})

    def count_for_instance(self, instance_id: str) -> int:
        """Number of entries touching an instance"""
        return self._audit_log.count_documents({"instance_id": instance_id})
