"""Definition Repository - Data access for workflow definitions"""
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError

from .mongo_client import get_collection, to_document
from ..domain.models import WorkflowDefinition
from ..domain.enums import WorkflowKind
from ..domain.errors import DefinitionNotFoundError, ConcurrencyError, AlreadyExistsError
from ..utils.logger import get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)


class DefinitionRepository:
    """Repository for workflow definition operations"""

    def __init__(self):
        self._definitions: Collection = get_collection("workflow_definitions")

    def create_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Create a new workflow definition"""
        doc = to_document(definition)
        doc["_id"] = definition.definition_id

        try:
            self._definitions.insert_one(doc)
        except DuplicateKeyError:
            raise AlreadyExistsError(f"Definition {definition.definition_id} already exists")

        logger.info(
            f"Created definition: {definition.name}",
            extra={"definition_id": definition.definition_id}
        )
        return definition

    def get_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        """Get definition by ID"""
        doc = self._definitions.find_one({"definition_id": definition_id})
        if doc:
            doc.pop("_id", None)
            return WorkflowDefinition.model_validate(doc)
        return None

    def get_definition_or_raise(self, definition_id: str) -> WorkflowDefinition:
        """Get definition by ID or raise error"""
        definition = self.get_definition(definition_id)
        if not definition:
            raise DefinitionNotFoundError(
                f"Workflow definition {definition_id} not found",
                details={"definition_id": definition_id}
            )
        return definition

    def get_definition_by_name(self, name: str) -> Optional[WorkflowDefinition]:
        """Get definition by its display name"""
        doc = self._definitions.find_one({"name": name})
        if doc:
            doc.pop("_id", None)
            return WorkflowDefinition.model_validate(doc)
        return None

    def update_definition(
        self,
        definition_id: str,
        updates: Dict[str, Any],
        expected_version: Optional[int] = None
    ) -> WorkflowDefinition:
        """
        Update definition with optimistic concurrency

        Args:
            definition_id: Definition ID
            updates: Fields to update
            expected_version: Expected version for optimistic lock
        """
        updates["updated_at"] = utc_now()

        filter_query: Dict[str, Any] = {"definition_id": definition_id}
        if expected_version is not None:
            filter_query["version"] = expected_version
            updates["version"] = expected_version + 1

        result = self._definitions.find_one_and_update(
            filter_query,
            {"$set": updates},
            return_document=True
        )

        if result is None:
            if expected_version is not None:
                exists = self._definitions.find_one({"definition_id": definition_id})
                if exists:
                    raise ConcurrencyError(
                        f"Definition {definition_id} was modified. Please refresh and try again.",
                        details={"expected_version": expected_version}
                    )
            raise DefinitionNotFoundError(f"Workflow definition {definition_id} not found")

        result.pop("_id", None)
        logger.info(f"Updated definition: {definition_id}", extra={"definition_id": definition_id})
        return WorkflowDefinition.model_validate(result)

    def list_definitions(
        self,
        kind: Optional[WorkflowKind] = None,
        active_only: bool = False
    ) -> List[WorkflowDefinition]:
        """List definitions, optionally filtered by kind and activity"""
        query: Dict[str, Any] = {}
        if kind:
            query["kind"] = kind.value
        if active_only:
            query["active"] = True

        cursor = self._definitions.find(query).sort("name", ASCENDING)

        definitions = []
        for doc in cursor:
            doc.pop("_id", None)
            definitions.append(WorkflowDefinition.model_validate(doc))
        return definitions
