"""Instance Repository - Data access for workflow instances and step executions"""
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from .mongo_client import get_collection, to_document
from ..domain.models import WorkflowInstance, StepExecution
from ..domain.enums import InstanceStatus, StepStatus, TERMINAL_INSTANCE_STATUSES
from ..domain.errors import (
    InstanceNotFoundError, StepNotFoundError, ConcurrencyError, AlreadyRunningError
)
from ..utils.logger import get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)


def live_key(definition_id: str, subject_id: str) -> str:
    """Uniqueness key held by a non-terminal instance"""
    return f"{definition_id}:{subject_id}"


class InstanceRepository:
    """Repository for instance and step execution operations"""

    def __init__(self):
        self._instances: Collection = get_collection("workflow_instances")
        self._steps: Collection = get_collection("step_executions")

    # =========================================================================
    # Instance CRUD
    # =========================================================================

    def create_instance(
        self,
        instance: WorkflowInstance,
        steps: List[StepExecution]
    ) -> WorkflowInstance:
        """
        Insert an instance together with its materialized steps

        The instance document carries `live_key` while it is non-terminal; the
        unique partial index on it rejects a second live instance for the same
        (definition, subject) even when two starts race past the read check.
        """
        doc = to_document(instance)
        doc["_id"] = instance.instance_id
        doc["live_key"] = live_key(instance.definition_id, instance.subject_id)

        try:
            self._instances.insert_one(doc)
        except DuplicateKeyError:
            raise AlreadyRunningError(
                f"A live instance already exists for subject {instance.subject_id}",
                details={"definition_id": instance.definition_id, "subject_id": instance.subject_id}
            )

        step_docs = []
        for step in steps:
            step_doc = to_document(step)
            step_doc["_id"] = step.step_execution_id
            step_docs.append(step_doc)

        try:
            if step_docs:
                self._steps.insert_many(step_docs)
        except PyMongoError:
            # Never leave an instance without its steps
            self._instances.delete_one({"instance_id": instance.instance_id})
            self._steps.delete_many({"instance_id": instance.instance_id})
            raise

        logger.info(
            f"Created instance: {instance.instance_id} with {len(steps)} steps",
            extra={"instance_id": instance.instance_id, "subject_id": instance.subject_id}
        )
        return instance

    def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        """Get instance by ID"""
        doc = self._instances.find_one({"instance_id": instance_id})
        if doc:
            doc.pop("_id", None)
            return WorkflowInstance.model_validate(doc)
        return None

    def get_instance_or_raise(self, instance_id: str) -> WorkflowInstance:
        """Get instance by ID or raise error"""
        instance = self.get_instance(instance_id)
        if not instance:
            raise InstanceNotFoundError(
                f"Workflow instance {instance_id} not found",
                details={"instance_id": instance_id}
            )
        return instance

    def find_live_instance(self, definition_id: str, subject_id: str) -> Optional[WorkflowInstance]:
        """Non-terminal instance of a definition for a subject, if any"""
        doc = self._instances.find_one({
            "definition_id": definition_id,
            "subject_id": subject_id,
            "status": {"$nin": [s.value for s in TERMINAL_INSTANCE_STATUSES]},
        })
        if doc:
            doc.pop("_id", None)
            return WorkflowInstance.model_validate(doc)
        return None

    def update_instance(
        self,
        instance_id: str,
        updates: Dict[str, Any],
        expected_version: Optional[int] = None,
        expected_status: Optional[InstanceStatus] = None
    ) -> WorkflowInstance:
        """Update instance with optimistic concurrency"""
        updates["updated_at"] = utc_now()
        if updates.get("status") in {s.value for s in TERMINAL_INSTANCE_STATUSES}:
            updates["live_key"] = None

        filter_query: Dict[str, Any] = {"instance_id": instance_id}
        if expected_version is not None:
            filter_query["version"] = expected_version
            updates["version"] = expected_version + 1
        if expected_status is not None:
            filter_query["status"] = expected_status.value

        result = self._instances.find_one_and_update(
            filter_query,
            {"$set": updates},
            return_document=True
        )

        if result is None:
            if expected_version is not None or expected_status is not None:
                exists = self._instances.find_one({"instance_id": instance_id})
                if exists:
                    raise ConcurrencyError(
                        f"Instance {instance_id} was modified. Please refresh and try again.",
                        details={
                            "instance_id": instance_id,
                            "expected_version": expected_version,
                            "actual_version": exists.get("version"),
                        }
                    )
            raise InstanceNotFoundError(f"Workflow instance {instance_id} not found")

        result.pop("_id", None)
        logger.info(f"Updated instance: {instance_id}", extra={"instance_id": instance_id})
        return WorkflowInstance.model_validate(result)

    def list_instances(
        self,
        statuses: Optional[List[InstanceStatus]] = None,
        definition_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 0
    ) -> List[WorkflowInstance]:
        """List instances with filters, newest first"""
        query: Dict[str, Any] = {}
        if statuses:
            query["status"] = {"$in": [s.value for s in statuses]}
        if definition_id:
            query["definition_id"] = definition_id
        if subject_id:
            query["subject_id"] = subject_id

        cursor = self._instances.find(query).sort("started_at", DESCENDING).skip(skip)
        if limit:
            cursor = cursor.limit(limit)

        instances = []
        for doc in cursor:
            doc.pop("_id", None)
            instances.append(WorkflowInstance.model_validate(doc))
        return instances

    def list_open_instances(self) -> List[WorkflowInstance]:
        """All non-terminal instances, oldest first"""
        cursor = self._instances.find({
            "status": {"$nin": [s.value for s in TERMINAL_INSTANCE_STATUSES]}
        }).sort("started_at", ASCENDING)

        instances = []
        for doc in cursor:
            doc.pop("_id", None)
            instances.append(WorkflowInstance.model_validate(doc))
        return instances

    # =========================================================================
    # Step Execution Operations
    # =========================================================================

    def get_step(self, instance_id: str, step_index: int) -> Optional[StepExecution]:
        """Get step execution by instance and position"""
        doc = self._steps.find_one({"instance_id": instance_id, "step_index": step_index})
        if doc:
            doc.pop("_id", None)
            return StepExecution.model_validate(doc)
        return None

    def get_step_or_raise(self, instance_id: str, step_index: int) -> StepExecution:
        """Get step execution or raise error"""
        step = self.get_step(instance_id, step_index)
        if not step:
            raise StepNotFoundError(
                f"Step {step_index} of instance {instance_id} not found",
                details={"instance_id": instance_id, "step_index": step_index}
            )
        return step

    def get_steps_for_instance(self, instance_id: str) -> List[StepExecution]:
        """Get all steps of an instance in order"""
        cursor = self._steps.find({"instance_id": instance_id}).sort("step_index", ASCENDING)

        steps = []
        for doc in cursor:
            doc.pop("_id", None)
            steps.append(StepExecution.model_validate(doc))
        return steps

    def update_step(
        self,
        instance_id: str,
        step_index: int,
        updates: Dict[str, Any],
        expected_version: Optional[int] = None,
        expected_status: Optional[StepStatus] = None
    ) -> StepExecution:
        """Update step execution with optimistic concurrency"""
        filter_query: Dict[str, Any] = {"instance_id": instance_id, "step_index": step_index}
        if expected_version is not None:
            filter_query["version"] = expected_version
            updates["version"] = expected_version + 1
        if expected_status is not None:
            filter_query["status"] = expected_status.value

        result = self._steps.find_one_and_update(
            filter_query,
            {"$set": updates},
            return_document=True
        )

        if result is None:
            if expected_version is not None or expected_status is not None:
                exists = self._steps.find_one({"instance_id": instance_id, "step_index": step_index})
                if exists:
                    raise ConcurrencyError(
                        f"Step {step_index} of instance {instance_id} was modified. Please refresh and try again.",
                        details={
                            "instance_id": instance_id,
                            "step_index": step_index,
                            "expected_version": expected_version,
                        }
                    )
            raise StepNotFoundError(f"Step {step_index} of instance {instance_id} not found")

        result.pop("_id", None)
        logger.info(
            f"Updated step {step_index} of {instance_id}",
            extra={"instance_id": instance_id, "step_index": step_index}
        )
        return StepExecution.model_validate(result)

    def skip_open_steps(self, instance_id: str, after_index: int = -1) -> int:
        """Mark every pending / in-progress step past `after_index` as skipped"""
        result = self._steps.update_many(
            {
                "instance_id": instance_id,
                "step_index": {"$gt": after_index},
                "status": {"$in": [StepStatus.PENDING.value, StepStatus.IN_PROGRESS.value]},
            },
            {"$set": {"status": StepStatus.SKIPPED.value, "completed_at": utc_now()}, "$inc": {"version": 1}}
        )
        return result.modified_count
