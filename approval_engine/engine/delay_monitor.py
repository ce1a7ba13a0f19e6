"""Delay Monitor - Flags instances running past the processing delay"""
from datetime import datetime
from typing import Iterable, List, Optional

from ..domain.models import WorkflowInstance
from ..repositories.instance_repo import InstanceRepository
from ..config.settings import settings
from ..utils.time import days_since, is_older_than, utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


def list_delayed(
    instances: Iterable[WorkflowInstance],
    threshold_days: float,
    now: datetime
) -> List[WorkflowInstance]:
    """
    Non-terminal instances started more than `threshold_days` before `now`

    Pure: reads nothing and writes nothing. An instance exactly at the
    threshold is not delayed.
    """
    return [
        instance
        for instance in instances
        if not instance.is_terminal and is_older_than(instance.started_at, threshold_days, now=now)
    ]


class DelayMonitor:
    """Read-only SLA scan over open instances"""

    def __init__(self, instance_repo: InstanceRepository = None):
        self.instance_repo = instance_repo or InstanceRepository()

    def scan(
        self,
        threshold_days: Optional[float] = None,
        now: Optional[datetime] = None
    ) -> List[WorkflowInstance]:
        """Delayed open instances, oldest first"""
        if threshold_days is None:
            threshold_days = settings.sla_delay_threshold_days
        now = now or utc_now()

        delayed = list_delayed(self.instance_repo.list_open_instances(), threshold_days, now)

        for instance in delayed:
            logger.warning(
                f"Instance delayed: {days_since(instance.started_at, now=now):.1f} days "
                f"on step {instance.current_step_index}",
                extra={
                    "instance_id": instance.instance_id,
                    "subject_id": instance.subject_id,
                    "step_index": instance.current_step_index,
                    "status": instance.status.value,
                }
            )
        return delayed
