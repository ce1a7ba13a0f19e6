"""ID Generation Utilities"""
import uuid
from typing import Optional

from .time import utc_now


def generate_id(prefix: Optional[str] = None) -> str:
    """
    Generate a unique ID with optional prefix

    Args:
        prefix: Optional prefix for the ID (e.g., 'WFD', 'WFI', 'STEP')

    Returns:
        Unique ID string

    Examples:
        >>> generate_id('WFI')
        'WFI-a1b2c3d4e5f6'
        >>> generate_id()
        'a1b2c3d4e5f6'
    """
    unique_part = uuid.uuid4().hex[:12]

    if prefix:
        return f"{prefix}-{unique_part}"
    return unique_part


def generate_definition_id() -> str:
    """Generate workflow definition ID"""
    return generate_id("WFD")


def generate_instance_id() -> str:
    """Generate workflow instance ID"""
    return generate_id("WFI")


def generate_step_execution_id() -> str:
    """Generate step execution ID"""
    return generate_id("STEP")


def generate_member_id() -> str:
    """Generate committee member ID"""
    return generate_id("CMB")


def generate_round_id() -> str:
    """Generate review round ID"""
    return generate_id("RND")


def generate_review_id() -> str:
    """Generate committee review ID"""
    return generate_id("RVW")


def generate_audit_entry_id() -> str:
    """Generate audit entry ID"""
    return generate_id("AUD")


def generate_event_id() -> str:
    """Generate outbox event ID"""
    return generate_id("EVT")


def generate_correlation_id() -> str:
    """
    Generate a correlation ID for request tracing

    Returns:
        Correlation ID string with timestamp prefix
    """
    timestamp = utc_now().strftime("%Y%m%d%H%M%S")
    unique_part = uuid.uuid4().hex[:8]
    return f"COR-{timestamp}-{unique_part}"
