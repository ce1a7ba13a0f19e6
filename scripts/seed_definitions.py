"""
Seed Definitions Script - Installs and publishes the stock workflows
Run: python -m scripts.seed_definitions
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from approval_engine.engine import WorkflowEngine
from approval_engine.repositories.mongo_client import create_indexes
from approval_engine.utils.logger import setup_logging


def seed_definitions():
    """Create indexes, then install every predefined workflow not yet present"""
    setup_logging()
    create_indexes()

    engine = WorkflowEngine()
    installed = engine.install_predefined()

    if not installed:
        print("All predefined workflows already exist. Skipping seed.")
        return

    for definition in installed:
        print(f"Published {definition.definition_id}: {definition.name} ({len(definition.steps)} steps)")
        for index, step in enumerate(definition.steps):
            flags = []
            if step.auto_complete:
                flags.append("auto")
            if step.committee_review:
                flags.append("committee")
            suffix = f" [{', '.join(flags)}]" if flags else ""
            print(f"   {index}. {step.name} -> {step.required_role}{suffix}")


if __name__ == "__main__":
    seed_definitions()
