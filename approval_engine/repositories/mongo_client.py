"""MongoDB Client - Connection and Collection Management"""
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel
from pymongo import MongoClient as PyMongoClient
from pymongo.database import Database
from pymongo.collection import Collection
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure, PyMongoError

from ..config.settings import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Global client instance
_client: Optional[PyMongoClient] = None
_database: Optional[Database] = None


def get_client() -> PyMongoClient:
    """Get or create MongoDB client"""
    global _client
    if _client is None:
        logger.info(f"Connecting to MongoDB: {settings.mongo_uri}")
        _client = PyMongoClient(
            settings.mongo_uri,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            socketTimeoutMS=30000,
        )
        try:
            _client.admin.command("ping")
            logger.info("MongoDB connection successful")
        except ConnectionFailure as e:
            logger.error(f"MongoDB connection failed: {e}")
            raise
    return _client


def get_database() -> Database:
    """Get the application database"""
    global _database
    if _database is None:
        client = get_client()
        _database = client[settings.mongo_db]
        logger.info(f"Using database: {settings.mongo_db}")
    return _database


def get_collection(name: str) -> Collection:
    """Get a collection from the database"""
    return get_database()[name]


def close_connection() -> None:
    """Close MongoDB connection"""
    global _client, _database
    if _client is not None:
        _client.close()
        _client = None
        _database = None
        logger.info("MongoDB connection closed")


def to_document(model: BaseModel) -> Dict[str, Any]:
    """Dump a model for storage; datetimes stay native so range queries and sorts work"""
    return _plain(model.model_dump())


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_plain(item) for item in value]
    return value


def create_indexes() -> None:
    """Create all required indexes"""
    db = get_database()
    logger.info("Creating MongoDB indexes...")

    definitions = db["workflow_definitions"]
    definitions.create_index("definition_id", unique=True)
    definitions.create_index([("kind", ASCENDING), ("active", ASCENDING)])
    definitions.create_index("status")

    instances = db["workflow_instances"]
    instances.create_index("instance_id", unique=True)
    instances.create_index([("definition_id", ASCENDING), ("subject_id", ASCENDING)])
    instances.create_index("status")
    instances.create_index("started_at", background=True)
    # At most one live instance per (definition, subject); terminal instances null the key
    instances.create_index(
        "live_key",
        unique=True,
        partialFilterExpression={"live_key": {"$type": "string"}},
        name="uniq_live_instance"
    )

    step_executions = db["step_executions"]
    step_executions.create_index("step_execution_id", unique=True)
    step_executions.create_index([("instance_id", ASCENDING), ("step_index", ASCENDING)], unique=True)
    step_executions.create_index([("assigned_role", ASCENDING), ("status", ASCENDING)])

    members = db["committee_members"]
    members.create_index("member_id", unique=True)
    members.create_index([("user_ref", ASCENDING), ("active", ASCENDING)])

    rounds = db["review_rounds"]
    rounds.create_index("round_id", unique=True)
    rounds.create_index([("subject_id", ASCENDING), ("round_number", DESCENDING)], unique=True)

    reviews = db["committee_reviews"]
    reviews.create_index("review_id", unique=True)
    reviews.create_index([("round_id", ASCENDING), ("member_id", ASCENDING)], unique=True)
    reviews.create_index("subject_id")

    role_grants = db["role_grants"]
    role_grants.create_index([("actor_id", ASCENDING), ("role", ASCENDING)], unique=True)
    role_grants.create_index("role")

    audit_log = db["audit_log"]
    audit_log.create_index("audit_entry_id", unique=True)
    audit_log.create_index([("subject_id", ASCENDING), ("timestamp", ASCENDING)])
    audit_log.create_index([("instance_id", ASCENDING), ("timestamp", ASCENDING)])
    audit_log.create_index("correlation_id")

    event_outbox = db["event_outbox"]
    event_outbox.create_index("event_id", unique=True)
    event_outbox.create_index([("status", ASCENDING), ("next_retry_at", ASCENDING)])
    event_outbox.create_index("locked_until")
    event_outbox.create_index("subject_id")

    logger.info("MongoDB indexes created successfully")


def health_check() -> Dict[str, Any]:
    """Check MongoDB health"""
    try:
        get_client().admin.command("ping")
        return {
            "status": "healthy",
            "database": settings.mongo_db,
            "connection": "ok"
        }
    except PyMongoError as e:
        logger.error(f"MongoDB health check failed: {e}")
        return {
            "status": "unhealthy",
            "database": settings.mongo_db,
            "error": str(e)
        }
