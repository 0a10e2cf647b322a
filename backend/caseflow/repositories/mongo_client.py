"""MongoDB Client - Connection and Collection Management"""
from typing import Optional
from pymongo import MongoClient as PyMongoClient
from pymongo.database import Database
from pymongo.collection import Collection
from pymongo import ASCENDING
from pymongo.errors import ConnectionFailure

from ..config.settings import Settings, settings as default_settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

INSTANCES_COLLECTION = "workflow_instances"
HISTORY_COLLECTION = "workflow_history"
TASKS_COLLECTION = "pending_tasks"
OUTBOX_COLLECTION = "notification_outbox"

# Global client instance
_client: Optional[PyMongoClient] = None
_database: Optional[Database] = None


def get_client(config: Optional[Settings] = None) -> PyMongoClient:
    """Get or create MongoDB client"""
    global _client
    config = config or default_settings
    if _client is None:
        logger.info(f"Connecting to MongoDB: {config.mongo_uri}")
        _client = PyMongoClient(
            config.mongo_uri,
            tz_aware=True,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            socketTimeoutMS=30000,
        )
        # Test connection
        try:
            _client.admin.command("ping")
            logger.info("MongoDB connection successful")
        except ConnectionFailure as e:
            logger.error(f"MongoDB connection failed: {e}")
            raise
    return _client


def get_database(config: Optional[Settings] = None) -> Database:
    """Get the engine database"""
    global _database
    config = config or default_settings
    if _database is None:
        _database = get_client(config)[config.mongo_db]
        logger.info(f"Using database: {config.mongo_db}")
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


def create_indexes(db: Database) -> None:
    """Create all required indexes"""
    logger.info("Creating MongoDB indexes...")

    instances = db[INSTANCES_COLLECTION]
    instances.create_index("instance_id", unique=True)
    instances.create_index([("definition_name", ASCENDING), ("status", ASCENDING)])
    instances.create_index("updated_at", background=True)

    # History is queried by instance, by actor and by date range
    history = db[HISTORY_COLLECTION]
    history.create_index("history_id", unique=True)
    history.create_index([("instance_id", ASCENDING), ("sequence", ASCENDING)], unique=True)
    history.create_index([("actor_id", ASCENDING), ("timestamp", ASCENDING)])
    history.create_index("timestamp", background=True)

    tasks = db[TASKS_COLLECTION]
    tasks.create_index("task_id", unique=True)
    tasks.create_index([("instance_id", ASCENDING), ("status", ASCENDING)])
    tasks.create_index([("assignee_role", ASCENDING), ("status", ASCENDING)])
    tasks.create_index([("assignee_user_id", ASCENDING), ("status", ASCENDING)])
    tasks.create_index([("status", ASCENDING), ("due_at", ASCENDING)])

    outbox = db[OUTBOX_COLLECTION]
    outbox.create_index("notification_id", unique=True)
    outbox.create_index([("status", ASCENDING), ("created_at", ASCENDING)])

    logger.info("MongoDB indexes created successfully")
