"""Repository modules - Data access layer"""
from .base import Datastore
from .memory import InMemoryDatastore
from .mongo import MongoDatastore
from .mongo_client import get_database, get_collection, create_indexes, close_connection

__all__ = [
    "Datastore",
    "InMemoryDatastore",
    "MongoDatastore",
    "get_database",
    "get_collection",
    "create_indexes",
    "close_connection",
]
