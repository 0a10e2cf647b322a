"""
Engine bootstrap

Startup sequence used by host modules:
1. Configure logging
2. Load and validate every definition file, then freeze the registry
3. Select the datastore backend (and create Mongo indexes)
4. Wire the WorkflowEngine
"""
from typing import Optional

from .config.settings import Settings, settings as default_settings
from .engine.engine import WorkflowEngine
from .engine.registry import DefinitionRegistry
from .engine.definition_loader import load_definitions
from .repositories.base import Datastore
from .repositories.memory import InMemoryDatastore
from .repositories.mongo import MongoDatastore
from .repositories.mongo_client import get_database, create_indexes
from .services.notifier import Notifier, LoggingNotifier
from .utils.logger import setup_logging, get_logger

logger = get_logger(__name__)


def create_datastore(config: Optional[Settings] = None) -> Datastore:
    """Datastore for the configured backend"""
    config = config or default_settings
    if config.uses_mongo:
        database = get_database(config)
        create_indexes(database)
        return MongoDatastore(database)
    return InMemoryDatastore()


def create_engine(
    config: Optional[Settings] = None,
    notifier: Optional[Notifier] = None,
    datastore: Optional[Datastore] = None,
    registry: Optional[DefinitionRegistry] = None
) -> WorkflowEngine:
    """
    Build a ready-to-use engine

    A malformed definition file aborts startup with DefinitionError.
    When ``registry`` is given it is used as-is (and frozen); otherwise
    definitions are loaded from ``config.definitions_path``.
    """
    config = config or default_settings
    setup_logging(config)
    logger.info(f"Starting workflow engine ({config.environment})")

    if registry is None:
        registry = DefinitionRegistry()
        load_definitions(config.definitions_path, registry)
    registry.freeze()

    engine = WorkflowEngine(
        registry=registry,
        datastore=datastore or create_datastore(config),
        notifier=notifier or LoggingNotifier(),
        config=config
    )
    logger.info(f"Workflow engine ready with {len(registry)} definitions: {', '.join(registry.names())}")
    return engine
