"""Notifier - Notification dispatch collaborator

The engine hands template keys, recipients and context variables to a
Notifier after a transition commits. Delivery is the notifier's concern:
the engine logs a failed dispatch and never retries it.
"""
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from pymongo.collection import Collection

from ..domain.models import NotificationOutbox
from ..domain.enums import NotificationStatus
from ..repositories.mongo_client import get_collection, OUTBOX_COLLECTION
from ..utils.idgen import generate_notification_id
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


@runtime_checkable
class Notifier(Protocol):
    """Fire-and-forget notification delivery"""

    def dispatch(self, template_key: str, recipient: str, context_vars: Dict[str, Any]) -> None:
        ...


class LoggingNotifier:
    """Notifier that only logs dispatches (default when none is configured)"""

    def dispatch(self, template_key: str, recipient: str, context_vars: Dict[str, Any]) -> None:
        logger.info(
            f"Notification {template_key} -> {recipient}",
            extra={
                "instance_id": context_vars.get("instance_id"),
                "step_id": context_vars.get("to_step_id")
            }
        )


class OutboxNotifier:
    """
    Notifier that enqueues into the notification outbox collection

    Notifications are stored in the outbox and sent asynchronously by an
    external sender process.
    """

    def __init__(self, collection: Optional[Collection] = None):
        self._outbox = collection if collection is not None else get_collection(OUTBOX_COLLECTION)

    def dispatch(self, template_key: str, recipient: str, context_vars: Dict[str, Any]) -> None:
        notification = NotificationOutbox(
            notification_id=generate_notification_id(),
            instance_id=context_vars.get("instance_id"),
            template_key=template_key,
            recipient=recipient,
            payload=dict(context_vars),
            status=NotificationStatus.PENDING,
            created_at=utc_now()
        )

        doc = notification.model_dump()
        doc["_id"] = notification.notification_id
        self._outbox.insert_one(doc)
        logger.info(
            f"Enqueued notification: {template_key}",
            extra={"instance_id": notification.instance_id}
        )
