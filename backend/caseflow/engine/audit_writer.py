"""Audit Writer - Append-only workflow history"""
from datetime import datetime
from typing import Optional

from ..domain.models import HistoryEntry, WorkflowInstance
from ..domain.enums import HistoryEventType
from ..repositories.base import Datastore
from ..utils.idgen import generate_history_id
from ..utils.logger import get_logger

logger = get_logger(__name__)


class AuditWriter:
    """
    Write history entries (append-only)

    Every accepted transition, start and cancellation produces exactly
    one entry. Entries are never updated or deleted; retention and
    e-discovery queries go through the datastore.
    """

    def __init__(self, datastore: Datastore):
        self.datastore = datastore

    def build_entry(
        self,
        instance: WorkflowInstance,
        event_type: HistoryEventType,
        from_step_id: Optional[str],
        to_step_id: Optional[str],
        trigger: str,
        actor_id: str,
        timestamp: datetime,
        notes: Optional[str] = None
    ) -> HistoryEntry:
        """Build the entry for a write that produces ``instance.version``"""
        return HistoryEntry(
            history_id=generate_history_id(),
            instance_id=instance.instance_id,
            definition_name=instance.definition_name,
            sequence=instance.version,
            event_type=event_type,
            from_step_id=from_step_id,
            to_step_id=to_step_id,
            trigger=trigger,
            actor_id=actor_id,
            timestamp=timestamp,
            notes=notes
        )

    def record(self, entry: HistoryEntry, timeout: Optional[float] = None) -> HistoryEntry:
        """Append an entry; called inside the engine's transaction"""
        self.datastore.append_history(entry, timeout=timeout)
        logger.info(
            f"Recorded history: {entry.event_type.value} {entry.from_step_id} -> {entry.to_step_id}",
            extra={
                "instance_id": entry.instance_id,
                "trigger": entry.trigger,
                "actor_id": entry.actor_id
            }
        )
        return entry
