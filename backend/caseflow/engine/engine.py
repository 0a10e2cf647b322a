"""
Workflow Engine - The Brain of the System

This module contains the WorkflowEngine class that orchestrates instance
creation, transitions, cancellation and the read-side queries that
service modules use.

=============================================================================
MODULE STRUCTURE
=============================================================================

1. INITIALIZATION
   - Constructor wiring registry, datastore, notifier and resolvers

2. INSTANCE LIFECYCLE
   - start: Create an instance at the definition's initial step
   - fire: Apply a trigger (optimistic read-evaluate-write loop)
   - cancel: Abort an active instance (idempotent)

3. TRANSITION LOGIC
   - _apply_transition: Build and commit one accepted transition
   - _build_tasks: Materialize PendingTasks for a step
   - _commit: Run a unit of work with one persistence retry

4. SIDE EFFECTS
   - _dispatch_side_effects: Post-commit notifications

5. QUERIES
   - get_instance, get_status, available_triggers, get_history,
     query_history, list_tasks, list_overdue_tasks, claim_task,
     get_statistics

=============================================================================
CONSISTENCY
=============================================================================

Every state change is one datastore transaction: instance write
(conditioned on its version), task closure, history append and task
creation commit together. Notifications are dispatched only after the
commit succeeds.

=============================================================================
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from ..config.settings import Settings, settings as default_settings
from ..domain.models import (
    WorkflowDefinition, WorkflowInstance, Step, Transition, TransitionRejected,
    TransitionResult, HistoryEntry, PendingTask, Assignee, InstanceStatusView
)
from ..domain.enums import InstanceStatus, TaskStatus, HistoryEventType
from ..domain.errors import (
    InstanceNotFoundError, TaskNotFoundError, TerminalStateError,
    ConcurrentModificationError, InvalidStateError, PersistenceError,
    VersionConflictError
)
from ..repositories.base import Datastore
from ..services.notifier import Notifier, LoggingNotifier
from .registry import DefinitionRegistry
from .transition_resolver import TransitionResolver
from .assignment_resolver import AssignmentResolver
from .audit_writer import AuditWriter
from ..utils.idgen import generate_instance_id, generate_task_id
from ..utils.time import utc_now, next_monotonic, truncate_to_millis, coerce_datetime
from ..utils.logger import get_logger, with_correlation_id

logger = get_logger(__name__)

START_TRIGGER = "start"
CANCEL_TRIGGER = "cancel"


def merge_context(base: Mapping[str, Any], patch: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Deep-merge ``patch`` into a copy of ``base`` (nested dicts merge, other values replace)"""
    merged = dict(base)
    for key, value in (patch or {}).items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = merge_context(merged[key], value)
        else:
            merged[key] = value
    return merged


class WorkflowEngine:
    """
    The Workflow Engine - Central orchestrator for workflow instances

    Responsibilities:
    - Create instances from registered definitions
    - Control all transitions via the TransitionResolver
    - Create and close PendingTasks via the AssignmentResolver
    - Append history via the AuditWriter
    - Dispatch notification side effects after commit
    - Serialize concurrent fires on one instance (optimistic versioning)
    """

    def __init__(
        self,
        registry: DefinitionRegistry,
        datastore: Datastore,
        notifier: Optional[Notifier] = None,
        config: Optional[Settings] = None
    ):
        self.registry = registry
        self.datastore = datastore
        self.notifier = notifier or LoggingNotifier()
        self.settings = config or default_settings
        self.transition_resolver = TransitionResolver()
        self.assignment_resolver = AssignmentResolver()
        self.audit_writer = AuditWriter(datastore)

    # =========================================================================
    # Instance Lifecycle
    # =========================================================================

    @with_correlation_id
    def start(
        self,
        definition_name: str,
        case_context: Optional[Mapping[str, Any]],
        actor_id: str,
        timeout: Optional[float] = None
    ) -> str:
        """
        Create an instance at the definition's initial step

        Algorithm:
        1. Look up the definition (DefinitionNotFoundError if unknown)
        2. Build the instance; an initial step with no transitions
           completes it immediately
        3. In one transaction: save instance, append the start entry
           (from_step_id=None), create PendingTasks for the initial step

        Returns:
            The new instance ID
        """
        definition = self.registry.get(definition_name)
        timeout = self._timeout(timeout)
        now = truncate_to_millis(utc_now())

        initial_step = definition.get_step(definition.get_initial_step_id())
        completes = initial_step.is_terminal
        context = dict(case_context or {})

        instance = WorkflowInstance(
            instance_id=generate_instance_id(),
            definition_name=definition.name,
            definition_checksum=definition.checksum,
            current_step_id=initial_step.id,
            context=context,
            status=InstanceStatus.COMPLETED if completes else InstanceStatus.ACTIVE,
            created_by=actor_id,
            created_at=now,
            updated_at=now,
            completed_at=now if completes else None,
            version=1
        )
        entry = self.audit_writer.build_entry(
            instance,
            event_type=HistoryEventType.STARTED,
            from_step_id=None,
            to_step_id=initial_step.id,
            trigger=START_TRIGGER,
            actor_id=actor_id,
            timestamp=now
        )
        tasks = [] if completes else self._build_tasks(instance, initial_step, context, now)

        def write() -> None:
            self.datastore.save_instance(instance, expected_version=None, timeout=timeout)
            self.audit_writer.record(entry, timeout=timeout)
            for task in tasks:
                self.datastore.save_task(task, timeout=timeout)

        self._commit(write, instance.instance_id, timeout)

        logger.info(
            f"Started workflow {definition.name} at step {initial_step.id}",
            extra={
                "instance_id": instance.instance_id,
                "definition_name": definition.name,
                "step_id": initial_step.id,
                "actor_id": actor_id
            }
        )
        return instance.instance_id

    @with_correlation_id
    def fire(
        self,
        instance_id: str,
        trigger: str,
        actor_id: str,
        context_patch: Optional[Mapping[str, Any]] = None,
        notes: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> TransitionResult:
        """
        Apply ``trigger`` to an instance

        Algorithm (repeated up to settings.fire_max_attempts on version conflict):
        1. Load the instance with its version
        2. Refuse terminal instances (TerminalStateError; after a conflict
           this means a concurrent call won, so ConcurrentModificationError)
        3. Merge context_patch and resolve the transition
        4. Rejected -> return TransitionResult(accepted=False), nothing persisted
        5. Accepted -> commit instance, tasks and history atomically,
           conditioned on the loaded version; then dispatch side effects

        Raises:
            InstanceNotFoundError, TerminalStateError,
            ConcurrentModificationError, PersistenceError
        """
        timeout = self._timeout(timeout)
        max_attempts = max(1, self.settings.fire_max_attempts)

        for attempt in range(1, max_attempts + 1):
            instance = self._load_instance_or_raise(instance_id, timeout)

            if instance.is_terminal:
                if attempt == 1:
                    raise TerminalStateError(
                        f"Instance {instance_id} is {instance.status.value} and cannot accept '{trigger}'",
                        details={"instance_id": instance_id, "status": instance.status.value}
                    )
                raise ConcurrentModificationError(
                    f"Instance {instance_id} became {instance.status.value} while '{trigger}' was being applied",
                    details={"instance_id": instance_id, "status": instance.status.value}
                )

            definition = self.registry.get(instance.definition_name)
            if instance.definition_checksum and instance.definition_checksum != definition.checksum:
                logger.warning(
                    f"Instance {instance_id} was started on a different shape of {definition.name}",
                    extra={"instance_id": instance_id, "definition_name": definition.name}
                )

            context = merge_context(instance.context, context_patch)
            outcome = self.transition_resolver.resolve(
                definition, instance.current_step_id, trigger, context
            )

            if isinstance(outcome, TransitionRejected):
                logger.info(
                    f"Transition rejected: {outcome.reason}",
                    extra={
                        "instance_id": instance_id,
                        "step_id": instance.current_step_id,
                        "trigger": trigger,
                        "reason": outcome.reason
                    }
                )
                return TransitionResult(
                    accepted=False,
                    instance_id=instance_id,
                    trigger=trigger,
                    from_step_id=instance.current_step_id,
                    status=instance.status,
                    reason=outcome.reason
                )

            try:
                return self._apply_transition(
                    definition, instance, outcome, context, trigger, actor_id, notes, timeout
                )
            except VersionConflictError:
                logger.warning(
                    f"Version conflict applying '{trigger}', retrying",
                    extra={"instance_id": instance_id, "trigger": trigger, "attempt": attempt}
                )

        raise ConcurrentModificationError(
            f"Instance {instance_id} kept changing; '{trigger}' not applied after {max_attempts} attempts",
            details={"instance_id": instance_id, "attempts": max_attempts}
        )

    @with_correlation_id
    def cancel(
        self,
        instance_id: str,
        actor_id: str,
        reason: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> WorkflowInstance:
        """
        Cancel an active instance

        Closes all open tasks and appends one terminal history entry.
        Cancelling an already-cancelled instance is a no-op.

        Raises:
            InstanceNotFoundError, TerminalStateError (completed instance),
            ConcurrentModificationError, PersistenceError
        """
        timeout = self._timeout(timeout)
        max_attempts = max(1, self.settings.fire_max_attempts)

        for attempt in range(1, max_attempts + 1):
            instance = self._load_instance_or_raise(instance_id, timeout)

            if instance.status == InstanceStatus.CANCELLED:
                logger.info(
                    f"Instance {instance_id} already cancelled",
                    extra={"instance_id": instance_id, "actor_id": actor_id}
                )
                return instance
            if instance.status == InstanceStatus.COMPLETED:
                raise TerminalStateError(
                    f"Instance {instance_id} is completed and cannot be cancelled",
                    details={"instance_id": instance_id, "status": instance.status.value}
                )

            expected_version = instance.version
            now = next_monotonic(instance.updated_at)
            cancelled = instance.model_copy(update={
                "status": InstanceStatus.CANCELLED,
                "cancelled_at": now,
                "updated_at": now,
                "version": expected_version + 1
            })
            entry = self.audit_writer.build_entry(
                cancelled,
                event_type=HistoryEventType.CANCELLED,
                from_step_id=instance.current_step_id,
                to_step_id=None,
                trigger=CANCEL_TRIGGER,
                actor_id=actor_id,
                timestamp=now,
                notes=reason
            )

            def write() -> None:
                self.datastore.save_instance(cancelled, expected_version=expected_version, timeout=timeout)
                for task in self.datastore.list_open_tasks(instance_id, timeout=timeout):
                    self.datastore.close_task(task.task_id, now, reason="instance cancelled", timeout=timeout)
                self.audit_writer.record(entry, timeout=timeout)

            try:
                self._commit(write, instance_id, timeout)
            except VersionConflictError:
                logger.warning(
                    "Version conflict cancelling instance, retrying",
                    extra={"instance_id": instance_id, "attempt": attempt}
                )
                continue

            logger.info(
                f"Cancelled instance {instance_id}",
                extra={"instance_id": instance_id, "actor_id": actor_id, "reason": reason}
            )
            return cancelled

        raise ConcurrentModificationError(
            f"Instance {instance_id} kept changing; cancel not applied after {max_attempts} attempts",
            details={"instance_id": instance_id, "attempts": max_attempts}
        )

    # =========================================================================
    # Transition Logic
    # =========================================================================

    def _apply_transition(
        self,
        definition: WorkflowDefinition,
        instance: WorkflowInstance,
        transition: Transition,
        context: Dict[str, Any],
        trigger: str,
        actor_id: str,
        notes: Optional[str],
        timeout: Optional[float]
    ) -> TransitionResult:
        """Commit one accepted transition; raises VersionConflictError if the instance moved"""
        expected_version = instance.version
        from_step_id = instance.current_step_id
        now = next_monotonic(instance.updated_at)

        target_step = definition.get_step(transition.target) if transition.target else None
        completes = target_step is None or target_step.is_terminal

        updated = instance.model_copy(update={
            "current_step_id": target_step.id if target_step else from_step_id,
            "context": context,
            "status": InstanceStatus.COMPLETED if completes else InstanceStatus.ACTIVE,
            "updated_at": now,
            "completed_at": now if completes else None,
            "version": expected_version + 1
        })
        entry = self.audit_writer.build_entry(
            updated,
            event_type=HistoryEventType.COMPLETED if completes else HistoryEventType.TRANSITIONED,
            from_step_id=from_step_id,
            to_step_id=transition.target,
            trigger=trigger,
            actor_id=actor_id,
            timestamp=now,
            notes=notes
        )
        new_tasks = [] if completes else self._build_tasks(updated, target_step, context, now)

        def write() -> None:
            # Conditional write first so a lost race aborts before anything else
            self.datastore.save_instance(updated, expected_version=expected_version, timeout=timeout)
            for task in self.datastore.list_open_tasks(instance.instance_id, timeout=timeout):
                if task.step_id == from_step_id:
                    self.datastore.close_task(
                        task.task_id, now, reason=f"transitioned on {trigger}", timeout=timeout
                    )
            self.audit_writer.record(entry, timeout=timeout)
            for task in new_tasks:
                self.datastore.save_task(task, timeout=timeout)

        self._commit(write, instance.instance_id, timeout)

        logger.info(
            f"Transitioned {from_step_id} -> {transition.target} on '{trigger}'",
            extra={
                "instance_id": instance.instance_id,
                "definition_name": definition.name,
                "from_step": from_step_id,
                "to_step": transition.target,
                "trigger": trigger,
                "actor_id": actor_id,
                "status": updated.status.value
            }
        )

        assignee = self.assignment_resolver.resolve_assignee(target_step, context) if target_step else None
        self._dispatch_side_effects(transition, updated, entry, assignee)

        return TransitionResult(
            accepted=True,
            instance_id=instance.instance_id,
            trigger=trigger,
            from_step_id=from_step_id,
            to_step_id=transition.target,
            status=updated.status,
            history_entry=entry,
            tasks_created=new_tasks
        )

    def _build_tasks(
        self,
        instance: WorkflowInstance,
        step: Step,
        context: Mapping[str, Any],
        now: datetime
    ) -> List[PendingTask]:
        """PendingTasks for entering ``step`` (none when the step is unassigned)"""
        assignee = self.assignment_resolver.resolve_assignee(step, context)
        if assignee is None:
            return []
        return [
            PendingTask(
                task_id=generate_task_id(),
                instance_id=instance.instance_id,
                definition_name=instance.definition_name,
                step_id=step.id,
                assignee_role=assignee.role,
                assignee_user_id=assignee.user_id,
                status=TaskStatus.OPEN,
                created_at=now,
                due_at=self.assignment_resolver.compute_due_at(step, now)
            )
        ]

    def _commit(
        self,
        write: Callable[[], None],
        instance_id: str,
        timeout: Optional[float]
    ) -> None:
        """
        Run ``write`` in one datastore transaction

        Persistence failures are retried settings.persistence_retries
        times; the transaction rolls back each time so the instance is
        left unchanged when PersistenceError is finally raised.
        Version conflicts are not retried here (the caller re-reads).
        """
        attempts = 1 + max(0, self.settings.persistence_retries)
        last_error: Optional[PersistenceError] = None

        for attempt in range(1, attempts + 1):
            try:
                with self.datastore.transaction(timeout=timeout):
                    write()
                return
            except PersistenceError as e:
                last_error = e
                logger.warning(
                    f"Persistence failure (attempt {attempt}/{attempts}): {e.message}",
                    extra={"instance_id": instance_id, "attempt": attempt}
                )

        raise PersistenceError(
            f"Could not persist changes to instance {instance_id}: {last_error.message}",
            details={"instance_id": instance_id, "attempts": attempts}
        ) from last_error

    # =========================================================================
    # Side Effects
    # =========================================================================

    def _dispatch_side_effects(
        self,
        transition: Transition,
        instance: WorkflowInstance,
        entry: HistoryEntry,
        assignee: Optional[Assignee]
    ) -> None:
        """Fire-and-forget notifications for a committed transition"""
        if not transition.side_effects:
            return

        context_vars = {
            "instance_id": instance.instance_id,
            "definition_name": instance.definition_name,
            "from_step_id": entry.from_step_id,
            "to_step_id": entry.to_step_id,
            "trigger": entry.trigger,
            "actor_id": entry.actor_id,
            "status": instance.status.value,
            "notes": entry.notes,
            "context": instance.context,
        }

        for effect in transition.side_effects:
            for token in effect.recipients:
                recipient = self._resolve_recipient(token, assignee, entry.actor_id, instance.context)
                if not recipient:
                    logger.warning(
                        f"No recipient for '{token}' on {effect.template_key}, skipping",
                        extra={"instance_id": instance.instance_id}
                    )
                    continue
                try:
                    self.notifier.dispatch(effect.template_key, recipient, context_vars)
                except Exception as e:
                    # Delivery is the notifier's concern; never fail a committed transition
                    logger.error(
                        f"Notification dispatch failed for {effect.template_key}: {e}",
                        extra={"instance_id": instance.instance_id}
                    )

    def _resolve_recipient(
        self,
        token: str,
        assignee: Optional[Assignee],
        actor_id: str,
        context: Mapping[str, Any]
    ) -> Optional[str]:
        if token == "assignee":
            return assignee.recipient if assignee else None
        if token == "actor":
            return actor_id
        if token.startswith("context:"):
            value: Any = context
            for part in token[len("context:"):].split("."):
                value = value.get(part) if isinstance(value, Mapping) else None
            return str(value) if value not in (None, "") else None
        return token

    # =========================================================================
    # Queries
    # =========================================================================

    def get_instance(self, instance_id: str, timeout: Optional[float] = None) -> WorkflowInstance:
        """Get instance or raise InstanceNotFoundError"""
        return self._load_instance_or_raise(instance_id, self._timeout(timeout))

    def get_history(self, instance_id: str, timeout: Optional[float] = None) -> List[HistoryEntry]:
        """History for an instance, oldest first"""
        timeout = self._timeout(timeout)
        self._load_instance_or_raise(instance_id, timeout)
        return self.datastore.get_history(instance_id, timeout=timeout)

    def query_history(
        self,
        instance_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        since: Union[str, datetime, None] = None,
        until: Union[str, datetime, None] = None,
        timeout: Optional[float] = None
    ) -> List[HistoryEntry]:
        """History by instance, actor and/or date range (filtering done by the datastore)"""
        return self.datastore.query_history(
            instance_id=instance_id,
            actor_id=actor_id,
            since=coerce_datetime(since),
            until=coerce_datetime(until),
            timeout=self._timeout(timeout)
        )

    def available_triggers(self, instance_id: str, timeout: Optional[float] = None) -> List[str]:
        """Triggers accepted at the instance's current step (empty when terminal)"""
        instance = self.get_instance(instance_id, timeout)
        if instance.is_terminal:
            return []
        definition = self.registry.get(instance.definition_name)
        return self.transition_resolver.get_available_triggers(definition, instance.current_step_id)

    def get_status(self, instance_id: str, timeout: Optional[float] = None) -> InstanceStatusView:
        """Instance with its open tasks and available triggers"""
        timeout = self._timeout(timeout)
        instance = self.get_instance(instance_id, timeout)
        definition = self.registry.get(instance.definition_name)
        step = definition.get_step(instance.current_step_id)
        triggers = [] if instance.is_terminal else self.transition_resolver.get_available_triggers(
            definition, instance.current_step_id
        )
        return InstanceStatusView(
            instance=instance,
            current_step_name=step.name if step else instance.current_step_id,
            open_tasks=self.datastore.list_open_tasks(instance_id, timeout=timeout),
            available_triggers=triggers
        )

    def list_tasks(
        self,
        assignee_role: Optional[str] = None,
        assignee_user_id: Optional[str] = None,
        status: Optional[TaskStatus] = None,
        timeout: Optional[float] = None
    ) -> List[PendingTask]:
        """Work queue for a role or user (open and claimed by default)"""
        statuses = [status] if status else [TaskStatus.OPEN, TaskStatus.CLAIMED]
        return self.datastore.list_tasks(
            assignee_role=assignee_role,
            assignee_user_id=assignee_user_id,
            statuses=statuses,
            timeout=self._timeout(timeout)
        )

    def list_overdue_tasks(
        self,
        now: Optional[datetime] = None,
        timeout: Optional[float] = None
    ) -> List[PendingTask]:
        """Open tasks past due_at, for external escalation schedulers"""
        return self.datastore.list_tasks(
            statuses=[TaskStatus.OPEN, TaskStatus.CLAIMED],
            due_before=coerce_datetime(now) or utc_now(),
            timeout=self._timeout(timeout)
        )

    @with_correlation_id
    def claim_task(self, task_id: str, user_id: str, timeout: Optional[float] = None) -> PendingTask:
        """
        Claim an open task for ``user_id``

        Tasks assigned to a specific user can only be claimed by that
        user; role tasks can be claimed by any caller (role membership is
        checked by the calling module). Re-claiming by the same user is a
        no-op.

        Raises:
            TaskNotFoundError, InvalidStateError,
            ConcurrentModificationError, PersistenceError
        """
        timeout = self._timeout(timeout)
        max_attempts = max(1, self.settings.fire_max_attempts)
        claimed: Dict[str, PendingTask] = {}

        def write() -> None:
            task = self.datastore.get_task(task_id, timeout=timeout)
            if task is None:
                raise TaskNotFoundError(f"Task {task_id} not found", details={"task_id": task_id})
            if task.status == TaskStatus.DONE:
                raise InvalidStateError(f"Task {task_id} is already done", details={"task_id": task_id})
            if task.status == TaskStatus.CLAIMED:
                if task.claimed_by != user_id:
                    raise InvalidStateError(
                        f"Task {task_id} is claimed by another user",
                        details={"task_id": task_id}
                    )
                claimed["task"] = task
                return
            if task.assignee_user_id and task.assignee_user_id != user_id:
                raise InvalidStateError(
                    f"Task {task_id} is assigned to a different user",
                    details={"task_id": task_id}
                )
            updated = task.model_copy(update={
                "status": TaskStatus.CLAIMED,
                "claimed_by": user_id,
                "claimed_at": utc_now()
            })
            self.datastore.save_task(updated, timeout=timeout)
            claimed["task"] = updated

        for attempt in range(1, max_attempts + 1):
            try:
                self._commit(write, task_id, timeout)
            except VersionConflictError:
                logger.warning(
                    "Write conflict claiming task, retrying",
                    extra={"task_id": task_id, "attempt": attempt}
                )
                continue
            logger.info(
                f"Task {task_id} claimed by {user_id}",
                extra={"task_id": task_id, "actor_id": user_id}
            )
            return claimed["task"]

        raise ConcurrentModificationError(
            f"Task {task_id} kept changing; claim not applied after {max_attempts} attempts",
            details={"task_id": task_id, "attempts": max_attempts}
        )

    def get_statistics(
        self,
        definition_name: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> Dict[str, Dict[str, Any]]:
        """Instance counts per definition: total, by status, by current step"""
        stats: Dict[str, Dict[str, Any]] = {}
        counts_by_name = self.datastore.count_instances(definition_name, timeout=self._timeout(timeout))
        for name, counts in counts_by_name.items():
            stats[name] = {
                "total": sum(counts["by_status"].values()),
                "by_status": counts["by_status"],
                "by_step": counts["by_step"]
            }
        return stats

    # =========================================================================
    # Helpers
    # =========================================================================

    def _timeout(self, timeout: Optional[float]) -> Optional[float]:
        return timeout if timeout is not None else self.settings.persistence_timeout_seconds

    def _load_instance_or_raise(self, instance_id: str, timeout: Optional[float]) -> WorkflowInstance:
        instance = self.datastore.load_instance(instance_id, timeout=timeout)
        if instance is None:
            raise InstanceNotFoundError(
                f"Instance {instance_id} not found",
                details={"instance_id": instance_id}
            )
        return instance
