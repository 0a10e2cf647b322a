"""Transition Resolver - Determine next step based on triggers and guards"""
from typing import Any, List, Mapping, Union

from ..domain.models import (
    WorkflowDefinition, Transition, TransitionRejected,
    REASON_NO_MATCH, REASON_GUARD_ERROR
)
from ..domain.errors import GuardEvaluationError
from .condition_evaluator import ConditionEvaluator
from ..utils.logger import get_logger

logger = get_logger(__name__)


class TransitionResolver:
    """
    Resolve transitions based on current step, trigger, and guards

    Given current step S and trigger T:
    1. Scan S's transitions in declared order
    2. Pick the first whose trigger is T and whose guard holds
    3. If none matches -> TransitionRejected (an expected outcome, not an error)

    Several transitions may share a trigger to branch on context;
    definitions order guarded branches before an unguarded fallback.
    """

    def __init__(self, condition_evaluator: ConditionEvaluator = None):
        self.condition_evaluator = condition_evaluator or ConditionEvaluator()

    def resolve(
        self,
        definition: WorkflowDefinition,
        current_step_id: str,
        trigger: str,
        context: Mapping[str, Any]
    ) -> Union[Transition, TransitionRejected]:
        """
        Resolve the transition accepted by ``trigger`` at ``current_step_id``

        Args:
            definition: Workflow definition
            current_step_id: Instance's current step
            trigger: Fired event name
            context: Instance context (already merged with the caller's patch)

        Returns:
            The matched Transition (its target may be None for terminal
            transitions) or TransitionRejected
        """
        step = definition.get_step(current_step_id)
        if step is None:
            logger.warning(
                f"Step {current_step_id} not found in definition {definition.name}",
                extra={"definition_name": definition.name, "step_id": current_step_id}
            )
            return TransitionRejected(reason=REASON_NO_MATCH, trigger=trigger, step_id=current_step_id)

        for transition in step.transitions:
            if transition.trigger != trigger:
                continue
            if transition.guard is not None:
                try:
                    passed = self.condition_evaluator.evaluate(
                        transition.guard, context, definition.context_fields
                    )
                except GuardEvaluationError as e:
                    logger.warning(
                        f"Guard evaluation failed: {e.message}",
                        extra={
                            "definition_name": definition.name,
                            "step_id": current_step_id,
                            "trigger": trigger
                        }
                    )
                    return TransitionRejected(
                        reason=REASON_GUARD_ERROR, trigger=trigger, step_id=current_step_id
                    )
                if not passed:
                    continue

            logger.info(
                f"Resolved transition: {current_step_id} -> {transition.target}",
                extra={
                    "from_step": current_step_id,
                    "to_step": transition.target,
                    "trigger": trigger
                }
            )
            return transition

        return TransitionRejected(reason=REASON_NO_MATCH, trigger=trigger, step_id=current_step_id)

    def get_outgoing_transitions(
        self,
        definition: WorkflowDefinition,
        step_id: str
    ) -> List[Transition]:
        """Get all outgoing transitions from a step"""
        step = definition.get_step(step_id)
        return list(step.transitions) if step else []

    def get_available_triggers(
        self,
        definition: WorkflowDefinition,
        step_id: str
    ) -> List[str]:
        """Distinct triggers accepted at a step, in declared order"""
        triggers: List[str] = []
        for transition in self.get_outgoing_transitions(definition, step_id):
            if transition.trigger not in triggers:
                triggers.append(transition.trigger)
        return triggers
