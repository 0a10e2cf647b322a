"""Definition Registry - Immutable workflow graphs keyed by name"""
from typing import Any, Dict, List, Mapping, Union

from pydantic import ValidationError as PydanticValidationError

from ..domain.models import WorkflowDefinition
from ..domain.errors import DefinitionError, DefinitionNotFoundError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class DefinitionRegistry:
    """
    Holds validated workflow definitions

    Definitions are registered once at process start and the registry
    is frozen afterwards. After freezing it is read-only, so concurrent
    readers need no locking.
    """

    def __init__(self):
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._frozen = False

    def register(
        self,
        definition: Union[WorkflowDefinition, Mapping[str, Any]]
    ) -> WorkflowDefinition:
        """
        Validate and store a definition

        Re-registering an identical definition is a no-op; registering a
        different shape under an existing name is refused.

        Raises:
            DefinitionError: If the graph is inconsistent, the name is
                taken by a different definition, or the registry is frozen
        """
        if self._frozen:
            raise DefinitionError("Registry is frozen; definitions are loaded at startup only")

        if not isinstance(definition, WorkflowDefinition):
            definition = self._parse(definition)

        errors = definition.validate_graph()
        if errors:
            raise DefinitionError(
                f"Invalid workflow definition '{definition.name}': {'; '.join(errors)}",
                details={"definition_name": definition.name, "errors": errors}
            )

        existing = self._definitions.get(definition.name)
        if existing is not None:
            if existing.checksum == definition.checksum:
                logger.info(
                    f"Definition {definition.name} already registered",
                    extra={"definition_name": definition.name}
                )
                return existing
            raise DefinitionError(
                f"Workflow '{definition.name}' is already registered with a different shape",
                details={
                    "definition_name": definition.name,
                    "registered_checksum": existing.checksum,
                    "new_checksum": definition.checksum
                }
            )

        for step_id in definition.find_unreachable_steps():
            logger.warning(
                f"Step {step_id} is not reachable from start",
                extra={"definition_name": definition.name, "step_id": step_id}
            )

        self._definitions[definition.name] = definition
        logger.info(
            f"Registered workflow definition: {definition.name}",
            extra={"definition_name": definition.name}
        )
        return definition

    def _parse(self, data: Mapping[str, Any]) -> WorkflowDefinition:
        try:
            return WorkflowDefinition.model_validate(data)
        except PydanticValidationError as e:
            name = data.get("name") if isinstance(data, Mapping) else None
            messages = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            ]
            raise DefinitionError(
                f"Malformed workflow definition '{name}': {'; '.join(messages)}",
                details={"definition_name": name, "errors": messages}
            ) from e

    def get(self, name: str) -> WorkflowDefinition:
        """Get definition by name or raise DefinitionNotFoundError"""
        definition = self._definitions.get(name)
        if definition is None:
            raise DefinitionNotFoundError(
                f"Workflow definition {name} not found",
                details={"definition_name": name}
            )
        return definition

    def names(self) -> List[str]:
        return sorted(self._definitions)

    def freeze(self) -> None:
        """Stop accepting registrations"""
        self._frozen = True
        logger.info(f"Definition registry frozen with {len(self._definitions)} workflows")

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)
