"""Definition Loader - Read workflow definitions from configuration files"""
import json
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml

from ..domain.models import WorkflowDefinition
from ..domain.errors import DefinitionError
from .registry import DefinitionRegistry
from ..utils.logger import get_logger

logger = get_logger(__name__)

DEFINITION_SUFFIXES = (".json", ".yaml", ".yml")


def load_definition_file(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Read one definition file (JSON or YAML)

    The file name stem is used as the workflow name when the file does
    not declare one.
    """
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as f:
            if path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise DefinitionError(
            f"Cannot read workflow definition file {path}: {e}",
            details={"path": str(path)}
        ) from e

    if not isinstance(data, dict):
        raise DefinitionError(
            f"Workflow definition file {path} must contain a mapping",
            details={"path": str(path)}
        )
    data.setdefault("name", path.stem)
    return data


def load_definitions(
    directory: Union[str, Path],
    registry: DefinitionRegistry
) -> List[WorkflowDefinition]:
    """
    Register every definition file in ``directory``

    Files are loaded in sorted order. Any failure is fatal: the error
    names the offending file so startup can abort with a clear message.
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise DefinitionError(
            f"Workflow definitions directory not found: {directory}",
            details={"path": str(directory)}
        )

    loaded = []
    for path in sorted(directory.iterdir()):
        if path.suffix not in DEFINITION_SUFFIXES or not path.is_file():
            continue
        data = load_definition_file(path)
        try:
            loaded.append(registry.register(data))
        except DefinitionError as e:
            e.details.setdefault("path", str(path))
            raise

    logger.info(f"Loaded {len(loaded)} workflow definitions from {directory}")
    return loaded
