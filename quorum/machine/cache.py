"""Definition store backed by the repository with an in-memory cache."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import ValidationError

from ..errors import InvalidDefinition
from ..persistence import OrchestratorRepository, WorkflowDefinition

logger = logging.getLogger(__name__)


def validate_definition(definition: WorkflowDefinition) -> WorkflowDefinition:
    errors = definition.graph_errors()
    if errors:
        raise InvalidDefinition(f"Workflow '{definition.type}': " + "; ".join(errors))
    return definition


def load_definitions_from_path(path: str | Path) -> List[WorkflowDefinition]:
    """Read workflow definitions from a YAML file or a directory of them.

    A file may hold a single definition mapping or a list of mappings.
    """
    path = Path(path)
    files = sorted(path.glob("*.y*ml")) if path.is_dir() else [path]
    definitions: List[WorkflowDefinition] = []
    for file in files:
        with open(file) as f:
            data = yaml.safe_load(f) or []
        items = data if isinstance(data, list) else [data]
        for item in items:
            try:
                definition = WorkflowDefinition.model_validate(item)
            except ValidationError as e:
                raise InvalidDefinition(f"{file}: {e}") from e
            definitions.append(validate_definition(definition))
    return definitions


class DefinitionCache:
    """Active workflow definitions keyed by type.

    ``load`` replaces the whole mapping in one assignment so concurrent
    readers see either the old or the new set.
    """

    def __init__(self, repository: OrchestratorRepository) -> None:
        self.repository = repository
        self._definitions: Dict[str, WorkflowDefinition] = {}

    async def load(self) -> int:
        definitions = await self.repository.list_definitions(active_only=True)
        self._definitions = {d.type: d for d in definitions}
        logger.info(f"Loaded {len(definitions)} workflow definitions")
        return len(definitions)

    async def get(self, definition_type: str) -> Optional[WorkflowDefinition]:
        cached = self._definitions.get(definition_type)
        if cached is not None:
            return cached
        definition = await self.repository.get_definition(definition_type, active_only=True)
        if definition is not None:
            self._definitions = {**self._definitions, definition_type: definition}
        return definition

    async def save(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        validate_definition(definition)
        await self.repository.save_definition(definition)
        if definition.is_active:
            self._definitions = {**self._definitions, definition.type: definition}
        else:
            self.invalidate(definition.type)
        logger.info(f"Saved workflow definition {definition.type} v{definition.version}")
        return definition

    def invalidate(self, definition_type: Optional[str] = None) -> None:
        if definition_type is None:
            self._definitions = {}
        else:
            self._definitions = {
                k: v for k, v in self._definitions.items() if k != definition_type
            }

    def cached_types(self) -> List[str]:
        return sorted(self._definitions)
