"""
Achievement Catalog Loading

Definitions are validated once, when they are loaded:
- field-level invariants (pydantic model validators)
- prerequisites must reference known definitions
- prerequisites must not form a cycle

Evaluation never re-validates; a definition that fails here is never
handed to the calculator.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable, Mapping, Optional, Protocol, Union

from pydantic import ValidationError as PydanticValidationError

from barber_loyalty.exceptions import ConfigurationError
from barber_loyalty.models.achievement import AchievementDefinition

logger = logging.getLogger(__name__)

RawDefinition = Union[AchievementDefinition, Mapping[str, Any]]


@dataclass
class CatalogLoadResult:
    """Loaded definitions plus the ones that were blocked"""
    definitions: dict[str, AchievementDefinition] = field(default_factory=dict)
    errors: list[ConfigurationError] = field(default_factory=list)


def load_definitions(raw_definitions: Iterable[RawDefinition], strict: bool = False) -> CatalogLoadResult:
    """
    Parse and validate catalog definitions

    Args:
        raw_definitions: Definitions as models or raw mappings
        strict: Raise on the first error instead of dropping the offender

    Returns:
        CatalogLoadResult with valid definitions keyed by ID and the errors
        for every blocked definition

    Raises:
        ConfigurationError: In strict mode, for the first invalid definition
    """
    result = CatalogLoadResult()

    def reject(message: str, achievement_id: Optional[str], cause: Optional[Exception] = None) -> None:
        error = ConfigurationError(
            message=message,
            config_key=f"achievement:{achievement_id}" if achievement_id else "achievement",
            operation="load_definitions",
            cause=cause,
        )
        if strict:
            raise error
        result.errors.append(error)

    parsed: dict[str, AchievementDefinition] = {}
    for raw in raw_definitions:
        raw_id = raw.id if isinstance(raw, AchievementDefinition) else raw.get("id")
        try:
            definition = (
                raw if isinstance(raw, AchievementDefinition)
                else AchievementDefinition.model_validate(raw)
            )
        except PydanticValidationError as e:
            reject(f"Invalid achievement definition {raw_id!r}: {e.error_count()} validation error(s)", raw_id, e)
            continue

        if definition.id in parsed:
            reject(f"Duplicate achievement id {definition.id!r}", definition.id)
            continue
        parsed[definition.id] = definition

    # Unknown prerequisites (repeat until stable: dropping one can orphan another)
    changed = True
    while changed:
        changed = False
        for achievement_id, definition in list(parsed.items()):
            missing = definition.prerequisites - parsed.keys()
            if missing:
                del parsed[achievement_id]
                reject(
                    f"Achievement {achievement_id!r} has unknown prerequisites: {sorted(missing)}",
                    achievement_id,
                )
                changed = True

    for cycle_member in sorted(find_prerequisite_cycles(parsed)):
        parsed.pop(cycle_member, None)
        reject(f"Achievement {cycle_member!r} is part of a prerequisite cycle", cycle_member)

    # Definitions depending on a cycle member lose their prerequisite too
    changed = True
    while changed:
        changed = False
        for achievement_id, definition in list(parsed.items()):
            if definition.prerequisites - parsed.keys():
                del parsed[achievement_id]
                reject(f"Achievement {achievement_id!r} depends on a blocked definition", achievement_id)
                changed = True

    result.definitions = parsed
    logger.info(
        f"Loaded {len(result.definitions)} achievement definitions "
        f"({len(result.errors)} blocked)"
    )
    return result


def find_prerequisite_cycles(definitions: Mapping[str, AchievementDefinition]) -> set[str]:
    """
    Return every achievement ID that lies on a prerequisite cycle

    Iterative three-color DFS over the prerequisite graph.
    """
    white, grey, black = 0, 1, 2
    color = {achievement_id: white for achievement_id in definitions}
    on_cycle: set[str] = set()

    for root in sorted(definitions):
        if color[root] != white:
            continue
        path: list[str] = []
        stack = [(root, iter(sorted(definitions[root].prerequisites)))]
        color[root] = grey
        path.append(root)

        while stack:
            node, children = stack[-1]
            advanced = False
            for child in children:
                if child not in definitions:
                    continue
                if color[child] == grey:
                    # Back edge: everything from child to node is on the cycle
                    on_cycle.update(path[path.index(child):])
                elif color[child] == white:
                    color[child] = grey
                    path.append(child)
                    stack.append((child, iter(sorted(definitions[child].prerequisites))))
                    advanced = True
                    break
            if not advanced:
                color[node] = black
                path.pop()
                stack.pop()

    return on_cycle


class CatalogStore(Protocol):
    """Read-only source of achievement definitions"""

    async def list_active_definitions(self, as_of: date) -> list[AchievementDefinition]:
        ...

    async def get_definition(self, achievement_id: str) -> Optional[AchievementDefinition]:
        ...


class InMemoryCatalogStore:
    """Catalog held in process memory (tests, embedding, seeded demos)"""

    def __init__(self, definitions: Iterable[RawDefinition] = (), strict: bool = False):
        loaded = load_definitions(definitions, strict=strict)
        self._definitions = loaded.definitions
        self.load_errors = loaded.errors

    async def list_active_definitions(self, as_of: date) -> list[AchievementDefinition]:
        """Active definitions inside their validity window, by tier then points"""
        active = [
            d for d in self._definitions.values()
            if d.is_active and d.is_within_validity(as_of)
        ]
        active.sort(key=lambda d: (d.tier.rank, d.points, d.id))
        return active

    async def get_definition(self, achievement_id: str) -> Optional[AchievementDefinition]:
        """Any definition by ID, active or not"""
        return self._definitions.get(achievement_id)
