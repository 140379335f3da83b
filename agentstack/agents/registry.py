"""Registry of built-in and custom agent types."""

from __future__ import annotations

import logging

from .definitions import AgentDefinition, builtin_definitions

logger = logging.getLogger(__name__)


class AgentRegistry:
    """Built-in types are fixed; custom types are last-write-wins."""

    def __init__(self, builtins: tuple[AgentDefinition, ...] | None = None) -> None:
        self._core: dict[str, AgentDefinition] = {d.type: d for d in (builtins or builtin_definitions())}
        self._custom: dict[str, AgentDefinition] = {}

    def get(self, agent_type: str) -> AgentDefinition | None:
        return self._core.get(agent_type) or self._custom.get(agent_type)

    def has(self, agent_type: str) -> bool:
        return agent_type in self._core or agent_type in self._custom

    def is_builtin(self, agent_type: str) -> bool:
        return agent_type in self._core

    def list_types(self) -> list[str]:
        return [*self._core, *self._custom]

    def list_definitions(self) -> list[AgentDefinition]:
        return [*self._core.values(), *self._custom.values()]

    def register(self, definition: AgentDefinition) -> bool:
        if definition.type in self._core:
            logger.warning("Cannot override core agent type %s", definition.type)
            return False
        if definition.type in self._custom:
            logger.warning("Overwriting existing custom agent %s", definition.type)
        self._custom[definition.type] = definition
        logger.info("Registered custom agent %s", definition.type)
        return True

    def unregister(self, agent_type: str) -> bool:
        if agent_type in self._core:
            logger.warning("Cannot unregister core agent type %s", agent_type)
            return False
        removed = self._custom.pop(agent_type, None) is not None
        if removed:
            logger.info("Unregistered custom agent %s", agent_type)
        return removed

    def counts(self) -> dict[str, int]:
        return {"core": len(self._core), "custom": len(self._custom), "total": len(self._core) + len(self._custom)}

    def clear_custom(self) -> None:
        self._custom.clear()
