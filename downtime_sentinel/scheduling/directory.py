"""Lookup of the monitored entities schedules are attached to."""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any

from pydantic import BaseModel, Field

from .models import EntityKey, ScheduleConfigurationError


logger = logging.getLogger(__name__)


class EntityNotFoundError(ScheduleConfigurationError):
    """Exception raised when a schedule references a host or service that doesn't exist."""
    pass


class Entity(BaseModel):
    """A monitored host or service."""

    key: EntityKey
    display_name: str = ""
    vars: Dict[str, Any] = Field(default_factory=dict)

    @property
    def name(self) -> str:
        return str(self.key)


class EntityDirectory(ABC):
    """Abstract directory of monitored entities."""

    @abstractmethod
    async def lookup(self, key: EntityKey) -> Optional[Entity]:
        """Look up an entity.

        Args:
            key: Host or host+service key

        Returns:
            Entity if it exists, None otherwise
        """
        pass

    async def require(self, key: EntityKey) -> Entity:
        """Look up an entity, raising if it is absent.

        Raises:
            EntityNotFoundError: If the entity does not exist
        """
        entity = await self.lookup(key)
        if entity is None:
            kind = "service" if key.is_service else "host"
            raise EntityNotFoundError(f"Referenced {kind} '{key}' doesn't exist")
        return entity


class InMemoryEntityDirectory(EntityDirectory):
    """Entity directory for single-node deployments and tests."""

    def __init__(self):
        self._entities: Dict[EntityKey, Entity] = {}

    def add_host(self, host_name: str, display_name: str = "", vars: Optional[Dict[str, Any]] = None) -> Entity:
        """Register a host."""
        key = EntityKey(host_name=host_name)
        entity = Entity(key=key, display_name=display_name or host_name, vars=vars or {})
        self._entities[key] = entity
        logger.debug(f"Registered host '{key}'")
        return entity

    def add_service(
        self,
        host_name: str,
        service_name: str,
        display_name: str = "",
        vars: Optional[Dict[str, Any]] = None
    ) -> Entity:
        """Register a service on an existing host.

        Raises:
            EntityNotFoundError: If the host is unknown
        """
        if EntityKey(host_name=host_name) not in self._entities:
            raise EntityNotFoundError(f"Cannot add service '{service_name}' to unknown host '{host_name}'")

        key = EntityKey(host_name=host_name, service_name=service_name)
        entity = Entity(key=key, display_name=display_name or service_name, vars=vars or {})
        self._entities[key] = entity
        logger.debug(f"Registered service '{key}'")
        return entity

    def remove(self, key: EntityKey) -> bool:
        """Remove an entity; removing a host also removes its services."""
        if key not in self._entities:
            return False

        del self._entities[key]
        if not key.is_service:
            for other in [k for k in self._entities if k.host_name == key.host_name]:
                del self._entities[other]

        logger.debug(f"Removed entity '{key}'")
        return True

    def list_entities(self) -> List[Entity]:
        return list(self._entities.values())

    async def lookup(self, key: EntityKey) -> Optional[Entity]:
        return self._entities.get(key)
