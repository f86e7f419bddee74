"""Member/authority directory: conflict-of-interest facts per resource."""

from __future__ import annotations

from typing import Protocol

from .db import Database


class ImpedimentSource(Protocol):
    async def impeded_members(self, resource_id: str) -> set[str]:
        """Members barred from voting on ``resource_id``."""
        ...


class DatabaseDirectory:
    """Impediments registered in the local database."""

    def __init__(self, db: Database):
        self.db = db

    async def impeded_members(self, resource_id: str) -> set[str]:
        return set(await self.db.list_impediments(resource_id))


class StaticDirectory:
    """Fixed impediment map, for callers that resolve conflicts elsewhere."""

    def __init__(self, impediments: dict[str, set[str]] | None = None):
        self.impediments = impediments or {}

    async def impeded_members(self, resource_id: str) -> set[str]:
        return set(self.impediments.get(resource_id, set()))
