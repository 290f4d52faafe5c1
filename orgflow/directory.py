"""Organisation directory and authorization collaborator."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from pydantic import BaseModel, Field


class UserRecord(BaseModel):
    """A user as seen by the workflow engine."""

    id: str
    name: str = ""
    is_active: bool = True
    roles: Set[str] = Field(default_factory=set)
    positions: Set[str] = Field(default_factory=set)


class PositionRecord(BaseModel):
    """An organisational position and the position it reports to."""

    code: str
    reports_to: Optional[str] = None


class Directory(Protocol):
    """Roles, positions and permission checks consumed by the engine."""

    async def get_user(self, user_id: str) -> UserRecord | None:
        """Return the user or ``None`` when unknown."""

    async def has_role(self, user_id: str, role_code: str) -> bool:
        """Return ``True`` if the user holds ``role_code``."""

    async def has_position(self, user_id: str, position_code: str) -> bool:
        """Return ``True`` if the user actively holds ``position_code``."""

    async def can(self, user_id: str, action: str, context: Dict[str, Any]) -> bool:
        """Generic permission check."""

    async def positions_of(self, user_id: str) -> list[str]:
        """Active position codes held by the user."""

    async def reports_to(self, position_code: str) -> str | None:
        """Position code that ``position_code`` reports to."""

    async def position_holders(self, position_code: str) -> list[str]:
        """Active users holding ``position_code``."""

    async def users_with_roles(self, role_codes: Iterable[str]) -> list[str]:
        """Users holding any of ``role_codes``."""

    async def users_in_positions(self, position_codes: Iterable[str]) -> list[str]:
        """Active users holding any of ``position_codes``."""


class InMemoryDirectory(Directory):
    """Directory backed by local dictionaries.

    ``permissions`` maps user ids to granted action names (``"*"`` grants
    everything). When ``permissions`` is ``None`` every check passes.
    """

    def __init__(self, permissions: Optional[Dict[str, Set[str]]] = None) -> None:
        self._users: Dict[str, UserRecord] = {}
        self._positions: Dict[str, PositionRecord] = {}
        self._permissions = permissions

    def add_user(
        self,
        user_id: str,
        name: str = "",
        is_active: bool = True,
        roles: Iterable[str] = (),
        positions: Iterable[str] = (),
    ) -> UserRecord:
        user = UserRecord(
            id=user_id,
            name=name or user_id,
            is_active=is_active,
            roles=set(roles),
            positions=set(positions),
        )
        self._users[user_id] = user
        return user

    def add_position(self, code: str, reports_to: Optional[str] = None) -> PositionRecord:
        position = PositionRecord(code=code, reports_to=reports_to)
        self._positions[code] = position
        return position

    def grant(self, user_id: str, action: str) -> None:
        if self._permissions is None:
            self._permissions = {}
        self._permissions.setdefault(user_id, set()).add(action)

    # ------------------------------------------------------------------
    async def get_user(self, user_id: str) -> UserRecord | None:
        return self._users.get(user_id)

    async def has_role(self, user_id: str, role_code: str) -> bool:
        user = self._users.get(user_id)
        return bool(user and role_code in user.roles)

    async def has_position(self, user_id: str, position_code: str) -> bool:
        user = self._users.get(user_id)
        return bool(user and user.is_active and position_code in user.positions)

    async def can(self, user_id: str, action: str, context: Dict[str, Any]) -> bool:
        if self._permissions is None:
            return True
        granted = self._permissions.get(user_id, set())
        return "*" in granted or action in granted

    async def positions_of(self, user_id: str) -> list[str]:
        user = self._users.get(user_id)
        if user is None or not user.is_active:
            return []
        return sorted(user.positions)

    async def reports_to(self, position_code: str) -> str | None:
        position = self._positions.get(position_code)
        return position.reports_to if position else None

    async def position_holders(self, position_code: str) -> list[str]:
        return [
            u.id
            for u in self._users.values()
            if u.is_active and position_code in u.positions
        ]

    async def users_with_roles(self, role_codes: Iterable[str]) -> list[str]:
        wanted = set(role_codes)
        return [u.id for u in self._users.values() if u.roles & wanted]

    async def users_in_positions(self, position_codes: Iterable[str]) -> list[str]:
        wanted = set(position_codes)
        result: List[str] = []
        for user in self._users.values():
            if user.is_active and user.positions & wanted:
                result.append(user.id)
        return result
