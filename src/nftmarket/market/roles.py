"""Privileged role checks.

Configuration changes (the listing fee) are restricted to a privileged
identity. The check is injected into the engine so deployments and
tests can substitute their own policy.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class RoleCheck(Protocol):
    def is_admin(self, caller: str) -> bool:
        ...


class SingleOwnerRole:
    """Exactly one identity, fixed at construction, is privileged."""

    def __init__(self, owner_id: str) -> None:
        if not owner_id:
            raise ValueError("Owner identity must be non-empty")
        self._owner_id = owner_id

    @property
    def owner_id(self) -> str:
        return self._owner_id

    def is_admin(self, caller: str) -> bool:
        return caller == self._owner_id
