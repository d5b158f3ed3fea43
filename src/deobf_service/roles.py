import hmac
from abc import ABC, abstractmethod
from collections.abc import Iterable

from deobf_service.config import Settings


class RoleProvider(ABC):
    @abstractmethod
    def has_role(self, role_id: str) -> bool: ...


class StaticRoles(RoleProvider):
    """Roles already resolved for a chat member."""

    def __init__(self, role_ids: Iterable[str] = ()) -> None:
        self.role_ids = frozenset(str(r) for r in role_ids)

    def has_role(self, role_id: str) -> bool:
        return role_id in self.role_ids


class AdminTokenRoles(RoleProvider):
    """Grants every role in ``granted`` to a caller presenting the admin token."""

    def __init__(self, presented: str | None, expected: str, granted: Iterable[str]) -> None:
        self._ok = bool(expected) and presented is not None and hmac.compare_digest(
            presented.encode(), expected.encode()
        )
        self.granted = frozenset(granted)

    def has_role(self, role_id: str) -> bool:
        return self._ok and role_id in self.granted


def roles_for_user(user_id: int | str, cfg: Settings) -> RoleProvider:
    if str(user_id) in cfg.gift_user_list:
        return StaticRoles([cfg.gift_role_id])
    return StaticRoles()
