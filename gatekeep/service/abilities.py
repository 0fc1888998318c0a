from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional, Tuple

from gatekeep.storage.models import Permission

MANAGE = "manage"
ALL = "all"
WILDCARD = "*"

Grant = Tuple[str, str]


@dataclass(frozen=True)
class Ability:
    """Set of ``(action, resource)`` grants with wildcard-aware lookup.

    ``manage`` stands for every action and ``all`` for every resource, so
    ``can("create", "product")`` holds if any of ``(create, product)``,
    ``(manage, product)``, ``(create, all)`` or ``(manage, all)`` is granted.
    """

    grants: FrozenSet[Grant] = field(default_factory=frozenset)

    def can(self, action: str, resource: str) -> bool:
        action = action.lower()
        resource = resource.lower()
        return any(
            candidate in self.grants
            for candidate in (
                (action, resource),
                (MANAGE, resource),
                (action, ALL),
                (MANAGE, ALL),
            )
        )

    def cannot(self, action: str, resource: str) -> bool:
        return not self.can(action, resource)

    def missing(self, required: Iterable[str]) -> list[str]:
        """Return the ``resource:action`` strings in ``required`` not granted."""
        absent = []
        for perm in required:
            resource, _, action = perm.partition(":")
            if not self.can(action, resource):
                absent.append(perm)
        return absent

    @property
    def rules(self) -> list[dict[str, str]]:
        return [{"action": a, "subject": r} for a, r in sorted(self.grants)]


def _grant_for(resource: str, action: str) -> Grant:
    resource = resource.strip().lower()
    action = action.strip().lower()
    if action in (WILDCARD, MANAGE):
        action = MANAGE
    if resource == WILDCARD:
        resource = ALL
    return (action, resource)


def build_ability(permissions: Iterable[Permission]) -> Ability:
    return Ability(frozenset(_grant_for(p.resource, p.action) for p in permissions))


def ability_from_strings(permissions: Iterable[str]) -> Ability:
    """Build from ``"resource:action"`` strings, e.g. ``"product:*"``."""
    grants = set()
    for perm in permissions:
        resource, sep, action = perm.partition(":")
        if not sep or not resource or not action:
            raise ValueError(f"invalid permission string: {perm!r}")
        grants.add(_grant_for(resource, action))
    return Ability(frozenset(grants))


class AbilityEngine:
    """Resolve a user's grants from their role on every call.

    No caching: a permission change takes effect on the next request.
    """

    def __init__(self, store) -> None:
        self.store = store

    def for_user(self, user_id: str) -> Ability:
        user = self.store.get_user(user_id)
        if not user or not user.role_id:
            return Ability()
        return build_ability(self.store.list_role_permissions(user.role_id))

    def can(self, user_id: str, action: str, resource: str) -> bool:
        return self.for_user(user_id).can(action, resource)

    def role_name(self, user_id: str) -> Optional[str]:
        user = self.store.get_user(user_id)
        if not user or not user.role_id:
            return None
        role = self.store.get_role(user.role_id)
        return role.name if role else None
