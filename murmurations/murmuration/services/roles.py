"""Permission matrix for the leader / deputy / recruit hierarchy.

Everything here is a pure decision over roles; callers load the memberships
and raise the appropriate error when a check returns False.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from murmurations.errors import ValidationError


class Role(str, Enum):
    """A member's rank inside a murmuration."""

    LEADER = "leader"
    DEPUTY = "deputy"
    RECRUIT = "recruit"

    @property
    def rank(self) -> int:
        """Position in the hierarchy, 0 being the most senior."""
        return _RANKS[self]

    @classmethod
    def parse(cls, value: Any) -> Role:
        """Coerce a stored or submitted value into a Role."""
        try:
            return cls(value)
        except ValueError as e:
            raise ValidationError(f"Unknown role: {value!r}.") from e


_RANKS = {Role.LEADER: 0, Role.DEPUTY: 1, Role.RECRUIT: 2}

# Roles reachable through promote / demote
ASSIGNABLE_ROLES = frozenset({Role.DEPUTY, Role.RECRUIT})


def can_set_role(actor: Role, target: Role, new_role: Role, is_self: bool) -> bool:
    """Only the leader moves other members between deputy and recruit."""
    if actor is not Role.LEADER or is_self:
        return False
    return target in ASSIGNABLE_ROLES and new_role in ASSIGNABLE_ROLES


def can_kick(actor: Role, target: Role, is_self: bool) -> bool:
    """Leaders kick anyone but themselves; deputies kick recruits only."""
    if is_self or target is Role.LEADER:
        return False
    if actor is Role.LEADER:
        return True
    if actor is Role.DEPUTY:
        return target is Role.RECRUIT
    return False


def can_invite(actor: Role) -> bool:
    return actor in (Role.LEADER, Role.DEPUTY)


def can_administer(actor: Role) -> bool:
    """Settings, disbanding and leadership transfer belong to the leader."""
    return actor is Role.LEADER


def succession_key(member: dict[str, Any]) -> tuple[int, datetime]:
    """Order candidates by role rank, then by join time, oldest first."""
    joined_at = member.get("joined_at") or datetime.max.replace(tzinfo=timezone.utc)
    if joined_at.tzinfo is None:
        joined_at = joined_at.replace(tzinfo=timezone.utc)
    return Role.parse(member.get("role")).rank, joined_at


def pick_successor(
    members: list[dict[str, Any]], leaving_user_id: str
) -> dict[str, Any] | None:
    """Choose who takes over when the leader leaves, or None if nobody is left."""
    candidates = [m for m in members if m.get("user_id") != leaving_user_id]
    if not candidates:
        return None
    return min(candidates, key=succession_key)
