"""
auth/roles.py -- Role hierarchy checks.

admin > manager > staff. A role permits every action that requires it or a
lower role. Ownership ("acting on my own record") is a separate rule; callers
compose the two with can_access().
"""

from __future__ import annotations

from auth.models import Role

_RANK: dict[Role, int] = {
    Role.STAFF: 1,
    Role.MANAGER: 2,
    Role.ADMIN: 3,
}


def _rank(role: Role | str) -> int:
    try:
        return _RANK[Role(role)]
    except ValueError:
        return 0


def permits(actor_role: Role | str, required_role: Role | str) -> bool:
    """Return True if actor_role is at or above required_role.

    Unknown roles rank below everything and never permit anything.
    """
    actor = _rank(actor_role)
    required = _rank(required_role)
    return actor > 0 and required > 0 and actor >= required


def is_self(actor_id: str | None, owner_id: str | None) -> bool:
    return actor_id is not None and actor_id == owner_id


def can_access(actor_id: str, actor_role: Role | str, owner_id: str, required_role: Role | str) -> bool:
    return is_self(actor_id, owner_id) or permits(actor_role, required_role)
