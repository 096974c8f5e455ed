# market_oracle/core/access.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

from market_oracle.core.errors import AuthenticationRequired, PermissionDenied

Action = Literal["read", "write"]

READ_ONLY_ROLES = frozenset({"viewer"})


@dataclass(frozen=True)
class Caller:
    """Who is touching the price cache. ``subject`` is None for anonymous callers."""

    subject: Optional[str] = None
    role: str = "member"
    active: bool = True

    @property
    def authenticated(self) -> bool:
        return bool(self.subject)

    @classmethod
    def anonymous(cls) -> "Caller":
        return cls()

    @classmethod
    def system(cls) -> "Caller":
        """Identity used by scheduled jobs."""
        return cls(subject="system:scheduler", role="admin")

    @classmethod
    def from_user(cls, user) -> "Caller":
        return cls(subject=user.email, role=user.role or "member", active=bool(user.is_active))


def check_access(caller: Optional[Caller], action: Action) -> None:
    if caller is None or not caller.authenticated:
        raise AuthenticationRequired(action)
    if not caller.active:
        raise PermissionDenied(action, caller.subject)
    if action == "write" and caller.role in READ_ONLY_ROLES:
        raise PermissionDenied(action, caller.subject)
