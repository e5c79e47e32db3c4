"""User directory lookups used by the workflow.

Profiles, saved signatures and the admin flag all come from the ``users`` and
``roles`` tables.  Database errors are reported as :class:`DependencyFailure`
so callers can tell an unreachable directory apart from a bad request.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from errors import DependencyFailure
from models import Role, RoleEnum, User


@dataclass(frozen=True)
class UserProfile:
    id: int
    name: str
    position: Optional[str]
    email: Optional[str]


class Directory:
    """Read-only view over users, bound to the caller's session."""

    def __init__(self, session) -> None:
        self.session = session

    def _user(self, user_id: int) -> Optional[User]:
        try:
            return self.session.get(User, user_id)
        except SQLAlchemyError as exc:
            raise DependencyFailure(
                "User directory lookup failed", user_id=user_id
            ) from exc

    def get_user_signature(self, user_id: int) -> Optional[str]:
        user = self._user(user_id)
        return user.signature if user and user.signature else None

    def get_user_profile(self, user_id: int) -> Optional[UserProfile]:
        user = self._user(user_id)
        if not user:
            return None
        return UserProfile(
            id=user.id,
            name=user.display_name,
            position=user.position,
            email=user.email,
        )

    def is_admin(self, user_id: int) -> bool:
        try:
            return (
                self.session.query(User.id)
                .join(User.roles)
                .filter(User.id == user_id, Role.name == RoleEnum.ADMIN.value)
                .first()
                is not None
            )
        except SQLAlchemyError as exc:
            raise DependencyFailure(
                "User directory lookup failed", user_id=user_id
            ) from exc
