from __future__ import annotations

from typing import Protocol

from .permissions import ActingUser


class SecurityContext(Protocol):
    """Identity facts about the user on whose behalf the workflow runs."""

    @property
    def current_user_name(self) -> str:
        ...

    def is_in_valid_role(self) -> bool:
        ...

    def is_staff(self) -> bool:
        ...

    def get_user_display_name(self, user_name: str | None) -> str:
        ...


def acting_user(security: SecurityContext) -> ActingUser:
    return ActingUser(
        user_name=security.current_user_name,
        is_valid_role=security.is_in_valid_role(),
        is_staff=security.is_staff(),
    )
