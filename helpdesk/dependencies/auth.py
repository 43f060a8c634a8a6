from collections.abc import Callable, Mapping
from enum import Enum
from typing import Annotated

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer


class Role(str, Enum):
    """Help-desk product roles."""

    ADMIN = "admin"
    STAFF = "staff"
    SUBMITTER = "submitter"


STAFF_ROLES = frozenset({Role.ADMIN, Role.STAFF})


class User:
    """Authenticated caller and the roles granted to them."""

    def __init__(self, username: str, roles: tuple[Role, ...], display_name: str | None = None):
        self.username = username
        self.roles = roles
        self.display_name = display_name or username

    def has_role(self, role: Role) -> bool:
        return role in self.roles


TOKEN_USER_MAP: dict[str, tuple[str, tuple[Role, ...]]] = {
    "admin-token": ("admin", (Role.ADMIN, Role.STAFF)),
    "staff-token": ("staff", (Role.STAFF,)),
    "submitter-token": ("submitter", (Role.SUBMITTER,)),
}

USER_DIRECTORY: dict[str, str] = {
    "admin": "Help Desk Admin",
    "staff": "Help Desk Staff",
    "submitter": "Ticket Submitter",
}

bearer_scheme = HTTPBearer(auto_error=False)


class UserSecurityContext:
    """Answers identity questions for the ticket workflow on behalf of one user."""

    def __init__(self, user: User, directory: Mapping[str, str] | None = None) -> None:
        self._user = user
        self._directory = USER_DIRECTORY if directory is None else directory

    @property
    def current_user_name(self) -> str:
        return self._user.username

    def is_in_valid_role(self) -> bool:
        return any(isinstance(role, Role) for role in self._user.roles)

    def is_staff(self) -> bool:
        return any(role in STAFF_ROLES for role in self._user.roles)

    def get_user_display_name(self, user_name: str | None) -> str:
        if not user_name:
            return ""
        if user_name == self._user.username:
            return self._user.display_name
        return self._directory.get(user_name, user_name)


def resolve_user_from_token(token: str | None) -> User:
    """Return the user for a bearer token; callers without one hold no product role."""

    if token is None:
        return User(username="anonymous", roles=())

    if token not in TOKEN_USER_MAP:
        raise HTTPException(status_code=401, detail="Invalid authentication credentials")

    username, roles = TOKEN_USER_MAP[token]
    return User(username=username, roles=roles, display_name=USER_DIRECTORY.get(username))


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    request: Request,
) -> User:
    cached = getattr(request.state, "user", None)
    if isinstance(cached, User):
        return cached

    token = credentials.credentials if credentials is not None else None
    user = resolve_user_from_token(token)
    request.state.user = user
    return user


def role_required(*roles: Role) -> Callable[[User], User]:
    """Dependency factory ensuring the current user holds at least one of ``roles``."""

    async def dependency(user: Annotated[User, Depends(get_current_user)]) -> User:
        if not any(user.has_role(role) for role in roles):
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user

    return dependency


CurrentUser = Annotated[User, Depends(get_current_user)]
