from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from tracker.tickets.models import Actor
from tracker.tickets.state import ActorRole

Role = ActorRole


class User:
    """Authenticated caller as seen by the HTTP layer."""

    def __init__(self, user_id: str, name: str, role: Role):
        self.user_id = user_id
        self.name = name
        self.role = role

    def has_role(self, *roles: Role) -> bool:
        return self.role in roles

    def as_actor(self) -> Actor:
        return Actor(user_id=self.user_id, user_name=self.name, role=self.role)


# Session issuance lives outside this service; these tokens stand in for it.
TOKEN_USER_MAP: dict[str, tuple[str, str, Role]] = {
    "admin-token": ("u-admin", "Admin", Role.ADMIN),
    "agent-token": ("u-agent", "Agent", Role.AGENT),
    "customer-token": ("u-customer", "Customer", Role.CUSTOMER),
    "scheduler-token": ("system", "System", Role.SYSTEM),
}

bearer_scheme = HTTPBearer(auto_error=False)


def resolve_user_from_token(token: str | None) -> User:
    """Return the user associated with the provided bearer token."""

    if token is None:
        raise HTTPException(status_code=401, detail="Not authenticated")

    if token not in TOKEN_USER_MAP:
        raise HTTPException(status_code=401, detail="Invalid authentication credentials")

    user_id, name, role = TOKEN_USER_MAP[token]
    return User(user_id=user_id, name=name, role=role)


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
    """Dependency factory ensuring the current user holds one of ``roles``."""

    async def dependency(user: Annotated[User, Depends(get_current_user)]) -> User:
        if not user.has_role(*roles):
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user

    return dependency


def ensure_can_manage_watcher(user: User, watcher_user_id: str) -> None:
    """Users manage their own watch entries; only admins manage other people's."""

    if user.user_id != watcher_user_id and not user.has_role(Role.ADMIN):
        raise HTTPException(status_code=403, detail="Only admins can manage other users' watch entries")


CurrentUser = Annotated[User, Depends(get_current_user)]
