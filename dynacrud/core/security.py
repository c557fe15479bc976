from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Mapping, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from dynacrud.core.config import settings
from dynacrud.core.crud.metadata import MetadataStore

GUEST_ROLE = "guest"


@dataclass(frozen=True)
class ActorContext:
    """Who is acting on the entity. Passed explicitly to every call."""

    id: Optional[int] = None
    role: str = GUEST_ROLE
    ip: Optional[str] = None


ANONYMOUS = ActorContext()


def create_access_token(data: dict):
    to_encode = data.copy()

    expire_time = datetime.now(timezone.utc) + timedelta(
        minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
    )
    to_encode.update({"exp": expire_time})

    encoded_jwt = jwt.encode(
        to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM
    )

    return encoded_jwt


def actor_from_token(token: str, ip: Optional[str] = None) -> ActorContext:
    payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    return ActorContext(
        id=payload.get("user_id"), role=payload.get("role") or GUEST_ROLE, ip=ip
    )


# The token is optional: requests without one act as a guest
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)


async def get_actor(
    request: Request, token: Annotated[Optional[str], Depends(oauth2_scheme)]
) -> ActorContext:
    ip = request.client.host if request.client else None

    if token is None:
        return ActorContext(ip=ip)

    try:
        return actor_from_token(token, ip)
    # Expired or tampered token
    except jwt.PyJWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


# =========================
# CSRF
# =========================
class CsrfGuard:
    """
    Issues and checks signed CSRF tokens bound to an actor.
    Tokens are short-lived JWTs, so no server-side session is needed.
    """

    def __init__(self, secret: Optional[str] = None, ttl_minutes: Optional[int] = None):
        self.secret = secret or settings.SECRET_KEY
        self.ttl_minutes = ttl_minutes or settings.CSRF_TOKEN_EXPIRE_MINUTES

    def generate(self, actor: ActorContext) -> str:
        expire_time = datetime.now(timezone.utc) + timedelta(minutes=self.ttl_minutes)
        return jwt.encode(
            {"csrf": True, "sub": str(actor.id or ""), "exp": expire_time},
            self.secret,
            algorithm=settings.ALGORITHM,
        )

    def validate(self, token: Optional[str], actor: ActorContext) -> bool:
        if not token:
            return False
        try:
            payload = jwt.decode(token, self.secret, algorithms=[settings.ALGORITHM])
        except jwt.PyJWTError:
            return False
        return bool(payload.get("csrf")) and payload.get("sub") == str(actor.id or "")


# =========================
# PERMISSIONS
# =========================
class PermissionManager:
    """
    Table-level role permissions with an optional row-level ownership layer.

    Table permissions come from the "permissions" block ({action: [roles]}).
    When the actor's role is not listed, row-level security may still grant
    access to rows the actor owns.
    """

    def __init__(
        self,
        metadata: MetadataStore,
        actor: ActorContext = ANONYMOUS,
        fail_closed: Optional[bool] = None,
    ):
        self.permissions = metadata.permissions()
        self.rls = metadata.row_level_security()
        self.actor = actor
        self.fail_closed = (
            settings.PERMISSIONS_FAIL_CLOSED if fail_closed is None else fail_closed
        )

    @property
    def current_user_id(self) -> Optional[int]:
        return self.actor.id

    @property
    def current_role(self) -> str:
        return self.actor.role or GUEST_ROLE

    def can(self, action: str, record: Optional[Mapping[str, Any]] = None) -> bool:
        if self._has_table_permission(action):
            return True

        if record is not None and self.rls is not None and self.rls.enabled:
            return self._has_row_permission(action, record)

        return False

    def _has_table_permission(self, action: str) -> bool:
        if not self.permissions:
            return not self.fail_closed

        allowed_roles = self.permissions.get(action, [])
        return "*" in allowed_roles or self.current_role in allowed_roles

    def _has_row_permission(self, action: str, record: Mapping[str, Any]) -> bool:
        owner_id = record.get(self.rls.owner_field)
        if owner_id is None:
            return True

        is_owner = self.actor.id is not None and str(owner_id) == str(self.actor.id)
        if not is_owner:
            return False

        if action in ("update", "edit"):
            return self.rls.owner_can_edit
        if action == "delete":
            return self.rls.owner_can_delete
        return True

    def can_create(self) -> bool:
        return self.can("create")

    def can_read(self, record: Optional[Mapping[str, Any]] = None) -> bool:
        return self.can("read", record)

    def can_update(self, record: Optional[Mapping[str, Any]] = None) -> bool:
        return self.can("update", record)

    def can_delete(self, record: Optional[Mapping[str, Any]] = None) -> bool:
        return self.can("delete", record)
