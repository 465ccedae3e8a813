import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Tuple

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..config import settings
from ..services.transitions import ActorRef


http_bearer = HTTPBearer(auto_error=False)

# Highest first; the first match becomes the actor role recorded on events
ROLE_PRIORITY = ("admin", "supervisor", "system", "staff")


@dataclass(frozen=True)
class Actor:
    id: str
    roles: Tuple[str, ...]

    @property
    def role(self) -> Optional[str]:
        for name in ROLE_PRIORITY:
            if name in self.roles:
                return name
        return self.roles[0] if self.roles else None

    def ref(self) -> ActorRef:
        return ActorRef(id=self.id, role=self.role)


def create_access_token(actor_id: str, roles: Optional[List[str]] = None, ttl_seconds: Optional[int] = None) -> str:
    now = datetime.now(tz=timezone.utc)
    payload = {
        "sub": str(actor_id),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds or settings.jwt_ttl_seconds)).timestamp()),
        "jti": str(uuid.uuid4()),
        "roles": roles or [],
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def get_current_actor(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
) -> Actor:
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    payload = decode_token(creds.credentials)
    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid subject")
    roles = payload.get("roles") or []
    if not isinstance(roles, list):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid roles claim")
    return Actor(id=str(subject), roles=tuple(str(r).lower() for r in roles))


def has_any_role(actor: Actor, *roles: str) -> bool:
    return "admin" in actor.roles or any(r in actor.roles for r in roles)


def require_roles(*required_roles: str):
    """
    Require at least one of the given roles (OR logic). Admin always passes.
    """
    def _dep(actor: Actor = Depends(get_current_actor)):
        if not has_any_role(actor, *required_roles):
            raise HTTPException(status_code=403, detail="Forbidden")
        return actor

    return _dep
