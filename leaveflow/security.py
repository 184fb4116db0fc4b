from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from leaveflow.db import get_db
from leaveflow.errors import ApiError
from leaveflow.models import UserProfile, UserRole
from leaveflow.services.leave_state import Actor
from leaveflow.services.users import get_access_issues
from leaveflow.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True, slots=True)
class AuthIdentity:
    uid: str
    email: str | None = None
    name: str | None = None
    picture: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_identity_token(
    *,
    uid: str,
    email: str | None = None,
    name: str | None = None,
    picture: str | None = None,
    expires_minutes: int = 60,
) -> str:
    settings = get_settings()
    now = _utcnow()
    claims: dict[str, Any] = {
        "sub": uid,
        "email": email,
        "name": name,
        "picture": picture,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=expires_minutes)).timestamp()),
        "jti": str(uuid4()),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm="HS256")


def decode_identity_token(token: str) -> AuthIdentity:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.")

    def _optional(key: str) -> str | None:
        value = payload.get(key)
        return value if isinstance(value, str) and value else None

    return AuthIdentity(
        uid=subject,
        email=_optional("email"),
        name=_optional("name"),
        picture=_optional("picture"),
    )


def require_identity(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> AuthIdentity:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    identity = decode_identity_token(credentials.credentials)
    request.state.actor = "user"
    request.state.actor_id = identity.uid
    return identity


def require_member(
    identity: AuthIdentity = Depends(require_identity),
    db: Session = Depends(get_db),
) -> UserProfile:
    profile = db.get(UserProfile, identity.uid)
    issues = get_access_issues(profile)
    if issues:
        raise ApiError(
            status_code=403,
            code="ACCESS_DENIED",
            message=f"Access denied: {', '.join(issues)}.",
        )
    return profile


def require_admin(
    request: Request,
    profile: UserProfile = Depends(require_member),
) -> UserProfile:
    if profile.role != UserRole.ADMIN:
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
    request.state.actor = "admin"
    return profile


def actor_for(profile: UserProfile) -> Actor:
    return Actor(uid=profile.uid, role=profile.role)
