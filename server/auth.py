"""Bearer JWT authentication dependencies.

The token is issued by the external identity provider; its ``sub`` claim is
the stable external user id that internal profiles are keyed on.
"""

from __future__ import annotations

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from config import settings
from database import get_db
from logging_config import user_id_var
from models.user import UserProfile
from services.errors import ChatError, ErrorKind
from services.users import get_or_create_user

bearer_scheme = HTTPBearer(auto_error=False)


def decode_token(token: str) -> str:
    """Return the external user id carried by *token*."""
    if not settings.AUTH_JWT_SECRET:
        raise ChatError(ErrorKind.UNAUTHORIZED, "Authentication is not configured")
    options = {"require": ["sub"]}
    try:
        payload = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=settings.AUTH_JWT_ALGORITHMS,
            audience=settings.AUTH_JWT_AUDIENCE or None,
            options=options if settings.AUTH_JWT_AUDIENCE else {**options, "verify_aud": False},
        )
    except jwt.ExpiredSignatureError:
        raise ChatError(ErrorKind.UNAUTHORIZED, "Token has expired")
    except jwt.PyJWTError:
        raise ChatError(ErrorKind.UNAUTHORIZED, "Could not validate credentials")

    subject = payload.get("sub")
    if not subject:
        raise ChatError(ErrorKind.UNAUTHORIZED, "Invalid token payload")
    return str(subject)


def get_external_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    """FastAPI dependency: validate the Bearer token and return its subject."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ChatError(ErrorKind.UNAUTHORIZED, "Unauthorized")
    return decode_token(credentials.credentials)


def get_current_user(
    external_id: str = Depends(get_external_id),
    db: Session = Depends(get_db),
) -> UserProfile:
    """FastAPI dependency: the caller's profile, provisioned on first contact."""
    user = get_or_create_user(db, external_id)
    user_id_var.set(str(user.id))
    return user
