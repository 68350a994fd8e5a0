"""Authentication helpers and FastAPI security dependencies.

This module decodes JWT tokens and provides the dependencies controllers
use to identify the caller: `get_current_user` returns the `User` row,
`get_caller` the lightweight `Caller` handed to workflow engines, and
`require_staff` rejects anyone who is not a teacher, advisor or admin.

Token verification raises HTTPExceptions on failure so it can be used
directly inside route dependencies.
"""

import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt
from sqlmodel import Session

from .config import settings
from .database import get_session
from . import models, repositories

bearer_scheme = HTTPBearer()


def decode_token(token: str):
    """Decode and verify a JWT token.

    Returns the decoded payload on success or raises an HTTPException
    with status 401 on failure.
    """
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail='token expired')
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail='invalid token')


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Security(bearer_scheme),
    db: Session = Depends(get_session),
) -> models.User:
    """FastAPI dependency that returns the authenticated user.

    The role is read from the database rather than the token, so a role
    change takes effect without re-login.
    """
    payload = decode_token(credentials.credentials)
    user_id = payload.get('user_id')
    if not user_id:
        raise HTTPException(status_code=401, detail='invalid token payload')
    user = repositories.UserRepository(db).get(user_id)
    if not user:
        raise HTTPException(status_code=401, detail='user not found')
    return user


def get_caller(user: models.User = Depends(get_current_user)) -> models.Caller:
    return user.as_caller()


def require_staff(caller: models.Caller = Depends(get_caller)) -> models.Caller:
    if not caller.is_staff:
        raise HTTPException(status_code=403, detail='staff role required')
    return caller


def require_grader(x_grader_token: Optional[str] = Header(default=None)) -> None:
    """Guard for the AI grader callback: a shared secret in `X-Grader-Token`."""
    if not x_grader_token or not hmac.compare_digest(x_grader_token, settings.GRADER_CALLBACK_TOKEN):
        raise HTTPException(status_code=401, detail='invalid grader token')
