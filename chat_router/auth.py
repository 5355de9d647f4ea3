"""Bearer token authentication for portal users."""

import logging
from dataclasses import dataclass

import jwt
from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)

ROLE_STUDENT = "student"
ROLE_ADMIN = "admin"
ALGORITHMS = ["HS256"]


@dataclass(frozen=True)
class AuthenticatedUser:
    id: str
    role: str


def _bearer_token(request: Request) -> str:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return ""
    return token.strip()


def authenticate(request: Request) -> AuthenticatedUser:
    token = _bearer_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Authentication required")

    secret = request.app.state.config.jwt_secret
    if not secret:
        logger.error("JWT_SECRET is not configured, rejecting authenticated request")
        raise HTTPException(status_code=500, detail="Authentication error")

    try:
        claims = jwt.decode(token, secret, algorithms=ALGORITHMS)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = claims.get("userId")
    if user_id is None or user_id == "":
        raise HTTPException(status_code=401, detail="Invalid token")
    return AuthenticatedUser(id=str(user_id), role=str(claims.get("role", "")))


def require_student(request: Request) -> AuthenticatedUser:
    user = authenticate(request)
    if user.role != ROLE_STUDENT:
        raise HTTPException(status_code=403, detail="Student access required")
    return user


def require_admin(request: Request) -> AuthenticatedUser:
    user = authenticate(request)
    if user.role != ROLE_ADMIN:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
