import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Header, Request
from passlib.context import CryptContext

from errors import Forbidden, Unauthorized

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=int(os.getenv("BCRYPT_ROUNDS", "12")),
)

TOKEN_COOKIE = "token"


@dataclass(frozen=True)
class Principal:
    """The authenticated caller, passed explicitly into every owner-scoped call."""
    user_id: str
    email: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def create_token(user_doc: Dict[str, Any], secret: str, exp_min: int) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_doc.get("_id")),
        "email": user_doc.get("email"),
        "role": user_doc.get("role", "user"),
        "exp": now + timedelta(minutes=exp_min),
        "iat": now,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def decode_token(token: str, secret: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid token")


def _token_from_request(request: Request, authorization: Optional[str]) -> Optional[str]:
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token:
            raise Unauthorized("Invalid authorization header")
        return token
    return request.cookies.get(TOKEN_COOKIE)


def get_principal(request: Request, authorization: Optional[str] = Header(default=None)) -> Principal:
    token = _token_from_request(request, authorization)
    if not token:
        raise Unauthorized("Unauthorized")
    services = request.app.state.services
    payload = decode_token(token, services.settings.jwt_secret)
    # Role and existence are re-read so demotions and deletions apply at once
    user = services.accounts.find_user(payload.get("sub", ""))
    if not user:
        raise Unauthorized("User not found")
    return Principal(user_id=str(user["_id"]), email=user["email"], role=user.get("role", "user"))


def require_admin(request: Request, authorization: Optional[str] = Header(default=None)) -> Principal:
    principal = get_principal(request, authorization)
    if not principal.is_admin:
        raise Forbidden("Not authorized as an admin")
    return principal
