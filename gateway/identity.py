"""
Bearer-token identity verification.

Tokens are HS256 JWTs issued by the auth provider: ``sub`` is the account id,
``role`` is ``admin`` or ``member``. The secret comes from Settings, never
from the code.
"""

import time
from dataclasses import dataclass
from typing import Optional

import jwt

from ledger.errors import Forbidden, Unauthenticated

_ALGORITHM = "HS256"
ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Identity:
    account_id: str
    role: str = "member"
    email: Optional[str] = None
    name: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def encode_token(
    *,
    account_id: str,
    secret: str,
    role: str = "member",
    email: Optional[str] = None,
    name: Optional[str] = None,
    ttl_seconds: int = 3600,
) -> str:
    now = int(time.time())
    payload = {"sub": account_id, "role": role, "iat": now, "exp": now + ttl_seconds}
    if email:
        payload["email"] = email
    if name:
        payload["name"] = name
    return jwt.encode(payload, secret, algorithm=_ALGORITHM)


class IdentityVerifier:
    def __init__(self, secret: str):
        self._secret = secret

    def verify(self, token: Optional[str]) -> Identity:
        if not token:
            raise Unauthenticated("Unauthorized: No token provided")
        try:
            data = jwt.decode(token, self._secret, algorithms=[_ALGORITHM])
        except jwt.ExpiredSignatureError as e:
            raise Unauthenticated("User session expired") from e
        except jwt.InvalidTokenError as e:
            raise Unauthenticated(f"Invalid token: {e}") from e

        account_id = data.get("sub")
        if not account_id:
            raise Unauthenticated("Invalid token: missing subject")
        return Identity(
            account_id=str(account_id),
            role=data.get("role", "member"),
            email=data.get("email"),
            name=data.get("name"),
        )

    def verify_header(self, authorization: Optional[str]) -> Identity:
        if not authorization or not authorization.startswith("Bearer "):
            raise Unauthenticated("Unauthorized: No token provided")
        return self.verify(authorization[len("Bearer "):].strip())


def require_admin(identity: Identity) -> Identity:
    if not identity.is_admin:
        raise Forbidden("Administrative access required")
    return identity
