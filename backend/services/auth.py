"""
Bearer Token Authentication
===========================
HS256 JWTs issued by the account service. `sub` carries the user id; the
role is always read from users/{uid}.role so a role change applies to
tokens already issued.
"""

import os
from dataclasses import dataclass
from typing import Optional

import structlog
from jose import JWTError, jwt

from services.errors import forbidden, unauthorized
from storage.document_store import DocumentStore

logger = structlog.get_logger().bind(component="auth")


class AuthConfig:
    """Token configuration from environment"""

    JWT_SECRET = os.getenv("AUTH_JWT_SECRET", "")
    JWT_ALGORITHM = os.getenv("AUTH_JWT_ALGORITHM", "HS256")


auth_config = AuthConfig()


@dataclass(frozen=True)
class AuthContext:
    uid: str
    role: Optional[str] = None


def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class TokenAuthenticator:
    """Resolves an Authorization header to an AuthContext"""

    def __init__(self, store: DocumentStore, secret: Optional[str] = None, algorithm: Optional[str] = None):
        self.store = store
        self.secret = secret if secret is not None else auth_config.JWT_SECRET
        self.algorithm = algorithm or auth_config.JWT_ALGORITHM

    async def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """None when the token is missing, invalid, expired or names no user."""
        token = parse_bearer(authorization)
        if token is None or not self.secret:
            return None

        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except JWTError as e:
            logger.info("token_rejected", error=str(e))
            return None

        uid = claims.get("sub")
        if not uid:
            logger.info("token_rejected", error="missing sub claim")
            return None

        user = await self.store.get("users", uid)
        if user is None:
            logger.info("token_user_unknown", uid=uid)
            return None
        return AuthContext(uid=uid, role=user.get("role"))

    async def require_role(self, authorization: Optional[str], role: str) -> AuthContext:
        auth = await self.authenticate(authorization)
        if auth is None:
            raise unauthorized()
        if auth.role != role:
            raise forbidden(f"Requires {role} role")
        return auth
