"""
Connection authentication for the real-time channel.

A connection without a credential is admitted as a guest so that read-only
observers (e.g. the supplier portal) can watch shipments. A connection that
presents a credential must present a valid one: an invalid, expired or
unverifiable token refuses the connection instead of downgrading it.
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Mapping, Optional

import jwt

from shared.core import get_logger
from shiptrack.core_settings import Settings
from shiptrack.exceptions import AuthenticationError

logger = get_logger(__name__)

BEARER_SCHEME = "bearer"


class Role(str, Enum):
    GUEST = "guest"
    USER = "user"
    ADMIN = "admin"
    SUPPLIER = "supplier"


# Roles a signed credential may carry; guest is never issued
TOKEN_ROLES = {Role.USER, Role.ADMIN, Role.SUPPLIER}


@dataclass(frozen=True)
class Identity:
    """Principal behind one live connection. Never persisted."""

    connection_id: str
    user_id: Optional[str]
    role: Role

    @property
    def is_guest(self) -> bool:
        return self.user_id is None


def new_connection_id() -> str:
    return f"conn_{uuid.uuid4().hex}"


def create_access_token(
    user_id: str,
    secret: str,
    role: str = Role.USER.value,
    algorithm: str = "HS256",
    expires_minutes: int = 15,
) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "id": user_id,
        "role": role,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


def extract_credential(headers: Mapping[str, str], query_params: Mapping[str, str]) -> Optional[str]:
    """Credential presented at the handshake, ``?token=`` first, then the Authorization header.

    Returns None only when neither is present. A present but empty or
    non-bearer value is still returned so that verification refuses it.
    """
    if "token" in query_params:
        return query_params["token"]
    auth_header = (headers.get("authorization") or "").strip()
    if not auth_header:
        return None
    scheme, _, value = auth_header.partition(" ")
    if scheme.lower() == BEARER_SCHEME:
        return value.strip()
    return auth_header


class ConnectionAuthenticator:
    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        timeout: float = 5.0,
        token_ttl_minutes: int = 15,
    ):
        self.secret = secret
        self.algorithm = algorithm
        self.timeout = timeout
        self.token_ttl_minutes = token_ttl_minutes

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConnectionAuthenticator":
        return cls(
            secret=settings.JWT_SECRET,
            algorithm=settings.JWT_ALG,
            timeout=settings.AUTH_TIMEOUT_SECONDS,
            token_ttl_minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES,
        )

    def issue_token(self, user_id: str, role: Role = Role.USER) -> str:
        """Access token this authenticator will accept, e.g. for service-to-service watchers."""
        if role not in TOKEN_ROLES:
            raise AuthenticationError(f"Authentication error: role {role.value!r} cannot be issued")
        return create_access_token(
            user_id, self.secret, role=role.value,
            algorithm=self.algorithm, expires_minutes=self.token_ttl_minutes,
        )

    async def authenticate(self, credential: Optional[str], connection_id: Optional[str] = None) -> Identity:
        """Derive the identity for a new connection.

        Raises ``AuthenticationError`` when a credential is present but cannot
        be verified within ``timeout`` seconds.
        """
        connection_id = connection_id or new_connection_id()

        if credential is None:
            logger.info(f"Guest connection admitted: {connection_id}")
            return Identity(connection_id=connection_id, user_id=None, role=Role.GUEST)
        if not credential.strip():
            raise AuthenticationError("Authentication error: empty credential")

        # Executor futures cancel cleanly on timeout; the worker thread is abandoned
        loop = asyncio.get_running_loop()
        try:
            claims = await asyncio.wait_for(
                loop.run_in_executor(None, self._decode, credential), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Credential verification timed out for {connection_id}")
            raise AuthenticationError("Authentication error: verification timed out")

        identity = self._identity_from_claims(claims, connection_id)
        logger.info(
            f"Authenticated connection: userId={identity.user_id}, role={identity.role.value}, "
            f"connectionId={connection_id}"
        )
        return identity

    def _decode(self, token: str) -> dict:
        try:
            return jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Authentication error: token expired")
        except jwt.PyJWTError as e:
            raise AuthenticationError(f"Authentication error: {e}")

    @staticmethod
    def _identity_from_claims(claims: dict, connection_id: str) -> Identity:
        if claims.get("type") == "refresh":
            raise AuthenticationError("Authentication error: refresh tokens cannot open a connection")

        user_id = claims.get("id") or claims.get("sub")
        if not user_id:
            raise AuthenticationError("Authentication error: token has no subject")

        try:
            role = Role(claims.get("role") or Role.USER.value)
        except ValueError:
            raise AuthenticationError(f"Authentication error: unknown role {claims.get('role')!r}")
        if role not in TOKEN_ROLES:
            raise AuthenticationError(f"Authentication error: role {role.value!r} cannot be issued")

        return Identity(connection_id=connection_id, user_id=str(user_id), role=role)
