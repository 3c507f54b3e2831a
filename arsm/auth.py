"""
ARSM - Authentication Module
==============================
Stateless session tokens and the FastAPI dependencies that enforce them.

Security model:
- Users and password hashes live in data/users.json (see users.py)
- A successful login returns a JWT (HS256) carrying username and role,
  valid for 24 hours
- The signing secret is known only to the panel process (ARSM_JWT_SECRET
  in .env, generated on first start)
- Tokens are not stored server-side and cannot be revoked; logout is the
  client discarding its token
- When authentication is disabled in users.json, every request is
  admitted as an anonymous administrator

Login flow:
    1. POST /api/auth/login with username + password
    2. UserStore.authenticate() checks the bcrypt hash
    3. TokenIssuer.issue() returns the token and its expiry
    4. The browser sends "Authorization: Bearer <token>" on every request
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import Depends, HTTPException, Query
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt

from arsm.errors import InvalidToken, TokenExpired
from arsm.users import ROLE_ADMIN, ROLES, UserStore


JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_HOURS = 24
JWT_ISSUER = "arsm"

# Security scheme for FastAPI dependency injection
security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Identity:
    """The (username, role) pair attached to an authenticated request."""

    username: str
    role: str
    anonymous: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


# Used for every request while authentication is disabled
ANONYMOUS = Identity(username="", role=ROLE_ADMIN, anonymous=True)


class TokenIssuer:
    """
    Mints and verifies signed session tokens.

    Attributes:
        lifetime: How long an issued token stays valid.
    """

    def __init__(self, secret: str, lifetime: timedelta = timedelta(hours=JWT_EXPIRATION_HOURS)):
        """
        Args:
            secret:   HMAC key; must stay private to the server process.
            lifetime: Validity window of issued tokens.
        """
        if not secret:
            raise ValueError("JWT secret must not be empty")
        self._secret = secret
        self.lifetime = lifetime

    def issue(self, username: str, role: str) -> tuple[str, int]:
        """
        Create a token for an identity.

        Returns:
            (token, expires_at) where expires_at is a unix timestamp.
        """
        now = datetime.now(timezone.utc)
        expires = now + self.lifetime
        payload = {
            "sub": username,
            "username": username,
            "role": role,
            "iat": now,
            "exp": expires,
            "iss": JWT_ISSUER,
        }
        token = jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)
        return token, int(expires.timestamp())

    def verify(self, token: str) -> Identity:
        """
        Check a token's signature and expiry.

        Raises:
            TokenExpired: The token's exp claim is in the past.
            InvalidToken: Bad signature, malformed token or missing claims.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                issuer=JWT_ISSUER,
            )
        except ExpiredSignatureError as e:
            raise TokenExpired() from e
        except JWTError as e:
            raise InvalidToken() from e

        username = payload.get("username") or payload.get("sub")
        role = payload.get("role")
        if not username or role not in ROLES:
            raise InvalidToken()
        return Identity(username=username, role=role)


# -- FastAPI dependencies -----------------------------------------------------

def _identity_from_token(tokens: TokenIssuer, token: str | None) -> Identity:
    if not token:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        return tokens.verify(token)
    except InvalidToken as e:
        raise HTTPException(status_code=401, detail=e.message)


def require_auth(users: UserStore, tokens: TokenIssuer):
    """
    Create a FastAPI dependency that enforces authentication.

    Usage in routes:
        auth = require_auth(users, tokens)

        @router.get("/api/profile")
        async def profile(identity: Identity = Depends(auth)): ...

    Returns:
        A dependency resolving to the caller's Identity. Missing, invalid
        or expired tokens are rejected with HTTP 401.
    """
    async def _verify(
        credentials: HTTPAuthorizationCredentials | None = Depends(security),
    ) -> Identity:
        if not users.is_enabled():
            return ANONYMOUS
        token = credentials.credentials if credentials else None
        return _identity_from_token(tokens, token)

    return _verify


def require_admin(users: UserStore, tokens: TokenIssuer):
    """Like require_auth(), but non-admin identities get HTTP 403."""
    authenticated = require_auth(users, tokens)

    async def _verify_admin(identity: Identity = Depends(authenticated)) -> Identity:
        if not identity.is_admin:
            raise HTTPException(status_code=403, detail="Permission denied")
        return identity

    return _verify_admin


def optional_auth(tokens: TokenIssuer):
    """Resolve the caller's Identity if a valid token is present, else None."""
    async def _maybe(
        credentials: HTTPAuthorizationCredentials | None = Depends(security),
    ) -> Identity | None:
        if credentials is None:
            return None
        try:
            return tokens.verify(credentials.credentials)
        except InvalidToken:
            return None

    return _maybe


def websocket_auth(users: UserStore, tokens: TokenIssuer):
    """
    Dependency for WebSocket endpoints.

    Browsers cannot set headers on a WebSocket handshake, so the token is
    passed as ``?token=...``. Returns None when the token is missing or
    invalid; the endpoint closes the socket in that case.
    """
    async def _verify_ws(token: str | None = Query(None)) -> Identity | None:
        if not users.is_enabled():
            return ANONYMOUS
        if not token:
            return None
        try:
            return tokens.verify(token)
        except InvalidToken:
            return None

    return _verify_ws
