"""
Authentication module for JWT token management.

Provides local session login, audience-scoped token creation and token
verification for the issuer, the directory and the relay.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple
from fastapi import Header
from jose import JWTError, jwt

from common.errors import Forbidden, Unauthenticated
from common.models import Audience, AuthSession, utcnow
from .database import Database

logger = logging.getLogger(__name__)


class TokenService:
    """
    Signs and verifies HS256 tokens bound to exactly one audience.

    Expiry is checked against an injectable clock rather than inside jose so
    token lifetimes can be exercised deterministically.
    """

    def __init__(self, secret: str, algorithm: str = "HS256",
                 clock: Callable[[], datetime] = utcnow):
        self.secret = secret
        self.algorithm = algorithm
        self.clock = clock

    def create_token(self, subject: str, audience: Audience,
                     lifetime: timedelta) -> Tuple[str, datetime, datetime]:
        """
        Create a signed token.

        Args:
            subject: Identity the token speaks for
            audience: The one consumer allowed to accept it
            lifetime: Time until expiry

        Returns:
            Tuple of (token, issued_at, not_after)
        """
        issued_at = self.clock()
        not_after = issued_at + lifetime
        claims = {
            "sub": subject,
            "aud": audience.value,
            "iat": issued_at,
            "exp": not_after,
            "jti": uuid.uuid4().hex,
        }
        token = jwt.encode(claims, self.secret, algorithm=self.algorithm)
        # exp/iat are encoded with second precision
        return token, issued_at.replace(microsecond=0), not_after.replace(microsecond=0)

    def verify(self, token: Optional[str], audience: Audience) -> dict:
        """
        Verify a token for one audience.

        Returns:
            Decoded claims

        Raises:
            Unauthenticated: Missing, malformed, badly signed or expired token
            Forbidden: Valid token issued for a different audience
        """
        if not token:
            raise Unauthenticated("Missing token")
        if not isinstance(token, str):
            raise Unauthenticated("Malformed token")
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                options={"verify_aud": False, "verify_exp": False},
            )
        except JWTError as e:
            raise Unauthenticated("Invalid token", cause=e)

        if claims.get("aud") != audience.value:
            raise Forbidden(f"Token is not valid for {audience.value}")
        subject = claims.get("sub")
        expires = claims.get("exp")
        if not subject or not isinstance(expires, (int, float)):
            raise Unauthenticated("Token is missing required claims")
        if self.clock() >= datetime.fromtimestamp(expires, tz=timezone.utc):
            raise Unauthenticated("Token has expired")
        return claims

    def session_from_token(self, token: Optional[str]) -> AuthSession:
        """Rebuild a verified AuthSession from a bearer session token"""
        claims = self.verify(token, Audience.SESSION)
        return AuthSession(
            subject_id=claims["sub"],
            local_token=token,
            issued_at=datetime.fromtimestamp(claims.get("iat", 0), tz=timezone.utc),
            not_after=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        )


class LocalAuthenticator:
    """
    Server-side local auth: turns application credentials into an AuthSession.

    In "open" mode any well-formed user id is accepted. In "password" mode the
    user must hold an account created through register_account().
    """

    def __init__(self, db: Database, tokens: TokenService, mode: str = "open",
                 session_minutes: int = 60):
        self.db = db
        self.tokens = tokens
        self.mode = mode
        self.session_lifetime = timedelta(minutes=session_minutes)

    def _new_session(self, user: str) -> AuthSession:
        token, issued_at, not_after = self.tokens.create_token(
            user, Audience.SESSION, self.session_lifetime
        )
        return AuthSession(subject_id=user, local_token=token, issued_at=issued_at, not_after=not_after)

    async def authenticate(self, user: str, password: Optional[str] = None) -> AuthSession:
        """
        Authenticate a user.

        Raises:
            Unauthenticated: Wrong or missing credentials in password mode
        """
        if self.mode == "password":
            if not password or not await self.db.authenticate_account(user, password):
                logger.info("Local auth rejected for %s", user)
                raise Unauthenticated("Invalid username or password")
        logger.info("Local session issued for %s", user)
        return self._new_session(user)

    async def register_account(self, user: str, password: str) -> AuthSession:
        """
        Create a password account and log it in.

        Raises:
            Forbidden: Username already taken
        """
        account = await self.db.create_account(user, password)
        if not account:
            raise Forbidden("Username already exists")
        logger.info("Account created for %s", user)
        return self._new_session(user)


def bearer_token(authorization: Optional[str] = Header(None)) -> str:
    """Extract the bearer token from the Authorization header"""
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthenticated("Missing bearer token")
    token = authorization[len("Bearer "):].strip()
    if not token:
        raise Unauthenticated("Missing bearer token")
    return token


