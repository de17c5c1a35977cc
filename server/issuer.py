"""
Credential issuer.

Escalates a verified local session into short-lived tokens scoped to a
single downstream audience: the transport relay or the identity directory.
The subject of every issued token is taken from the verified session token,
never from caller input.
"""

import logging
from datetime import timedelta
from typing import Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from common.errors import Forbidden, ProvisioningError, Unauthenticated
from common.models import Audience, AuthSession, ScopedToken
from .auth import TokenService
from .database import Database, User

logger = logging.getLogger(__name__)

MAX_TOKEN_LIFETIME = timedelta(hours=24)


class CredentialIssuer:
    """Issues audience-scoped tokens and provisions transport profiles"""

    def __init__(self, db: Database, tokens: TokenService, token_minutes: int = 15,
                 default_role: str = "user"):
        self.db = db
        self.tokens = tokens
        self.lifetime = min(timedelta(minutes=token_minutes), MAX_TOKEN_LIFETIME)
        self.default_role = default_role

    def _verified_subject(self, local_session: AuthSession) -> str:
        claims = self.tokens.verify(local_session.local_token, Audience.SESSION)
        if claims["sub"] != local_session.subject_id:
            raise Unauthenticated("Session subject does not match its token")
        return claims["sub"]

    async def provision_transport_user(self, subject: str, image: Optional[str] = None) -> User:
        """
        Idempotently create or update the subject's transport profile.

        Raises:
            ProvisioningError: If the profile could not be written
        """
        try:
            user = await self.db.upsert_user(subject, name=subject, role=self.default_role, image=image)
        except SQLAlchemyError as e:
            logger.error("Transport provisioning failed for %s: %s", subject, e)
            raise ProvisioningError("Could not provision transport user", cause=e)
        if user is None:
            raise ProvisioningError("Could not provision transport user")
        return user

    async def issue(self, local_session: AuthSession, audience: Audience) -> ScopedToken:
        """
        Issue a token for one audience.

        Args:
            local_session: Currently valid local session
            audience: TRANSPORT or DIRECTORY

        Returns:
            ScopedToken for the session's subject

        Raises:
            Unauthenticated: Session invalid or expired
            ProvisioningError: Downstream provisioning failed
        """
        token, _ = await self.issue_with_profile(local_session, audience)
        return token

    async def issue_with_profile(self, local_session: AuthSession,
                                 audience: Audience) -> Tuple[ScopedToken, Optional[User]]:
        """Like issue(), also returning the transport profile for TRANSPORT tokens"""
        if audience not in (Audience.TRANSPORT, Audience.DIRECTORY):
            raise Forbidden(f"Cannot issue {audience.value} tokens")
        subject = self._verified_subject(local_session)

        profile = None
        if audience is Audience.TRANSPORT:
            profile = await self.provision_transport_user(subject)

        token, _, not_after = self.tokens.create_token(subject, audience, self.lifetime)
        logger.info("Issued %s token for %s (expires %s)", audience.value, subject, not_after.isoformat())
        return ScopedToken(audience=audience, subject_id=subject, token=token, not_after=not_after), profile
