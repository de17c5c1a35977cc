"""
Data model shared by the issuer, the directory and the client.

Dataclasses hold in-process state (sessions, tokens, cache entries).
Pydantic models describe every JSON body that crosses the HTTP boundary, so
a response missing a field is rejected at parse time instead of surfacing as
a ``KeyError`` deep inside the client.
"""

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


IDENTITY_PATTERN = r"^[A-Za-z0-9_.@-]{1,64}$"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Audience(str, enum.Enum):
    """Downstream consumer a scoped token is valid for"""
    SESSION = "session"
    TRANSPORT = "transport"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class AuthSession:
    """
    Locally authenticated session, the input to credential issuance.

    Attributes:
        subject_id: Identity the session was issued to
        local_token: Opaque signed session token
        issued_at: Issue time (UTC)
        not_after: Expiry time (UTC)
    """
    subject_id: str
    local_token: str
    issued_at: datetime
    not_after: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.not_after

    def __repr__(self) -> str:
        return f"AuthSession(subject_id={self.subject_id!r}, not_after={self.not_after.isoformat()})"


@dataclass(frozen=True)
class ScopedToken:
    """
    Credential limited to one audience and a bounded lifetime.

    Attributes:
        audience: TRANSPORT or DIRECTORY
        subject_id: Identity the token speaks for
        token: Opaque bearer token
        not_after: Expiry time (UTC)
    """
    audience: Audience
    subject_id: str
    token: str
    not_after: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.not_after

    def expires_within(self, margin: timedelta, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) + margin >= self.not_after

    def __repr__(self) -> str:
        return (
            f"ScopedToken(audience={self.audience.value!r}, subject_id={self.subject_id!r}, "
            f"not_after={self.not_after.isoformat()})"
        )


@dataclass(frozen=True)
class DirectoryCacheEntry:
    """Client-local snapshot of an identity's public key"""
    identity_id: str
    public_key: bytes
    fetched_at: datetime


# Wire schemas

class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class AuthenticateRequest(_Wire):
    user: str = Field(pattern=IDENTITY_PATTERN)
    password: Optional[str] = Field(default=None, max_length=256)


class RegisterAccountRequest(_Wire):
    user: str = Field(pattern=IDENTITY_PATTERN)
    password: str = Field(min_length=8, max_length=256)


class AuthTokenResponse(_Wire):
    auth_token: str = Field(alias="authToken")


class TransportUser(_Wire):
    id: str
    role: str
    image: Optional[str] = None


class TransportCredentialsResponse(_Wire):
    token: str
    api_key: str = Field(alias="apiKey")
    user: TransportUser


class DirectoryCredentialsResponse(_Wire):
    token: str


class UserSummary(_Wire):
    id: str


class KeyRegistration(_Wire):
    public_key: str = Field(alias="publicKey", min_length=1, max_length=512)


class RegisterAck(_Wire):
    identity_id: str = Field(alias="identityId")
    changed: bool
    version: int


class KeyRecord(_Wire):
    identity_id: str = Field(alias="identityId")
    public_key: str = Field(alias="publicKey")
    version: int
