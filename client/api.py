"""
HTTP client for the credential issuer and the identity directory.

Every response body is validated against the shared wire schemas and every
failure is mapped onto the typed error taxonomy; callers never see httpx
exceptions or raw status codes.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Type, TypeVar

import httpx
from jose import JWTError, jwt
from pydantic import BaseModel, TypeAdapter, ValidationError

from common.errors import (
    E2EError,
    ERRORS_BY_CODE,
    Forbidden,
    KeyInvalid,
    NotFound,
    ProvisioningError,
    Timeout,
    Unauthenticated,
    Unavailable,
)
from common.models import (
    Audience,
    AuthSession,
    AuthTokenResponse,
    DirectoryCredentialsResponse,
    KeyRecord,
    KeyRegistration,
    RegisterAck,
    ScopedToken,
    TransportCredentialsResponse,
    TransportUser,
    UserSummary,
)
from crypto.keystore import public_key_from_hex

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

ISSUER = "issuer"
DIRECTORY = "directory"


@dataclass(frozen=True)
class TransportCredentials:
    """Transport token plus the profile the issuer provisioned"""
    token: ScopedToken
    api_key: str
    user: TransportUser


def _token_claims(token: str, expected: Audience) -> dict:
    """Read the public claims of a token the server just handed us"""
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError as e:
        raise ProvisioningError("Issuer returned an unreadable token", cause=e)
    if claims.get("aud") != expected.value or not claims.get("sub"):
        raise ProvisioningError(f"Issuer returned a token not scoped to {expected.value}")
    if not isinstance(claims.get("exp"), (int, float)):
        raise ProvisioningError("Issuer returned a token without expiry")
    return claims


def _expiry(claims: dict) -> datetime:
    return datetime.fromtimestamp(claims["exp"], tz=timezone.utc)


class ServerAPI:
    """
    Async client for the issuer and directory endpoints.
    """

    def __init__(self, server_url: str = "http://localhost:8000", timeout: float = 10.0,
                 http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize the API client.

        Args:
            server_url: Base URL of the server
            timeout: Per-request timeout in seconds
            http_client: Pre-configured client (tests pass an ASGI-backed one)
        """
        self.server_url = server_url.rstrip("/")
        self.http_client = http_client or httpx.AsyncClient(base_url=self.server_url, timeout=timeout)

    async def aclose(self):
        await self.http_client.aclose()

    async def _request(self, method: str, path: str, context: str, *,
                       bearer: Optional[str] = None, json: Optional[dict] = None) -> httpx.Response:
        headers = {"Authorization": f"Bearer {bearer}"} if bearer else None
        try:
            response = await self.http_client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as e:
            raise Timeout(f"{method} {path} timed out", cause=e)
        except httpx.TransportError as e:
            raise Unavailable(f"{method} {path} failed: {e}", cause=e)

        if response.status_code < 400:
            return response
        raise self._error_for(response, context)

    @staticmethod
    def _error_for(response: httpx.Response, context: str) -> E2EError:
        status = response.status_code
        try:
            body = response.json()
            detail = str(body.get("detail", "")) if isinstance(body, dict) else ""
            code = body.get("code") if isinstance(body, dict) else None
        except ValueError:
            detail, code = "", None
        detail = detail or f"HTTP {status}"

        if status == 401:
            return Unauthenticated(detail)
        if status == 403:
            return Forbidden(detail)
        if status == 404 and context == DIRECTORY:
            return NotFound(detail)
        if status >= 500:
            if context == ISSUER:
                return ProvisioningError(detail)
            return Unavailable(detail)
        if code in ERRORS_BY_CODE:
            return ERRORS_BY_CODE[code](detail)
        if context == DIRECTORY and status == 422:
            return KeyInvalid(detail)
        return ProvisioningError(detail)

    @staticmethod
    def _parse(response: httpx.Response, model: Type[M]) -> M:
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise ProvisioningError(f"Malformed {model.__name__} response", cause=e)

    # Issuer

    async def authenticate(self, user: str, password: Optional[str] = None) -> AuthSession:
        """Local login; returns the session used to request credentials"""
        body = {"user": user}
        if password is not None:
            body["password"] = password
        response = await self._request("POST", "/authenticate", ISSUER, json=body)
        token = self._parse(response, AuthTokenResponse).auth_token
        claims = _token_claims(token, Audience.SESSION)
        return AuthSession(
            subject_id=claims["sub"],
            local_token=token,
            issued_at=datetime.fromtimestamp(claims.get("iat", 0), tz=timezone.utc),
            not_after=_expiry(claims),
        )

    async def transport_credentials(self, session: AuthSession) -> TransportCredentials:
        response = await self._request("POST", "/transport-credentials", ISSUER, bearer=session.local_token)
        data = self._parse(response, TransportCredentialsResponse)
        claims = _token_claims(data.token, Audience.TRANSPORT)
        if claims["sub"] != session.subject_id or data.user.id != session.subject_id:
            raise ProvisioningError("Transport credentials issued for another subject")
        token = ScopedToken(Audience.TRANSPORT, claims["sub"], data.token, _expiry(claims))
        return TransportCredentials(token=token, api_key=data.api_key, user=data.user)

    async def directory_credentials(self, session: AuthSession) -> ScopedToken:
        response = await self._request("POST", "/directory-credentials", ISSUER, bearer=session.local_token)
        data = self._parse(response, DirectoryCredentialsResponse)
        claims = _token_claims(data.token, Audience.DIRECTORY)
        if claims["sub"] != session.subject_id:
            raise ProvisioningError("Directory credentials issued for another subject")
        return ScopedToken(Audience.DIRECTORY, claims["sub"], data.token, _expiry(claims))

    async def list_users(self, session: AuthSession) -> List[str]:
        response = await self._request("GET", "/users", ISSUER, bearer=session.local_token)
        try:
            users = TypeAdapter(List[UserSummary]).validate_python(response.json())
        except (ValueError, ValidationError) as e:
            raise ProvisioningError("Malformed user list", cause=e)
        return [user.id for user in users]

    # Directory

    async def register_key(self, identity_id: str, public_key: bytes, token: ScopedToken) -> RegisterAck:
        body = KeyRegistration(public_key=public_key.hex()).model_dump(by_alias=True)
        response = await self._request(
            "PUT", f"/directory/keys/{identity_id}", DIRECTORY, bearer=token.token, json=body
        )
        return self._parse(response, RegisterAck)

    async def resolve_key(self, identity_id: str, token: ScopedToken) -> bytes:
        response = await self._request("GET", f"/directory/keys/{identity_id}", DIRECTORY, bearer=token.token)
        record = self._parse(response, KeyRecord)
        if record.identity_id != identity_id:
            raise ProvisioningError("Directory answered for a different identity")
        return public_key_from_hex(record.public_key)
