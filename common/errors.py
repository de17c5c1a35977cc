"""
Error taxonomy shared by the server, the client and the crypto pipeline.

Every failure that crosses a component boundary is one of these types, so
callers never have to inspect raw HTTP status codes or library exceptions.
"""

from typing import Optional


class E2EError(Exception):
    """Base class for all typed errors"""

    code = "error"
    status_code = 500
    retryable = False

    def __init__(self, message: str = "", *, cause: Optional[BaseException] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.cause = cause


class Unauthenticated(E2EError):
    """Local session or scoped token is missing, invalid or expired"""
    code = "unauthenticated"
    status_code = 401


class ProvisioningError(E2EError):
    """The issuer could not provision a downstream account"""
    code = "provisioning_error"
    status_code = 502


class Forbidden(E2EError):
    """The subject is not permitted to perform this operation"""
    code = "forbidden"
    status_code = 403


class NotFound(E2EError):
    """No public key is registered for the identity"""
    code = "not_found"
    status_code = 404


class KeyInvalid(E2EError):
    """Malformed key material"""
    code = "key_invalid"
    status_code = 422


class VerificationFailed(E2EError):
    """Envelope signature or authenticated decryption did not check out"""
    code = "verification_failed"
    status_code = 400


class Timeout(E2EError):
    """A dependency call exceeded its deadline"""
    code = "timeout"
    status_code = 504
    retryable = True


class Unavailable(E2EError):
    """Transport or directory unreachable"""
    code = "unavailable"
    status_code = 503
    retryable = True


class InvalidState(E2EError):
    """Operation called in the wrong orchestrator state"""
    code = "invalid_state"
    status_code = 409


class EncryptionFailed(E2EError):
    """
    A message could not be encrypted for its recipient.

    Raised by the orchestrator when key resolution or encryption fails, so the
    UI can tell it apart from a transport failure. The underlying typed error
    is available as ``cause``.
    """
    code = "encryption_failed"
    status_code = 400


class SendFailed(E2EError):
    """The transport refused or did not accept an encrypted envelope"""
    code = "send_failed"
    status_code = 503


ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (
        Unauthenticated,
        ProvisioningError,
        Forbidden,
        NotFound,
        KeyInvalid,
        VerificationFailed,
        Timeout,
        Unavailable,
        InvalidState,
        EncryptionFailed,
        SendFailed,
    )
}
