"""
Error taxonomy for timeseal.

Every failure raised by the work-log pipelines is attributed to exactly one
category so callers can decide what to do next:

- input:           the caller supplied something invalid ("fix your input")
- network:         a blob backend, key server or ledger was unreachable or
                   returned an error ("try again later")
- authorization:   the principal lacks permission or its session credential
                   is unusable ("you lack permission")
- cryptographic:   ciphertext could not be opened
- malformed_data:  a peer returned or handed over data we cannot interpret

Errors carry structured ``details`` (status codes, response bodies, field
names) so diagnostics survive propagation without parsing messages.
"""

from typing import Any, Dict


class ErrorCategory:
    """Stable category names used in ``TimesealError.category``."""
    INPUT = "input"
    NETWORK = "network"
    AUTHORIZATION = "authorization"
    CRYPTOGRAPHIC = "cryptographic"
    MALFORMED_DATA = "malformed_data"


_SUMMARIES = {
    ErrorCategory.INPUT: "Fix your input and try again.",
    ErrorCategory.NETWORK: "A remote service is unavailable. Try again later.",
    ErrorCategory.AUTHORIZATION: "You lack permission to perform this operation.",
    ErrorCategory.CRYPTOGRAPHIC: "The encrypted work log could not be decrypted.",
    ErrorCategory.MALFORMED_DATA: "Received data is malformed and cannot be used.",
}


class TimesealError(Exception):
    """
    Base exception for all timeseal errors.

    Subclasses pin ``category`` and ``retryable``; instances carry the
    message plus free-form details.
    """

    category = ErrorCategory.MALFORMED_DATA
    retryable = False
    code = "TIMESEAL_ERROR"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    @property
    def summary(self) -> str:
        """Human-readable summary telling the user what kind of failure this is."""
        return _SUMMARIES[self.category]

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "category": self.category,
            "message": self.message,
            "retryable": bool(self.retryable),
            "summary": self.summary,
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


# Input

class InputValidation(TimesealError):
    """Raised when a caller-supplied value is malformed"""
    category = ErrorCategory.INPUT
    code = "INPUT_VALIDATION"


class InvalidThreshold(InputValidation):
    """Raised when the threshold cannot be met by the configured recipient set"""
    code = "INVALID_THRESHOLD"


# Blob / network I/O

class BackendUnreachable(TimesealError):
    """Raised on network errors or timeouts talking to a remote backend"""
    category = ErrorCategory.NETWORK
    retryable = True
    code = "BACKEND_UNREACHABLE"


class BackendRejected(TimesealError):
    """Raised when a backend answers with a non-2xx status"""
    category = ErrorCategory.NETWORK
    retryable = True
    code = "BACKEND_REJECTED"

    @property
    def status(self) -> int:
        return int(self.details.get("status", 0))

    @property
    def body(self) -> str:
        return str(self.details.get("body", ""))


class MalformedResponse(TimesealError):
    """Raised when a backend response cannot be interpreted"""
    category = ErrorCategory.MALFORMED_DATA
    code = "MALFORMED_RESPONSE"


class LedgerError(TimesealError):
    """Raised when the ledger collaborator fails"""
    category = ErrorCategory.NETWORK
    retryable = True
    code = "LEDGER_ERROR"


# Encrypt path

class EncryptionUnavailable(TimesealError):
    """Raised when too few key servers answer during share generation"""
    category = ErrorCategory.NETWORK
    retryable = True
    code = "ENCRYPTION_UNAVAILABLE"


# Authorize / decrypt path

class AccessDenied(TimesealError):
    """Raised when the key-release service rejects the authorization proof"""
    category = ErrorCategory.AUTHORIZATION
    code = "ACCESS_DENIED"


class CredentialExpired(TimesealError):
    """
    Raised when a session credential has expired.

    Not retryable as-is, but callers should obtain a fresh credential
    (new signature) and retry exactly once.
    """
    category = ErrorCategory.AUTHORIZATION
    code = "CREDENTIAL_EXPIRED"
    renew_and_retry = True


class CredentialSignatureDeclined(TimesealError):
    """Raised when the principal refuses (or fails) to sign the session challenge"""
    category = ErrorCategory.AUTHORIZATION
    code = "CREDENTIAL_SIGNATURE_DECLINED"


class CredentialPending(CredentialSignatureDeclined):
    """Raised when another caller's signature prompt is still outstanding; retry later"""
    retryable = True
    code = "CREDENTIAL_PENDING"


class KeyFetchTimeout(TimesealError):
    """Raised when the key-release cluster does not answer within the deadline"""
    category = ErrorCategory.NETWORK
    retryable = True
    code = "KEY_FETCH_TIMEOUT"


class DecryptionFailed(TimesealError):
    """Raised when shares or payload fail authenticated decryption"""
    category = ErrorCategory.CRYPTOGRAPHIC
    code = "DECRYPTION_FAILED"


class PolicyIdMismatch(TimesealError):
    """Raised when a marker's PolicyId disagrees with the ciphertext header"""
    category = ErrorCategory.MALFORMED_DATA
    code = "POLICY_ID_MISMATCH"


# Markers

class MarkerValidationError(TimesealError):
    """Raised when a hand-off marker is missing fields or has wrong types"""
    category = ErrorCategory.INPUT
    code = "MARKER_INVALID"

    @property
    def fields(self):
        return list(self.details.get("fields", []))


class MarkerStoreConflict(TimesealError):
    """Raised when concurrent updates to a marker store keep colliding"""
    category = ErrorCategory.NETWORK
    retryable = True
    code = "MARKER_STORE_CONFLICT"


__all__ = [
    "ErrorCategory",
    "TimesealError",
    "InputValidation",
    "InvalidThreshold",
    "BackendUnreachable",
    "BackendRejected",
    "MalformedResponse",
    "LedgerError",
    "EncryptionUnavailable",
    "AccessDenied",
    "CredentialExpired",
    "CredentialSignatureDeclined",
    "CredentialPending",
    "KeyFetchTimeout",
    "DecryptionFailed",
    "PolicyIdMismatch",
    "MarkerValidationError",
    "MarkerStoreConflict",
]
