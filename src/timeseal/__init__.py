"""
Timeseal: encrypted work logs with threshold key release

Work logs are encrypted under a per-day policy identifier, stored as opaque
blobs, and decrypted only after a quorum of key servers approves an
authorization proof evaluated against an on-ledger access list.
"""

__version__ = "0.1.0"
__author__ = "Timeseal Contributors"

from .errors import (
    TimesealError,
    ErrorCategory,
    InputValidation,
    InvalidThreshold,
    BackendUnreachable,
    BackendRejected,
    MalformedResponse,
    LedgerError,
    EncryptionUnavailable,
    AccessDenied,
    CredentialExpired,
    CredentialSignatureDeclined,
    CredentialPending,
    KeyFetchTimeout,
    DecryptionFailed,
    PolicyIdMismatch,
    MarkerValidationError,
    MarkerStoreConflict,
)
from .policy import (
    PURPOSE_DAILY_ACCESS,
    PURPOSE_WORKLOG,
    derive_policy_id,
    derive_policy_id_now,
    policy_id_hex,
    policy_id_from_hex,
    parse_policy_id,
)
from .crypto import WalletKeyPair
from .artifact import EncryptedArtifact, EncryptedShare
from .kvstore import DurableKeyValueStore, MemoryKeyValueStore, FileKeyValueStore
from .ledger import LedgerClient, LedgerObject, InMemoryLedger, JsonRpcLedgerClient
from .session import SessionCredential, SessionCredentialCache, CredentialState
from .keyserver import KeyServerClient, HttpKeyServerClient, LocalKeyServer
from .gateway import EncryptionGateway
from .authorizer import AccessAuthorizer
from .blobstore import (
    BlobPublisher,
    BlobBackend,
    WalrusBackend,
    MemoryBackend,
    StoredBlobPointer,
    DownloadResult,
)
from .markers import PendingLogMarker, MarkerStore, parse_handoff
from .config import TimesealConfig, load_config, save_config
from .orchestrator import (
    WorkLogOrchestrator,
    CheckoutEvent,
    SubmissionResult,
    RetrievalResult,
    build_orchestrator,
    classify_plaintext,
)
from .logging import get_logger, configure_logging

__all__ = [
    # Errors
    "TimesealError",
    "ErrorCategory",
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
    # Policy
    "PURPOSE_DAILY_ACCESS",
    "PURPOSE_WORKLOG",
    "derive_policy_id",
    "derive_policy_id_now",
    "policy_id_hex",
    "policy_id_from_hex",
    "parse_policy_id",
    # Crypto and ciphertext
    "WalletKeyPair",
    "EncryptedArtifact",
    "EncryptedShare",
    # Storage and ledger
    "DurableKeyValueStore",
    "MemoryKeyValueStore",
    "FileKeyValueStore",
    "LedgerClient",
    "LedgerObject",
    "InMemoryLedger",
    "JsonRpcLedgerClient",
    # Sessions and keys
    "SessionCredential",
    "SessionCredentialCache",
    "CredentialState",
    "KeyServerClient",
    "HttpKeyServerClient",
    "LocalKeyServer",
    "EncryptionGateway",
    "AccessAuthorizer",
    # Blobs and markers
    "BlobPublisher",
    "BlobBackend",
    "WalrusBackend",
    "MemoryBackend",
    "StoredBlobPointer",
    "DownloadResult",
    "PendingLogMarker",
    "MarkerStore",
    "parse_handoff",
    # Config and orchestration
    "TimesealConfig",
    "load_config",
    "save_config",
    "WorkLogOrchestrator",
    "CheckoutEvent",
    "SubmissionResult",
    "RetrievalResult",
    "build_orchestrator",
    "classify_plaintext",
    "get_logger",
    "configure_logging",
    "__version__",
]
