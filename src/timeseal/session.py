"""
Session credentials for key-release requests.

A principal signs one personal message binding a fresh session key to a
package and a validity window. The resulting credential then authorizes
repeated key fetches without re-prompting until it expires.

Per ``(principal, deployment[, scope object])`` the cache moves through::

    Absent -> Pending (awaiting signature) -> Active -> Expired

Expired and Absent both require a new interactive signature; there is no
silent renewal. Only one Pending transition is in flight per key; other
callers wait for its outcome instead of prompting again.
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from .crypto import (
    b64d,
    b64e,
    ed25519_generate,
    ed25519_public,
    ed25519_sign,
    recover_personal_message_signer,
)
from .errors import (
    CredentialExpired,
    CredentialPending,
    CredentialSignatureDeclined,
    InputValidation,
    TimesealError,
)
from .kvstore import DurableKeyValueStore
from .logging import get_logger
from .policy import normalize_address, normalize_object_id

logger = get_logger()

DEFAULT_TTL_MIN = 10
MAX_TTL_MIN = 30
DEFAULT_SIGNATURE_TIMEOUT = 120.0
STORE_PREFIX = "session:"

SignatureCallback = Callable[[bytes], bytes]


class CredentialState:
    ABSENT = "absent"
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"


def now_ms() -> int:
    return int(time.time() * 1000)


def session_personal_message(
    package_id: str,
    ttl_min: int,
    creation_time_ms: int,
    session_public_key: bytes,
) -> bytes:
    """The exact challenge a principal signs to activate a session key."""
    created = datetime.fromtimestamp(creation_time_ms / 1000, tz=timezone.utc)
    return (
        f"Accessing keys of package {normalize_object_id(package_id)} for {ttl_min} mins "
        f"from {created.strftime('%Y-%m-%d %H:%M:%S')} UTC, "
        f"session key {b64e(session_public_key)}"
    ).encode("utf-8")


@dataclass
class Certificate:
    """Public half of a session credential, presented to key servers."""
    principal: str
    package_id: str
    creation_time_ms: int
    ttl_min: int
    session_public_key: bytes
    signature: bytes

    @property
    def expiry_epoch_ms(self) -> int:
        return self.creation_time_ms + self.ttl_min * 60_000

    def personal_message(self) -> bytes:
        return session_personal_message(
            self.package_id, self.ttl_min, self.creation_time_ms, self.session_public_key
        )

    def to_dict(self) -> Dict:
        return {
            "user": self.principal,
            "package_id": self.package_id,
            "creation_time": self.creation_time_ms,
            "ttl_min": self.ttl_min,
            "session_vk": b64e(self.session_public_key),
            "signature": b64e(self.signature),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Certificate":
        try:
            return cls(
                principal=normalize_address(data["user"]),
                package_id=normalize_object_id(data["package_id"]),
                creation_time_ms=int(data["creation_time"]),
                ttl_min=int(data["ttl_min"]),
                session_public_key=b64d(data["session_vk"]),
                signature=b64d(data["signature"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InputValidation(f"Malformed certificate: {e}", field="certificate")


@dataclass
class SessionCredential:
    """
    Signed, time-bounded authorization to request keys.

    ``exported_key_material`` is the raw Ed25519 session signing key and
    must never leave the principal's machine or reach the logs.
    """
    principal: str
    deployment_scope_id: str
    exported_key_material: bytes
    signature_over_personal_message: bytes
    creation_time_ms: int
    ttl_min: int = DEFAULT_TTL_MIN
    scope_object_id: Optional[str] = None

    @property
    def expiry_epoch_ms(self) -> int:
        return self.creation_time_ms + self.ttl_min * 60_000

    @property
    def session_public_key(self) -> bytes:
        return ed25519_public(self.exported_key_material)

    def is_expired(self, at_ms: Optional[int] = None) -> bool:
        return (now_ms() if at_ms is None else at_ms) > self.expiry_epoch_ms

    def personal_message(self) -> bytes:
        return session_personal_message(
            self.deployment_scope_id, self.ttl_min, self.creation_time_ms, self.session_public_key
        )

    def certificate(self) -> Certificate:
        return Certificate(
            principal=self.principal,
            package_id=self.deployment_scope_id,
            creation_time_ms=self.creation_time_ms,
            ttl_min=self.ttl_min,
            session_public_key=self.session_public_key,
            signature=self.signature_over_personal_message,
        )

    def sign(self, data: bytes) -> bytes:
        return ed25519_sign(self.exported_key_material, data)

    def verify_signature(self) -> bool:
        """True if the wallet signature is present and was made by ``principal``."""
        if not self.signature_over_personal_message:
            return False
        signer = recover_personal_message_signer(
            self.personal_message(), self.signature_over_personal_message
        )
        return signer == self.principal

    def to_dict(self) -> Dict:
        return {
            "principal": self.principal,
            "deployment_scope_id": self.deployment_scope_id,
            "scope_object_id": self.scope_object_id,
            "exported_key_material": b64e(self.exported_key_material),
            "signature": b64e(self.signature_over_personal_message),
            "creation_time_ms": self.creation_time_ms,
            "ttl_min": self.ttl_min,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "SessionCredential":
        return cls(
            principal=data["principal"],
            deployment_scope_id=data["deployment_scope_id"],
            scope_object_id=data.get("scope_object_id"),
            exported_key_material=b64d(data["exported_key_material"]),
            signature_over_personal_message=b64d(data.get("signature") or ""),
            creation_time_ms=int(data["creation_time_ms"]),
            ttl_min=int(data.get("ttl_min", DEFAULT_TTL_MIN)),
        )


CacheKey = Tuple[str, str, Optional[str]]


@dataclass
class _Flight:
    event: threading.Event = field(default_factory=threading.Event)
    credential: Optional[SessionCredential] = None
    error: Optional[TimesealError] = None


def store_key(principal: str, deployment_scope_id: str, scope_object_id: Optional[str] = None) -> str:
    key = f"{STORE_PREFIX}{principal}:{deployment_scope_id}"
    return f"{key}:{scope_object_id}" if scope_object_id else key


class SessionCredentialCache:
    """
    Caches session credentials in memory and in a durable store.

    Args:
        store: Durable store for Active credentials
        request_signature: Callback asking the principal to sign a personal
            message; returns the serialized wallet signature. Raising or
            returning nothing counts as declining.
        ttl_min: Lifetime of new credentials in minutes
        signature_timeout: How long concurrent callers wait for an in-flight prompt
        clock: Millisecond clock (injectable for tests)
    """

    def __init__(
        self,
        store: DurableKeyValueStore,
        request_signature: Optional[SignatureCallback] = None,
        ttl_min: int = DEFAULT_TTL_MIN,
        signature_timeout: float = DEFAULT_SIGNATURE_TIMEOUT,
        clock: Callable[[], int] = now_ms,
    ):
        if not 1 <= ttl_min <= MAX_TTL_MIN:
            raise InputValidation(f"ttl_min must be between 1 and {MAX_TTL_MIN}", field="ttl_min")
        self.store = store
        self.request_signature = request_signature
        self.ttl_min = ttl_min
        self.signature_timeout = signature_timeout
        self.clock = clock
        self._lock = threading.Lock()
        self._active: Dict[CacheKey, SessionCredential] = {}
        self._expired: Dict[CacheKey, SessionCredential] = {}
        self._inflight: Dict[CacheKey, _Flight] = {}
        self._active_principal: Optional[str] = None

    @staticmethod
    def _key(principal: str, deployment_scope_id: str, scope_object_id: Optional[str]) -> CacheKey:
        return (
            normalize_address(principal),
            normalize_object_id(deployment_scope_id),
            normalize_object_id(scope_object_id) if scope_object_id else None,
        )

    @property
    def active_principal(self) -> Optional[str]:
        return self._active_principal

    def state(self, principal: str, deployment_scope_id: str, scope_object_id: Optional[str] = None) -> str:
        key = self._key(principal, deployment_scope_id, scope_object_id)
        with self._lock:
            if key in self._inflight:
                return CredentialState.PENDING
            credential = self._active.get(key)
            if credential is not None:
                if credential.is_expired(self.clock()):
                    return CredentialState.EXPIRED
                return CredentialState.ACTIVE
            if key in self._expired:
                return CredentialState.EXPIRED
            return CredentialState.ABSENT

    def get_credential(
        self,
        principal: str,
        deployment_scope_id: str,
        scope_object_id: Optional[str] = None,
        request_signature: Optional[SignatureCallback] = None,
    ) -> SessionCredential:
        """
        Return an Active credential, prompting for a signature if needed.

        Raises:
            CredentialSignatureDeclined: If the principal declines to sign
            CredentialPending: If another caller's prompt outlives ``signature_timeout``
        """
        key = self._key(principal, deployment_scope_id, scope_object_id)
        owner = False
        with self._lock:
            if self._active_principal != key[0]:
                self._switch_locked(key[0])

            credential = self._active.get(key)
            if credential is not None and not credential.is_expired(self.clock()):
                return credential
            if credential is not None:
                self._expire_locked(key)
            else:
                credential = self._rehydrate_locked(key)
                if credential is not None:
                    return credential

            flight = self._inflight.get(key)
            if flight is None:
                flight = _Flight()
                self._inflight[key] = flight
                owner = True

        if not owner:
            if not flight.event.wait(self.signature_timeout):
                raise CredentialPending(
                    "A signature request for this session is still pending; retry shortly",
                    principal=key[0],
                )
            if flight.error is not None:
                raise flight.error
            return flight.credential

        try:
            credential = self._create(key, request_signature or self.request_signature)
            with self._lock:
                self._active[key] = credential
                self._expired.pop(key, None)
                self.store.set_json(store_key(*key), credential.to_dict())
            flight.credential = credential
            logger.info("Session credential activated", principal=key[0], ttl_min=credential.ttl_min)
            return credential
        except TimesealError as e:
            flight.error = e
            raise
        finally:
            with self._lock:
                self._inflight.pop(key, None)
            flight.event.set()

    def _create(self, key: CacheKey, request_signature: Optional[SignatureCallback]) -> SessionCredential:
        principal, deployment_scope_id, scope_object_id = key
        if request_signature is None:
            raise CredentialSignatureDeclined("No signer available to activate a session", principal=principal)

        session_private, _ = ed25519_generate()
        credential = SessionCredential(
            principal=principal,
            deployment_scope_id=deployment_scope_id,
            exported_key_material=session_private,
            signature_over_personal_message=b"",
            creation_time_ms=self.clock(),
            ttl_min=self.ttl_min,
            scope_object_id=scope_object_id,
        )

        try:
            signature = request_signature(credential.personal_message())
        except TimesealError:
            raise
        except Exception as e:
            raise CredentialSignatureDeclined(f"Signature request failed: {e}", principal=principal) from e
        if not signature:
            raise CredentialSignatureDeclined("Principal declined to sign", principal=principal)

        credential.signature_over_personal_message = bytes(signature)
        if not credential.verify_signature():
            raise CredentialSignatureDeclined(
                "Signature does not verify for the requesting principal", principal=principal
            )
        return credential

    def _rehydrate_locked(self, key: CacheKey) -> Optional[SessionCredential]:
        skey = store_key(*key)
        data = self.store.get_json(skey)
        if data is None:
            return None
        try:
            credential = SessionCredential.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Evicting unreadable session record", principal=key[0], error=str(e))
            self.store.delete(skey)
            return None

        reason = None
        if not credential.signature_over_personal_message:
            reason = "missing signature"
        elif credential.is_expired(self.clock()):
            reason = "expired"
        elif credential.principal != key[0]:
            reason = "principal mismatch"
        elif not credential.verify_signature():
            reason = "signature does not verify"

        if reason:
            logger.info("Evicting cached session credential", principal=key[0], reason=reason)
            self.store.delete(skey)
            return None

        self._active[key] = credential
        logger.debug("Session credential rehydrated", principal=key[0])
        return credential

    def _expire_locked(self, key: CacheKey) -> None:
        credential = self._active.pop(key, None)
        if credential is not None:
            self._expired[key] = credential
        self.store.delete(store_key(*key))

    def _switch_locked(self, principal: str) -> None:
        for key in [k for k in self._active if k[0] != principal]:
            self._expire_locked(key)
        self._active_principal = principal

    def switch_principal(self, principal: str) -> None:
        """Make ``principal`` active; every in-memory credential of other principals expires."""
        with self._lock:
            self._switch_locked(normalize_address(principal))
        logger.info("Active principal switched", principal=normalize_address(principal))

    def invalidate(self, principal: str, deployment_scope_id: str, scope_object_id: Optional[str] = None) -> None:
        """Evict one credential from memory and durable storage."""
        key = self._key(principal, deployment_scope_id, scope_object_id)
        with self._lock:
            self._expire_locked(key)

    def logout(self, principal: str) -> List[str]:
        """
        Evict every credential of ``principal``.

        Returns:
            Durable keys that were removed
        """
        principal = normalize_address(principal)
        with self._lock:
            for key in [k for k in self._active if k[0] == principal]:
                del self._active[key]
            for key in [k for k in self._expired if k[0] == principal]:
                del self._expired[key]
            removed = self.store.keys(f"{STORE_PREFIX}{principal}:")
            for skey in removed:
                self.store.delete(skey)
            if self._active_principal == principal:
                self._active_principal = None
        logger.info("Logged out", principal=principal, removed=len(removed))
        return removed

    def ensure_fresh(self, credential: SessionCredential) -> None:
        """
        Raises:
            CredentialExpired: If ``credential`` has expired or belongs to an inactive principal
        """
        if credential.is_expired(self.clock()):
            raise CredentialExpired("Session credential has expired", principal=credential.principal)
        if self._active_principal and credential.principal != self._active_principal:
            raise CredentialExpired(
                "Session credential belongs to a different principal", principal=credential.principal
            )
