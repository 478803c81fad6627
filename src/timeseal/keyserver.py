"""
Key-release service collaborator.

Each key server holds a master secret from which it derives one X25519 key
pair per (server, PolicyId). Encryptors only ever see the public half.
Decryptors present an authorization proof (unsigned ``seal_approve``
transaction bytes) plus a session certificate; a server that approves
returns the per-policy private key sealed to a one-time encryption key
chosen by the requester.

Wire protocol (JSON over HTTP):

    POST {url}/v1/public_key  {"id": hex}
        -> {"public_key": b64}
    POST {url}/v1/fetch_key   {"ptb": b64, "enc_key": b64,
                               "request_signature": b64, "certificate": {...}}
        -> {"decryption_keys": [{"id": hex, "encrypted_key": b64}]}

HTTP 401/403 mean the request was denied.
"""

import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .bcs import BcsReader, ProgrammableTransaction, PureArg, SharedObjectArg, OwnedObjectArg
from .crypto import (
    b64d,
    b64e,
    blake2b256,
    ed25519_verify,
    open_with_private_key,
    recover_personal_message_signer,
    seal_to_public_key,
    x25519_from_seed,
    x25519_public,
)
from .errors import (
    AccessDenied,
    BackendRejected,
    BackendUnreachable,
    CredentialExpired,
    MalformedResponse,
    TimesealError,
)
from .ledger import LedgerClient, LedgerObject
from .logging import get_logger
from .policy import normalize_address, object_id_bytes, policy_id_hex
from .session import Certificate

logger = get_logger()

APPROVE_PREFIX = "seal_approve"
DEFAULT_TIMEOUT = 10.0


def request_signing_bytes(ptb: bytes, enc_public_key: bytes) -> bytes:
    """Bytes the session key signs for a fetch request."""
    return b"timeseal-fetch|" + blake2b256(ptb) + enc_public_key


def key_seal_info(server_id: str, policy_id: bytes) -> bytes:
    return b"timeseal-key|" + server_id.encode("utf-8") + b"|" + policy_id


def share_seal_info(server_id: str, policy_id: bytes) -> bytes:
    return b"timeseal-share|" + server_id.encode("utf-8") + b"|" + policy_id


@dataclass
class FetchKeyRequest:
    """A signed request for the per-policy keys named in ``ptb``."""
    ptb: bytes
    enc_public_key: bytes
    request_signature: bytes
    certificate: Certificate

    def to_dict(self) -> Dict:
        return {
            "ptb": b64e(self.ptb),
            "enc_key": b64e(self.enc_public_key),
            "request_signature": b64e(self.request_signature),
            "certificate": self.certificate.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "FetchKeyRequest":
        try:
            return cls(
                ptb=b64d(data["ptb"]),
                enc_public_key=b64d(data["enc_key"]),
                request_signature=b64d(data["request_signature"]),
                certificate=Certificate.from_dict(data["certificate"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedResponse(f"Malformed fetch request: {e}")


def seal_key(server_id: str, policy_id: bytes, private_key: bytes, enc_public_key: bytes) -> bytes:
    eph, nonce, ciphertext = seal_to_public_key(enc_public_key, private_key, key_seal_info(server_id, policy_id))
    return eph + nonce + ciphertext


def open_sealed_key(server_id: str, policy_id: bytes, sealed: bytes, enc_private_key: bytes) -> bytes:
    """Recover a per-policy private key returned by a key server."""
    if len(sealed) < 32 + 12 + 16:
        raise MalformedResponse("Sealed key is too short", server_id=server_id)
    return open_with_private_key(
        enc_private_key, sealed[:32], sealed[32:44], sealed[44:], key_seal_info(server_id, policy_id)
    )


class KeyServerClient(ABC):
    """Abstract client for one key server."""

    def __init__(self, server_id: str):
        self.server_id = server_id

    @abstractmethod
    def get_public_key(self, policy_id: bytes) -> bytes:
        """
        Return this server's X25519 public key for ``policy_id``.

        Raises:
            BackendUnreachable: If the server cannot be reached
            BackendRejected: If the server answers with an error
        """
        pass

    @abstractmethod
    def fetch_keys(self, request: FetchKeyRequest) -> Dict[bytes, bytes]:
        """
        Request the sealed per-policy keys named in the request's proof.

        Returns:
            Mapping of PolicyId to sealed private key

        Raises:
            AccessDenied: If the server rejects the proof or certificate
            BackendUnreachable: If the server cannot be reached
            BackendRejected: On other server errors
        """
        pass


class HttpKeyServerClient(KeyServerClient):
    """Key server reached over HTTP."""

    def __init__(self, server_id: str, url: str, timeout: float = DEFAULT_TIMEOUT):
        super().__init__(server_id)
        self.url = url.rstrip("/")
        self.timeout = timeout

    def _make_request(self, endpoint: str, data: Dict) -> Dict:
        request = Request(
            f"{self.url}/{endpoint}",
            data=json.dumps(data).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urlopen(request, timeout=self.timeout) as response:
                body = response.read().decode("utf-8")
        except HTTPError as e:
            text = e.read().decode("utf-8", errors="replace") if e.fp else ""
            if e.code in (401, 403):
                raise AccessDenied(
                    f"Key server {self.server_id} denied the request", server_id=self.server_id, body=text
                )
            raise BackendRejected(
                f"Key server {self.server_id} error ({e.code})",
                server_id=self.server_id, status=e.code, body=text,
            )
        except (URLError, OSError) as e:
            raise BackendUnreachable(
                f"Key server {self.server_id} unreachable: {getattr(e, 'reason', e)}",
                server_id=self.server_id,
            )
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            raise MalformedResponse(f"Key server {self.server_id} returned non-JSON", server_id=self.server_id)
        if not isinstance(parsed, dict):
            raise MalformedResponse(f"Key server {self.server_id} returned unexpected JSON", server_id=self.server_id)
        return parsed

    def get_public_key(self, policy_id: bytes) -> bytes:
        response = self._make_request("v1/public_key", {"id": policy_id_hex(policy_id)})
        try:
            return b64d(response["public_key"])
        except (KeyError, TypeError, ValueError):
            raise MalformedResponse("Missing public_key in key server response", server_id=self.server_id)

    def fetch_keys(self, request: FetchKeyRequest) -> Dict[bytes, bytes]:
        response = self._make_request("v1/fetch_key", request.to_dict())
        try:
            return {
                bytes.fromhex(entry["id"]): b64d(entry["encrypted_key"])
                for entry in response["decryption_keys"]
            }
        except (KeyError, TypeError, ValueError):
            raise MalformedResponse("Malformed decryption_keys in key server response", server_id=self.server_id)


# --------- Reference key server ----------

ApprovalPolicy = Callable[[LedgerObject, str, bytes], bool]


def whitelist_policy(scope: LedgerObject, principal: str, policy_id: bytes) -> bool:
    """
    Approve when ``principal`` is on the scope object's ``list`` field and the
    PolicyId is prefixed with the scope object's id.
    """
    members = {normalize_address(a) for a in scope.fields.get("list", [])}
    return principal in members and policy_id.startswith(object_id_bytes(scope.object_id))


class LocalKeyServer(KeyServerClient):
    """
    In-process key server used for development and tests.

    Verifies the certificate, the request signature and the proof
    transaction, then evaluates ``approval`` against the scope object read
    from the ledger.

    Attributes:
        online: When False every call raises BackendUnreachable
        delay: Seconds to sleep before answering a fetch
        calls: Count of requests served
    """

    def __init__(
        self,
        server_id: str,
        master_secret: bytes,
        ledger: LedgerClient,
        approval: ApprovalPolicy = whitelist_policy,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(server_id)
        self._master_secret = master_secret
        self.ledger = ledger
        self.approval = approval
        self.clock = clock
        self.online = True
        self.delay = 0.0
        self.calls = 0

    def _private_key(self, policy_id: bytes) -> bytes:
        return x25519_from_seed(self._master_secret, b"timeseal-ks|" + bytes(policy_id))

    def _check_online(self) -> None:
        self.calls += 1
        if not self.online:
            raise BackendUnreachable(f"Key server {self.server_id} unreachable", server_id=self.server_id)

    def get_public_key(self, policy_id: bytes) -> bytes:
        self._check_online()
        return x25519_public(self._private_key(policy_id))

    def fetch_keys(self, request: FetchKeyRequest) -> Dict[bytes, bytes]:
        self._check_online()
        if self.delay:
            time.sleep(self.delay)

        cert = request.certificate
        if self.clock() * 1000 > cert.expiry_epoch_ms:
            raise CredentialExpired("Certificate has expired", server_id=self.server_id)
        if recover_personal_message_signer(cert.personal_message(), cert.signature) != cert.principal:
            raise AccessDenied("Invalid certificate signature", server_id=self.server_id)
        if not ed25519_verify(
            cert.session_public_key,
            request.request_signature,
            request_signing_bytes(request.ptb, request.enc_public_key),
        ):
            raise AccessDenied("Invalid request signature", server_id=self.server_id)

        keys = {}
        for policy_id, scope_id in self._approved_calls(request.ptb, cert.package_id):
            try:
                scope = self.ledger.get_object(scope_id)
            except TimesealError as e:
                raise AccessDenied(f"Scope object unavailable: {e.message}", server_id=self.server_id)
            if not self.approval(scope, cert.principal, policy_id):
                raise AccessDenied(
                    "Principal is not authorized for this policy",
                    server_id=self.server_id, principal=cert.principal,
                )
            keys[policy_id] = seal_key(
                self.server_id, policy_id, self._private_key(policy_id), request.enc_public_key
            )
        logger.debug("Key server released keys", server_id=self.server_id, count=len(keys))
        return keys

    def _approved_calls(self, ptb: bytes, package_id: str) -> List[tuple]:
        try:
            tx = ProgrammableTransaction.from_bytes(ptb)
        except MalformedResponse as e:
            raise AccessDenied(f"Invalid proof transaction: {e.message}", server_id=self.server_id)
        if not tx.commands:
            raise AccessDenied("Proof transaction has no calls", server_id=self.server_id)

        calls = []
        for command in tx.commands:
            if command.package != package_id:
                raise AccessDenied("Proof targets a different package", server_id=self.server_id)
            if not command.function.startswith(APPROVE_PREFIX):
                raise AccessDenied(f"Function {command.function} is not an approval entry point",
                                   server_id=self.server_id)
            args = [tx.inputs[i] for i in command.arguments if i < len(tx.inputs)]
            if len(args) != len(command.arguments) or len(args) < 2:
                raise AccessDenied("Approval call has wrong arguments", server_id=self.server_id)
            if not isinstance(args[0], PureArg) or not isinstance(args[1], (SharedObjectArg, OwnedObjectArg)):
                raise AccessDenied("Approval call has wrong argument kinds", server_id=self.server_id)
            reader = BcsReader(args[0].value)
            try:
                policy_id = reader.vector()
            except MalformedResponse:
                raise AccessDenied("Approval id is not a byte vector", server_id=self.server_id)
            calls.append((policy_id, args[1].object_id))
        return calls


def create_key_server_clients(entries: List[Dict], timeout: Optional[float] = None) -> List[KeyServerClient]:
    """Build HTTP clients from config entries ``{"server_id", "url"}``."""
    clients: List[KeyServerClient] = []
    for entry in entries:
        clients.append(HttpKeyServerClient(
            entry["server_id"], entry["url"], timeout=timeout or entry.get("timeout", DEFAULT_TIMEOUT)
        ))
    return clients
