"""
Threshold encryption gateway.

Encryption needs only the key servers' per-policy public keys; decryption
needs keys released by at least ``threshold`` servers in exchange for an
authorization proof. Released keys are cached in memory, keyed by
``(PolicyId, server id)``; nothing here touches durable storage.
"""

import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout, as_completed
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .artifact import EncryptedArtifact, EncryptedShare
from .crypto import (
    DATA_KEY_SIZE,
    aead_decrypt,
    aead_encrypt,
    combine_shares,
    open_with_private_key,
    seal_to_public_key,
    split_secret,
    x25519_generate,
)
from .errors import (
    AccessDenied,
    CredentialExpired,
    DecryptionFailed,
    EncryptionUnavailable,
    InputValidation,
    InvalidThreshold,
    KeyFetchTimeout,
    TimesealError,
)
from .keyserver import (
    FetchKeyRequest,
    KeyServerClient,
    open_sealed_key,
    request_signing_bytes,
    share_seal_info,
)
from .logging import get_logger
from .policy import normalize_object_id, policy_id_hex
from .session import SessionCredential

logger = get_logger()

DEFAULT_FETCH_TIMEOUT = 10.0


class EncryptionGateway:
    """
    Encrypts payloads to a fixed set of key servers and decrypts them once
    enough servers have released keys.

    Args:
        key_servers: The recipient set, in share-index order
        recipient_set_version: Version stamped into every artifact
        fetch_timeout: Deadline in seconds for one key fetch round
        clock: Seconds clock used for credential expiry checks
    """

    def __init__(
        self,
        key_servers: Sequence[KeyServerClient],
        recipient_set_version: int = 1,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ):
        ids = [server.server_id for server in key_servers]
        if len(set(ids)) != len(ids):
            raise InputValidation("Key server ids must be unique", field="key_servers")
        self.key_servers = list(key_servers)
        self.recipient_set_version = recipient_set_version
        self.fetch_timeout = fetch_timeout
        self.clock = clock
        self._cache: Dict[Tuple[bytes, str], bytes] = {}
        self._cache_lock = threading.Lock()

    @property
    def recipient_set_size(self) -> int:
        return len(self.key_servers)

    def _check_threshold(self, threshold: int) -> None:
        if not isinstance(threshold, int) or isinstance(threshold, bool):
            raise InvalidThreshold("threshold must be an integer", threshold=threshold)
        if threshold < 1 or threshold > self.recipient_set_size:
            raise InvalidThreshold(
                f"threshold {threshold} must be between 1 and {self.recipient_set_size} "
                f"(configured key servers)",
                threshold=threshold,
                recipient_set_size=self.recipient_set_size,
            )

    def _check_credential(self, credential: SessionCredential) -> None:
        if credential.is_expired(int(self.clock() * 1000)):
            raise CredentialExpired(
                "Session credential has expired; sign a new one and retry",
                principal=credential.principal,
                expiry_epoch_ms=credential.expiry_epoch_ms,
            )

    # --------- encrypt ----------

    def encrypt(
        self,
        policy_id: bytes,
        package_id: str,
        plaintext: bytes,
        threshold: int,
    ) -> EncryptedArtifact:
        """
        Threshold-encrypt ``plaintext`` under ``policy_id``.

        Raises:
            InvalidThreshold: Before any network call, if threshold is out of range
            EncryptionUnavailable: If fewer than ``threshold`` key servers answer
        """
        self._check_threshold(threshold)
        if not isinstance(plaintext, (bytes, bytearray)):
            raise InputValidation("plaintext must be bytes", field="plaintext")
        policy_id = bytes(policy_id)
        package_id = normalize_object_id(package_id)

        public_keys, failures = self._collect_public_keys(policy_id)
        if len(public_keys) < threshold:
            raise EncryptionUnavailable(
                f"Only {len(public_keys)} of {threshold} required key servers answered",
                available=len(public_keys),
                threshold=threshold,
                failures=failures,
            )

        data_key = os.urandom(DATA_KEY_SIZE)
        indices = [index for index, _, _ in public_keys]
        split = dict(split_secret(data_key, threshold, indices))

        shares = []
        for index, server_id, public_key in public_keys:
            eph, nonce, ciphertext = seal_to_public_key(
                public_key, split[index], share_seal_info(server_id, policy_id)
            )
            shares.append(EncryptedShare(server_id, index, eph, nonce, ciphertext))

        artifact = EncryptedArtifact(
            package_id=package_id,
            policy_id=policy_id,
            threshold=threshold,
            recipient_set_version=self.recipient_set_version,
            shares=shares,
        )
        artifact.nonce, artifact.ciphertext = aead_encrypt(
            data_key, bytes(plaintext), aad=artifact.header_bytes()
        )
        logger.debug("Payload encrypted", policy_id=policy_id_hex(policy_id),
                     threshold=threshold, shares=len(shares), size=len(plaintext))
        return artifact

    def _collect_public_keys(self, policy_id: bytes) -> Tuple[List[Tuple[int, str, bytes]], Dict[str, str]]:
        results: List[Tuple[int, str, bytes]] = []
        failures: Dict[str, str] = {}
        with ThreadPoolExecutor(max_workers=len(self.key_servers)) as pool:
            futures = {
                pool.submit(server.get_public_key, policy_id): (index + 1, server)
                for index, server in enumerate(self.key_servers)
            }
            for future in as_completed(futures):
                index, server = futures[future]
                try:
                    results.append((index, server.server_id, future.result()))
                except TimesealError as e:
                    logger.warning("Key server unavailable for encryption",
                                   server_id=server.server_id, error=e.code)
                    failures[server.server_id] = e.code
        results.sort()
        return results, failures

    # --------- fetch keys ----------

    def has_keys(self, policy_id: bytes, server_id: str) -> bool:
        with self._cache_lock:
            return (bytes(policy_id), server_id) in self._cache

    def _servers_with_all(self, servers: Sequence[KeyServerClient], policy_ids: Sequence[bytes]) -> List[str]:
        with self._cache_lock:
            return [
                s.server_id for s in servers
                if all((pid, s.server_id) in self._cache for pid in policy_ids)
            ]

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    def fetch_keys(
        self,
        policy_ids: Sequence[bytes],
        proof: bytes,
        credential: SessionCredential,
        threshold: int,
        server_ids: Optional[Sequence[str]] = None,
    ) -> None:
        """
        Obtain keys for ``policy_ids`` from at least ``threshold`` key servers.

        ``server_ids`` restricts the round to servers holding shares of the
        artifact being opened; by default every configured server is asked.

        Raises:
            CredentialExpired: Before any network call, if the credential expired
            AccessDenied: If rejections leave fewer than ``threshold`` possible approvals
            KeyFetchTimeout: If the deadline passes, or servers fail, before
                ``threshold`` approvals arrive
        """
        self._check_credential(credential)
        self._check_threshold(threshold)
        policy_ids = [bytes(pid) for pid in policy_ids]
        if not policy_ids:
            raise InputValidation("No policy ids to fetch", field="policy_ids")

        candidates = self.key_servers
        if server_ids is not None:
            candidates = [s for s in self.key_servers if s.server_id in set(server_ids)]

        done = set(self._servers_with_all(candidates, policy_ids))
        if len(done) >= threshold:
            return
        if len(candidates) < threshold:
            raise KeyFetchTimeout(
                f"Only {len(candidates)} reachable key servers hold shares; {threshold} required",
                candidates=len(candidates), threshold=threshold,
            )
        pending = [s for s in candidates if s.server_id not in done]

        enc_private, enc_public = x25519_generate()
        request = FetchKeyRequest(
            ptb=proof,
            enc_public_key=enc_public,
            request_signature=credential.sign(request_signing_bytes(proof, enc_public)),
            certificate=credential.certificate(),
        )

        denied: Dict[str, str] = {}
        failed: Dict[str, str] = {}
        pool = ThreadPoolExecutor(max_workers=len(pending))
        futures = {pool.submit(server.fetch_keys, request): server for server in pending}
        try:
            for future in as_completed(futures, timeout=self.fetch_timeout):
                server = futures[future]
                try:
                    self._store_keys(server.server_id, policy_ids, future.result(), enc_private)
                    done.add(server.server_id)
                except CredentialExpired:
                    raise
                except AccessDenied as e:
                    denied[server.server_id] = e.message
                except TimesealError as e:
                    failed[server.server_id] = e.code

                if len(done) >= threshold:
                    logger.debug("Key fetch satisfied", servers=len(done), threshold=threshold)
                    return
                if len(candidates) - len(denied) < threshold:
                    raise AccessDenied(
                        "Key servers rejected the authorization proof",
                        denied=denied, threshold=threshold,
                    )
        except FuturesTimeout:
            raise KeyFetchTimeout(
                f"Key servers did not answer within {self.fetch_timeout}s",
                received=len(done), threshold=threshold, failed=failed, denied=denied,
            )
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        raise KeyFetchTimeout(
            f"Only {len(done)} of {threshold} required key servers released keys",
            received=len(done), threshold=threshold, failed=failed, denied=denied,
        )

    def _store_keys(
        self,
        server_id: str,
        policy_ids: Sequence[bytes],
        sealed_keys: Dict[bytes, bytes],
        enc_private: bytes,
    ) -> None:
        opened = {}
        for pid in policy_ids:
            sealed = sealed_keys.get(pid)
            if sealed is None:
                raise AccessDenied("Key server withheld a requested key", server_id=server_id)
            opened[pid] = open_sealed_key(server_id, pid, sealed, enc_private)
        with self._cache_lock:
            for pid, key in opened.items():
                self._cache[(pid, server_id)] = key

    # --------- decrypt ----------

    def decrypt(
        self,
        artifact: EncryptedArtifact,
        proof: Optional[bytes],
        credential: SessionCredential,
    ) -> bytes:
        """
        Decrypt an artifact, fetching keys with ``proof`` if the cache is short.

        Raises:
            CredentialExpired: If the credential has expired
            AccessDenied / KeyFetchTimeout: As for fetch_keys
            DecryptionFailed: If shares or payload fail authenticated decryption
        """
        self._check_credential(credential)
        policy_id = bytes(artifact.policy_id)

        cached = [s for s in artifact.shares if self.has_keys(policy_id, s.server_id)]
        if len(cached) < artifact.threshold:
            if proof is None:
                raise InputValidation("An authorization proof is required to fetch keys", field="proof")
            self.fetch_keys([policy_id], proof, credential, artifact.threshold,
                            server_ids=artifact.share_servers)
            cached = [s for s in artifact.shares if self.has_keys(policy_id, s.server_id)]

        points = []
        for share in cached:
            with self._cache_lock:
                key = self._cache[(policy_id, share.server_id)]
            try:
                value = open_with_private_key(
                    key, share.ephemeral_public, share.nonce, share.ciphertext,
                    share_seal_info(share.server_id, policy_id),
                )
            except DecryptionFailed:
                logger.warning("Key share failed to open", server_id=share.server_id)
                continue
            points.append((share.index, value))
            if len(points) == artifact.threshold:
                break

        if len(points) < artifact.threshold:
            raise DecryptionFailed(
                f"Only {len(points)} of {artifact.threshold} key shares could be opened",
                opened=len(points), threshold=artifact.threshold,
            )

        data_key = combine_shares(points)
        if len(data_key) != DATA_KEY_SIZE:
            raise DecryptionFailed("Recombined data key has the wrong length")
        return aead_decrypt(data_key, artifact.nonce, artifact.ciphertext, aad=artifact.header_bytes())
