"""
Cryptographic primitives for timeseal.

- Ed25519 wallet keys: ledger addresses, personal-message signatures
- Ed25519 session keys: short-lived request signing
- X25519 + HKDF + AES-GCM: sealing key shares to key-server public keys
- AES-256-GCM: payload encryption under a random data key
- Shamir secret sharing over GF(2^521 - 1): splitting the data key so that
  any ``threshold`` key servers can release it
"""

import base64
import hashlib
import os
import secrets
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .bcs import encode_bytes
from .errors import DecryptionFailed, InputValidation

ED25519_FLAG = 0x00
PERSONAL_MESSAGE_INTENT = bytes([3, 0, 0])
NONCE_SIZE = 12
DATA_KEY_SIZE = 32


def b64e(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64d(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), validate=True)


def blake2b256(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=32).digest()


# --------- Wallet keys (ledger principals) ----------

def address_from_public_key(public_key: bytes) -> str:
    """Ledger address of an Ed25519 public key: blake2b256(flag || pk)."""
    return "0x" + blake2b256(bytes([ED25519_FLAG]) + public_key).hex()


def personal_message_digest(message: bytes) -> bytes:
    """Digest signed by wallets for personal messages (intent-scoped, BCS-wrapped)."""
    return blake2b256(PERSONAL_MESSAGE_INTENT + encode_bytes(message))


@dataclass
class WalletKeyPair:
    """
    Ed25519 key pair controlling a ledger address.

    Serialized signatures use the ledger layout ``flag || signature || public_key``.
    """
    private_key: Ed25519PrivateKey

    @classmethod
    def generate(cls) -> "WalletKeyPair":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes) -> "WalletKeyPair":
        if len(seed) != 32:
            raise InputValidation("Wallet seed must be 32 bytes", field="seed")
        return cls(Ed25519PrivateKey.from_private_bytes(seed))

    @property
    def public_key_bytes(self) -> bytes:
        return self.private_key.public_key().public_bytes_raw()

    @property
    def address(self) -> str:
        return address_from_public_key(self.public_key_bytes)

    def sign_personal_message(self, message: bytes) -> bytes:
        signature = self.private_key.sign(personal_message_digest(message))
        return bytes([ED25519_FLAG]) + signature + self.public_key_bytes

    def to_pem(self, password: Optional[str] = None) -> bytes:
        if password:
            encryption = serialization.BestAvailableEncryption(password.encode())
        else:
            encryption = serialization.NoEncryption()
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=encryption,
        )

    @classmethod
    def from_pem(cls, pem_data: bytes, password: Optional[str] = None) -> "WalletKeyPair":
        try:
            key = serialization.load_pem_private_key(
                pem_data, password=password.encode() if password else None
            )
        except (ValueError, TypeError) as e:
            raise InputValidation(f"Failed to load wallet key: {e}", field="wallet_key")
        if not isinstance(key, Ed25519PrivateKey):
            raise InputValidation("Wallet key must be Ed25519", field="wallet_key")
        return cls(key)


def recover_personal_message_signer(message: bytes, signature: bytes) -> Optional[str]:
    """
    Verify a serialized personal-message signature.

    Returns:
        The signer's address, or None if the signature is malformed or invalid
    """
    if len(signature) != 1 + 64 + 32 or signature[0] != ED25519_FLAG:
        return None
    sig, public_key = signature[1:65], signature[65:]
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(sig, personal_message_digest(message))
    except (InvalidSignature, ValueError):
        return None
    return address_from_public_key(public_key)


# --------- Session keys ----------

def ed25519_generate() -> Tuple[bytes, bytes]:
    sk = Ed25519PrivateKey.generate()
    return sk.private_bytes_raw(), sk.public_key().public_bytes_raw()


def ed25519_public(private_raw: bytes) -> bytes:
    return Ed25519PrivateKey.from_private_bytes(private_raw).public_key().public_bytes_raw()


def ed25519_sign(private_raw: bytes, data: bytes) -> bytes:
    return Ed25519PrivateKey.from_private_bytes(private_raw).sign(data)


def ed25519_verify(public_raw: bytes, signature: bytes, data: bytes) -> bool:
    try:
        Ed25519PublicKey.from_public_bytes(public_raw).verify(signature, data)
        return True
    except (InvalidSignature, ValueError):
        return False


# --------- X25519 + HKDF + AES-GCM ----------

def x25519_generate() -> Tuple[bytes, bytes]:
    sk = X25519PrivateKey.generate()
    return sk.private_bytes_raw(), sk.public_key().public_bytes_raw()


def x25519_public(private_raw: bytes) -> bytes:
    return X25519PrivateKey.from_private_bytes(private_raw).public_key().public_bytes_raw()


def hkdf_sha256(secret: bytes, info: bytes, length: int = 32, salt: Optional[bytes] = None) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=length, salt=salt, info=info).derive(secret)


def x25519_from_seed(seed: bytes, info: bytes) -> bytes:
    """Deterministically derive an X25519 private key from a seed and label."""
    return X25519PrivateKey.from_private_bytes(hkdf_sha256(seed, info)).private_bytes_raw()


def aead_encrypt(key: bytes, plaintext: bytes, aad: Optional[bytes] = None) -> Tuple[bytes, bytes]:
    nonce = os.urandom(NONCE_SIZE)
    return nonce, AESGCM(key).encrypt(nonce, plaintext, aad)


def aead_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, aad: Optional[bytes] = None) -> bytes:
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, aad)
    except InvalidTag:
        raise DecryptionFailed("Authenticated decryption failed: wrong key or corrupted data")


def _shared_key(private_raw: bytes, peer_public: bytes, info: bytes) -> bytes:
    shared = X25519PrivateKey.from_private_bytes(private_raw).exchange(
        X25519PublicKey.from_public_bytes(peer_public)
    )
    return hkdf_sha256(shared, info)


def seal_to_public_key(recipient_public: bytes, plaintext: bytes, info: bytes) -> Tuple[bytes, bytes, bytes]:
    """
    Encrypt ``plaintext`` so only the holder of the matching X25519 key can open it.

    Returns:
        Tuple of (ephemeral public key, nonce, ciphertext)
    """
    eph_private, eph_public = x25519_generate()
    key = _shared_key(eph_private, recipient_public, info)
    nonce, ciphertext = aead_encrypt(key, plaintext, aad=info)
    return eph_public, nonce, ciphertext


def open_with_private_key(
    recipient_private: bytes,
    ephemeral_public: bytes,
    nonce: bytes,
    ciphertext: bytes,
    info: bytes,
) -> bytes:
    key = _shared_key(recipient_private, ephemeral_public, info)
    return aead_decrypt(key, nonce, ciphertext, aad=info)


# --------- Shamir secret sharing ----------

# Mersenne prime 2^521 - 1 comfortably holds a 256-bit data key.
SHAMIR_PRIME = 2 ** 521 - 1
SHARE_VALUE_SIZE = (SHAMIR_PRIME.bit_length() + 7) // 8


def split_secret(secret: bytes, threshold: int, indices: Sequence[int]) -> List[Tuple[int, bytes]]:
    """
    Split ``secret`` into shares evaluated at ``indices``.

    Any ``threshold`` shares reconstruct the secret; fewer reveal nothing.

    Args:
        secret: Secret bytes (at most 64 bytes)
        threshold: Minimum number of shares needed
        indices: Distinct non-zero x coordinates, one per share holder

    Returns:
        List of (index, share value bytes)
    """
    if threshold < 1 or threshold > len(indices):
        raise InputValidation("threshold must be between 1 and the number of shares", field="threshold")
    if len(set(indices)) != len(indices) or any(i <= 0 for i in indices):
        raise InputValidation("share indices must be distinct and positive", field="indices")
    if len(secret) > 64:
        raise InputValidation("secret too large for the sharing field", field="secret")

    value = int.from_bytes(b"\x01" + secret, "big")
    coefficients = [value] + [secrets.randbelow(SHAMIR_PRIME) for _ in range(threshold - 1)]

    shares = []
    for x in indices:
        y = 0
        for coeff in reversed(coefficients):
            y = (y * x + coeff) % SHAMIR_PRIME
        shares.append((x, y.to_bytes(SHARE_VALUE_SIZE, "big")))
    return shares


def combine_shares(shares: Sequence[Tuple[int, bytes]]) -> bytes:
    """
    Reconstruct a secret from shares by Lagrange interpolation at zero.

    Callers must pass exactly the shares they trust; any ``threshold`` of them
    suffice. Wrong or too few shares yield garbage, which the payload AEAD
    then rejects.
    """
    if not shares:
        raise DecryptionFailed("No key shares available")
    points = [(x, int.from_bytes(y, "big")) for x, y in shares]

    secret = 0
    for i, (xi, yi) in enumerate(points):
        numerator, denominator = 1, 1
        for j, (xj, _) in enumerate(points):
            if i != j:
                numerator = (numerator * -xj) % SHAMIR_PRIME
                denominator = (denominator * (xi - xj)) % SHAMIR_PRIME
        basis = numerator * pow(denominator, SHAMIR_PRIME - 2, SHAMIR_PRIME)
        secret = (secret + yi * basis) % SHAMIR_PRIME

    raw = secret.to_bytes((secret.bit_length() + 7) // 8, "big")
    # The leading 0x01 marker preserves leading zero bytes of the secret.
    if not raw or raw[0] != 0x01:
        raise DecryptionFailed("Recombined key shares are inconsistent")
    return raw[1:]
