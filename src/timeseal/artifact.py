"""
Self-describing encrypted artifact format.

Layout::

    header  = "TSEAL" | u8 version | package id (32) | vector<u8> policy id
              | u8 threshold | uleb recipient set version | uleb share count
              | shares...
    share   = string server id | u8 index | ephemeral key (32) | nonce (12)
              | vector<u8> encrypted share
    body    = nonce (12) | AES-256-GCM ciphertext (associated data = header)

The policy id in the header lets a retriever recover it when no marker is
available; the header is authenticated, so it cannot be swapped without
breaking payload decryption.
"""

import struct
from dataclasses import dataclass, field
from typing import List

from .bcs import BcsReader, encode_address, encode_bytes, encode_str, encode_uleb128
from .crypto import NONCE_SIZE
from .errors import MalformedResponse

MAGIC = b"TSEAL"
FORMAT_VERSION = 1
EPHEMERAL_KEY_SIZE = 32


@dataclass
class EncryptedShare:
    """A Shamir share of the data key sealed to one key server's per-policy key."""
    server_id: str
    index: int
    ephemeral_public: bytes
    nonce: bytes
    ciphertext: bytes

    def to_bytes(self) -> bytes:
        return (
            encode_str(self.server_id)
            + struct.pack("<B", self.index)
            + self.ephemeral_public
            + self.nonce
            + encode_bytes(self.ciphertext)
        )


@dataclass
class EncryptedArtifact:
    """
    Ciphertext bound to exactly one PolicyId.

    Attributes:
        package_id: Package whose ``seal_approve`` gates key release
        policy_id: PolicyId the payload was encrypted under
        threshold: Number of key servers that must release keys
        recipient_set_version: Version of the key-server set used for encryption
        shares: Data-key shares, one per key server
        nonce: Payload AEAD nonce
        ciphertext: Payload ciphertext (with tag)
    """
    package_id: str
    policy_id: bytes
    threshold: int
    recipient_set_version: int
    shares: List[EncryptedShare] = field(default_factory=list)
    nonce: bytes = b""
    ciphertext: bytes = b""

    def header_bytes(self) -> bytes:
        out = bytearray(MAGIC)
        out += struct.pack("<B", FORMAT_VERSION)
        out += encode_address(self.package_id)
        out += encode_bytes(self.policy_id)
        out += struct.pack("<B", self.threshold)
        out += encode_uleb128(self.recipient_set_version)
        out += encode_uleb128(len(self.shares))
        for share in self.shares:
            out += share.to_bytes()
        return bytes(out)

    def to_bytes(self) -> bytes:
        return self.header_bytes() + self.nonce + self.ciphertext

    @property
    def share_servers(self) -> List[str]:
        return [share.server_id for share in self.shares]

    @classmethod
    def from_bytes(cls, data: bytes) -> "EncryptedArtifact":
        """
        Parse serialized artifact bytes.

        Raises:
            MalformedResponse: If the data is not a timeseal artifact
        """
        data = bytes(data)
        if not data.startswith(MAGIC):
            raise MalformedResponse("Not an encrypted work log (bad magic)")

        reader = BcsReader(data[len(MAGIC):])
        version = reader.u8()
        if version != FORMAT_VERSION:
            raise MalformedResponse(f"Unsupported artifact version {version}", version=version)

        package_id = reader.address()
        policy_id = reader.vector()
        threshold = reader.u8()
        recipient_set_version = reader.uleb128()

        shares = []
        for _ in range(reader.uleb128()):
            shares.append(EncryptedShare(
                server_id=reader.string(),
                index=reader.u8(),
                ephemeral_public=reader.fixed(EPHEMERAL_KEY_SIZE),
                nonce=reader.fixed(NONCE_SIZE),
                ciphertext=reader.vector(),
            ))

        nonce = reader.fixed(NONCE_SIZE)
        header_length = len(data) - len(reader.remaining()) - NONCE_SIZE
        artifact = cls(
            package_id=package_id,
            policy_id=policy_id,
            threshold=threshold,
            recipient_set_version=recipient_set_version,
            shares=shares,
            nonce=nonce,
            ciphertext=reader.remaining(),
        )
        if artifact.header_bytes() != data[:header_length]:
            raise MalformedResponse("Artifact header is not canonical")
        if threshold < 1 or threshold > len(shares):
            raise MalformedResponse("Artifact threshold is inconsistent with its shares",
                                    threshold=threshold, shares=len(shares))
        return artifact


def parse_header_policy_id(data: bytes) -> bytes:
    """Return the PolicyId recorded in an artifact's header."""
    return EncryptedArtifact.from_bytes(data).policy_id
