"""
Tests for the encrypted artifact format (artifact.py)
"""

import pytest

from timeseal.artifact import MAGIC, EncryptedArtifact, EncryptedShare, parse_header_policy_id
from timeseal.errors import MalformedResponse

from conftest import PACKAGE_ID

POLICY_ID = b"\x11" * 32 + b"0xaa_2024-2-5_worklog"


def make_artifact(threshold=2, shares=3):
    return EncryptedArtifact(
        package_id=PACKAGE_ID,
        policy_id=POLICY_ID,
        threshold=threshold,
        recipient_set_version=4,
        shares=[
            EncryptedShare(f"ks-{i}", i, bytes([i]) * 32, bytes([i]) * 12, b"sealed-%d" % i)
            for i in range(1, shares + 1)
        ],
        nonce=b"\x05" * 12,
        ciphertext=b"ciphertext-and-tag",
    )


class TestEncryptedArtifact:
    """Tests for serialization and parsing"""

    def test_starts_with_magic(self):
        """Test that serialized artifacts are self-identifying"""
        assert make_artifact().to_bytes().startswith(MAGIC)

    def test_parse_recovers_fields(self):
        """Test that every header and body field survives parsing"""
        original = make_artifact()
        parsed = EncryptedArtifact.from_bytes(original.to_bytes())

        assert parsed.package_id == PACKAGE_ID
        assert parsed.policy_id == POLICY_ID
        assert parsed.threshold == 2
        assert parsed.recipient_set_version == 4
        assert parsed.share_servers == ["ks-1", "ks-2", "ks-3"]
        assert parsed.shares[1].ciphertext == b"sealed-2"
        assert parsed.nonce == b"\x05" * 12
        assert parsed.ciphertext == b"ciphertext-and-tag"

    def test_header_policy_id(self):
        """Test recovering the PolicyId without a marker"""
        assert parse_header_policy_id(make_artifact().to_bytes()) == POLICY_ID

    def test_bad_magic(self):
        """Test that foreign data is rejected"""
        with pytest.raises(MalformedResponse):
            EncryptedArtifact.from_bytes(b"%PDF-1.7 not an artifact")

    def test_unsupported_version(self):
        """Test that an unknown format version is rejected"""
        data = bytearray(make_artifact().to_bytes())
        data[len(MAGIC)] = 9
        with pytest.raises(MalformedResponse):
            EncryptedArtifact.from_bytes(bytes(data))

    def test_truncated(self):
        """Test that truncated data is rejected"""
        data = make_artifact().to_bytes()
        with pytest.raises(MalformedResponse):
            EncryptedArtifact.from_bytes(data[:40])

    def test_threshold_above_share_count(self):
        """Test that a threshold larger than the share list is rejected"""
        with pytest.raises(MalformedResponse):
            EncryptedArtifact.from_bytes(make_artifact(threshold=3, shares=2).to_bytes())
