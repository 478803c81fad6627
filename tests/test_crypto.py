"""
Tests for cryptographic primitives (crypto.py)

Tests for:
- Wallet addresses and personal-message signatures
- Share sealing to X25519 public keys
- Shamir secret sharing
"""

import os

import pytest

from timeseal.crypto import (
    WalletKeyPair,
    aead_decrypt,
    aead_encrypt,
    address_from_public_key,
    blake2b256,
    combine_shares,
    open_with_private_key,
    recover_personal_message_signer,
    seal_to_public_key,
    split_secret,
    x25519_from_seed,
    x25519_generate,
    x25519_public,
)
from timeseal.errors import DecryptionFailed, InputValidation


class TestWalletKeyPair:
    """Tests for wallet keys and signatures"""

    def test_address_derivation(self):
        """Test address = 0x || blake2b256(0x00 || public key)"""
        wallet = WalletKeyPair.from_seed(b"\x07" * 32)
        expected = "0x" + blake2b256(b"\x00" + wallet.public_key_bytes).hex()
        assert wallet.address == expected
        assert address_from_public_key(wallet.public_key_bytes) == expected
        assert len(wallet.address) == 66

    def test_from_seed_is_deterministic(self):
        """Test that the same seed yields the same address"""
        assert WalletKeyPair.from_seed(b"\x07" * 32).address == WalletKeyPair.from_seed(b"\x07" * 32).address

    def test_from_seed_rejects_wrong_length(self):
        """Test that seeds must be 32 bytes"""
        with pytest.raises(InputValidation):
            WalletKeyPair.from_seed(b"short")

    def test_signature_recovers_signer(self):
        """Test personal-message signature layout and recovery"""
        wallet = WalletKeyPair.generate()
        signature = wallet.sign_personal_message(b"hello")

        assert len(signature) == 97
        assert signature[0] == 0x00
        assert signature[65:] == wallet.public_key_bytes
        assert recover_personal_message_signer(b"hello", signature) == wallet.address

    def test_signature_over_other_message_fails(self):
        """Test that a signature does not verify for a different message"""
        wallet = WalletKeyPair.generate()
        signature = wallet.sign_personal_message(b"hello")
        assert recover_personal_message_signer(b"goodbye", signature) is None

    def test_malformed_signature_returns_none(self):
        """Test that truncated or wrong-flag signatures are rejected"""
        assert recover_personal_message_signer(b"hello", b"\x00" * 10) is None
        assert recover_personal_message_signer(b"hello", b"\x01" + b"\x00" * 96) is None

    def test_pem_round_trip_with_password(self):
        """Test saving and loading an encrypted wallet key"""
        wallet = WalletKeyPair.generate()
        pem = wallet.to_pem("secret")
        assert WalletKeyPair.from_pem(pem, "secret").address == wallet.address

    def test_pem_wrong_password(self):
        """Test that a wrong password raises InputValidation"""
        pem = WalletKeyPair.generate().to_pem("secret")
        with pytest.raises(InputValidation):
            WalletKeyPair.from_pem(pem, "wrong")


class TestSealing:
    """Tests for X25519 sealing"""

    def test_seal_and_open(self):
        """Test that the recipient opens a sealed value"""
        private, public = x25519_generate()
        eph, nonce, ciphertext = seal_to_public_key(public, b"share", b"info")
        assert open_with_private_key(private, eph, nonce, ciphertext, b"info") == b"share"

    def test_wrong_info_fails(self):
        """Test that the context label is bound into the seal"""
        private, public = x25519_generate()
        eph, nonce, ciphertext = seal_to_public_key(public, b"share", b"info")
        with pytest.raises(DecryptionFailed):
            open_with_private_key(private, eph, nonce, ciphertext, b"other")

    def test_wrong_recipient_fails(self):
        """Test that another private key cannot open the seal"""
        _, public = x25519_generate()
        other_private, _ = x25519_generate()
        eph, nonce, ciphertext = seal_to_public_key(public, b"share", b"info")
        with pytest.raises(DecryptionFailed):
            open_with_private_key(other_private, eph, nonce, ciphertext, b"info")

    def test_seeded_keys_are_deterministic(self):
        """Test that seeded X25519 keys depend on seed and label"""
        a = x25519_from_seed(b"\x01" * 32, b"label")
        assert a == x25519_from_seed(b"\x01" * 32, b"label")
        assert a != x25519_from_seed(b"\x01" * 32, b"other")
        assert len(x25519_public(a)) == 32

    def test_aead_rejects_modified_aad(self):
        """Test that authenticated data is checked"""
        key = os.urandom(32)
        nonce, ciphertext = aead_encrypt(key, b"payload", aad=b"header")
        assert aead_decrypt(key, nonce, ciphertext, aad=b"header") == b"payload"
        with pytest.raises(DecryptionFailed):
            aead_decrypt(key, nonce, ciphertext, aad=b"tampered")


class TestShamir:
    """Tests for threshold secret sharing"""

    def test_any_threshold_subset_recovers(self):
        """Test that every 2-of-3 subset reconstructs the secret"""
        secret = os.urandom(32)
        shares = split_secret(secret, 2, [1, 2, 3])
        for pair in ([0, 1], [0, 2], [1, 2]):
            assert combine_shares([shares[i] for i in pair]) == secret

    def test_leading_zero_bytes_preserved(self):
        """Test that a secret starting with zero bytes survives"""
        secret = b"\x00\x00" + os.urandom(30)
        shares = split_secret(secret, 3, [1, 2, 3])
        assert combine_shares(shares) == secret

    def test_too_few_shares_do_not_recover(self):
        """Test that below-threshold shares give garbage or fail"""
        secret = os.urandom(32)
        shares = split_secret(secret, 3, [1, 2, 3])
        try:
            assert combine_shares(shares[:2]) != secret
        except DecryptionFailed:
            pass

    def test_invalid_parameters(self):
        """Test threshold and index validation"""
        with pytest.raises(InputValidation):
            split_secret(b"x", 4, [1, 2, 3])
        with pytest.raises(InputValidation):
            split_secret(b"x", 2, [1, 1, 2])
        with pytest.raises(InputValidation):
            split_secret(b"x", 1, [0])
