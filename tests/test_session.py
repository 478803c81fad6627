"""
Tests for session credentials (session.py)
"""

import threading
from unittest.mock import Mock

import pytest

from timeseal.crypto import b64d, b64e
from timeseal.errors import (
    CredentialExpired,
    CredentialPending,
    CredentialSignatureDeclined,
    InputValidation,
)
from timeseal.kvstore import MemoryKeyValueStore
from timeseal.session import (
    CredentialState,
    SessionCredential,
    SessionCredentialCache,
    session_personal_message,
    store_key,
)

from conftest import PACKAGE_ID

START_MS = 1_709_641_800_000  # 2024-03-05 12:30:00 UTC


class FakeClock:
    def __init__(self, now=START_MS):
        self.now = now

    def __call__(self):
        return self.now

    def advance_minutes(self, minutes):
        self.now += minutes * 60_000


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryKeyValueStore()


@pytest.fixture
def cache(store, clock):
    return SessionCredentialCache(store, ttl_min=10, clock=clock)


def signer_for(wallet):
    return Mock(side_effect=wallet.sign_personal_message)


class TestPersonalMessage:
    """Tests for the signed session challenge"""

    def test_format(self):
        """Test the exact challenge text"""
        session_key = b"\x01" * 32
        message = session_personal_message("0x6", 10, START_MS, session_key)
        package = "0x" + "0" * 63 + "6"
        assert message.decode() == (
            f"Accessing keys of package {package} for 10 mins "
            f"from 2024-03-05 12:30:00 UTC, session key {b64e(session_key)}"
        )


class TestGetCredential:
    """Tests for obtaining credentials"""

    def test_prompts_once_then_caches(self, cache, employee):
        """Test that an Active credential is reused without prompting"""
        signer = signer_for(employee)
        first = cache.get_credential(employee.address, PACKAGE_ID, request_signature=signer)
        second = cache.get_credential(employee.address, PACKAGE_ID, request_signature=signer)

        assert first is second
        assert signer.call_count == 1
        assert first.verify_signature()
        assert cache.state(employee.address, PACKAGE_ID) == CredentialState.ACTIVE

    def test_state_absent_initially(self, cache, employee):
        """Test the initial state"""
        assert cache.state(employee.address, PACKAGE_ID) == CredentialState.ABSENT

    def test_persisted_and_rehydrated(self, cache, store, clock, employee):
        """Test that a new cache over the same store reuses the credential"""
        original = cache.get_credential(employee.address, PACKAGE_ID,
                                        request_signature=employee.sign_personal_message)
        assert store.get(store_key(employee.address, PACKAGE_ID)) is not None

        signer = signer_for(employee)
        restarted = SessionCredentialCache(store, clock=clock)
        restored = restarted.get_credential(employee.address, PACKAGE_ID, request_signature=signer)

        assert signer.call_count == 0
        assert restored.session_public_key == original.session_public_key

    def test_expired_record_is_evicted(self, cache, store, clock, employee):
        """Test that an expired stored credential forces a new signature"""
        cache.get_credential(employee.address, PACKAGE_ID, request_signature=employee.sign_personal_message)
        clock.advance_minutes(11)

        signer = signer_for(employee)
        restarted = SessionCredentialCache(store, clock=clock)
        restarted.get_credential(employee.address, PACKAGE_ID, request_signature=signer)
        assert signer.call_count == 1

    def test_tampered_record_is_evicted(self, cache, store, clock, employee, outsider):
        """Test that a stored credential with a foreign signature is not trusted"""
        cache.get_credential(employee.address, PACKAGE_ID, request_signature=employee.sign_personal_message)
        key = store_key(employee.address, PACKAGE_ID)
        record = store.get_json(key)
        record["signature"] = b64e(outsider.sign_personal_message(b"other"))
        store.set_json(key, record)

        signer = signer_for(employee)
        restarted = SessionCredentialCache(store, clock=clock)
        restarted.get_credential(employee.address, PACKAGE_ID, request_signature=signer)
        assert signer.call_count == 1

    def test_expiry_requires_new_signature(self, cache, clock, employee):
        """Test Active -> Expired -> Active through a new prompt"""
        signer = signer_for(employee)
        first = cache.get_credential(employee.address, PACKAGE_ID, request_signature=signer)
        clock.advance_minutes(11)
        assert cache.state(employee.address, PACKAGE_ID) == CredentialState.EXPIRED

        second = cache.get_credential(employee.address, PACKAGE_ID, request_signature=signer)
        assert second is not first
        assert signer.call_count == 2

    def test_declined_signature(self, cache, employee):
        """Test that an empty signature counts as declining"""
        with pytest.raises(CredentialSignatureDeclined):
            cache.get_credential(employee.address, PACKAGE_ID, request_signature=lambda message: b"")

    def test_signer_error_is_declined(self, cache, employee):
        """Test that a failing signer counts as declining"""
        def signer(message):
            raise RuntimeError("wallet closed")

        with pytest.raises(CredentialSignatureDeclined):
            cache.get_credential(employee.address, PACKAGE_ID, request_signature=signer)

    def test_signature_from_other_wallet(self, cache, employee, outsider):
        """Test that a signature by another wallet is rejected"""
        with pytest.raises(CredentialSignatureDeclined):
            cache.get_credential(employee.address, PACKAGE_ID,
                                 request_signature=outsider.sign_personal_message)

    def test_no_signer(self, cache, employee):
        """Test that a missing signer cannot activate a session"""
        with pytest.raises(CredentialSignatureDeclined):
            cache.get_credential(employee.address, PACKAGE_ID)

    def test_ttl_bounds(self, store):
        """Test that TTL is limited to 1..30 minutes"""
        with pytest.raises(InputValidation):
            SessionCredentialCache(store, ttl_min=0)
        with pytest.raises(InputValidation):
            SessionCredentialCache(store, ttl_min=31)


class TestSingleFlight:
    """Tests for concurrent credential requests"""

    def test_concurrent_callers_share_one_prompt(self, cache, employee):
        """Test that concurrent callers trigger a single signature request"""
        started = threading.Event()
        release = threading.Event()
        calls = []

        def slow_signer(message):
            calls.append(message)
            started.set()
            release.wait(5)
            return employee.sign_personal_message(message)

        results = []

        def worker():
            results.append(cache.get_credential(employee.address, PACKAGE_ID, request_signature=slow_signer))

        first = threading.Thread(target=worker)
        first.start()
        assert started.wait(5)
        second = threading.Thread(target=worker)
        second.start()
        release.set()
        first.join(5)
        second.join(5)

        assert len(calls) == 1
        assert len(results) == 2
        assert results[0] is results[1]

    def test_waiter_times_out_as_pending(self, store, clock, employee):
        """Test CredentialPending when the in-flight prompt outlives the wait"""
        cache = SessionCredentialCache(store, signature_timeout=0.05, clock=clock)
        started = threading.Event()
        release = threading.Event()

        def slow_signer(message):
            started.set()
            release.wait(5)
            return employee.sign_personal_message(message)

        owner = threading.Thread(
            target=cache.get_credential,
            args=(employee.address, PACKAGE_ID),
            kwargs={"request_signature": slow_signer},
        )
        owner.start()
        assert started.wait(5)
        assert cache.state(employee.address, PACKAGE_ID) == CredentialState.PENDING

        try:
            with pytest.raises(CredentialPending):
                cache.get_credential(employee.address, PACKAGE_ID, request_signature=slow_signer)
        finally:
            release.set()
            owner.join(5)


class TestPrincipals:
    """Tests for principal switching and logout"""

    def test_switch_expires_other_principals(self, cache, store, employee, reviewer):
        """Test that activating a new principal expires the previous one's credentials"""
        cache.get_credential(employee.address, PACKAGE_ID, request_signature=employee.sign_personal_message)
        cache.get_credential(reviewer.address, PACKAGE_ID, request_signature=reviewer.sign_personal_message)

        assert cache.active_principal == reviewer.address
        assert cache.state(employee.address, PACKAGE_ID) == CredentialState.EXPIRED
        assert store.get(store_key(employee.address, PACKAGE_ID)) is None
        assert cache.state(reviewer.address, PACKAGE_ID) == CredentialState.ACTIVE

    def test_logout(self, cache, store, employee):
        """Test that logout removes durable records"""
        cache.get_credential(employee.address, PACKAGE_ID, request_signature=employee.sign_personal_message)
        removed = cache.logout(employee.address)

        assert removed == [store_key(employee.address, PACKAGE_ID)]
        assert store.keys("session:") == []
        assert cache.state(employee.address, PACKAGE_ID) == CredentialState.ABSENT

    def test_ensure_fresh(self, cache, clock, employee):
        """Test that ensure_fresh raises once the credential expires"""
        credential = cache.get_credential(employee.address, PACKAGE_ID,
                                          request_signature=employee.sign_personal_message)
        cache.ensure_fresh(credential)
        clock.advance_minutes(11)
        with pytest.raises(CredentialExpired):
            cache.ensure_fresh(credential)


class TestSerialization:
    """Tests for credential records"""

    def test_record_round_trip(self, cache, employee):
        """Test that a stored record restores an equivalent credential"""
        credential = cache.get_credential(employee.address, PACKAGE_ID,
                                          request_signature=employee.sign_personal_message)
        restored = SessionCredential.from_dict(credential.to_dict())
        assert restored == credential
        assert restored.certificate().to_dict()["user"] == employee.address
        assert b64d(restored.certificate().to_dict()["signature"]) == credential.signature_over_personal_message
