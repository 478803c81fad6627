"""
Shared fixtures: an in-memory ledger holding a whitelisted timesheet, three
local key servers, wallets for the employee and reviewer, and a wired
orchestrator.
"""

from datetime import datetime, timezone

import pytest

from timeseal.authorizer import AccessAuthorizer
from timeseal.blobstore import BlobPublisher, MemoryBackend
from timeseal.crypto import WalletKeyPair
from timeseal.gateway import EncryptionGateway
from timeseal.keyserver import LocalKeyServer
from timeseal.kvstore import MemoryKeyValueStore
from timeseal.ledger import OWNER_ADDRESS, InMemoryLedger
from timeseal.orchestrator import WorkLogOrchestrator
from timeseal.session import SessionCredentialCache

PACKAGE_ID = "0x" + "ab" * 32
TIMESHEET_ID = "0x" + "11" * 32
CAP_ID = "0x" + "22" * 32
OTHER_SCOPE_ID = "0x" + "33" * 32
FIXED_DAY = datetime(2024, 3, 5, 12, 30, tzinfo=timezone.utc)


@pytest.fixture
def employee():
    return WalletKeyPair.from_seed(b"\x01" * 32)


@pytest.fixture
def reviewer():
    return WalletKeyPair.from_seed(b"\x02" * 32)


@pytest.fixture
def outsider():
    return WalletKeyPair.from_seed(b"\x03" * 32)


@pytest.fixture
def ledger(employee, reviewer):
    """Ledger with a shared timesheet whitelisting employee and reviewer."""
    ledger = InMemoryLedger()
    ledger.create_object(
        TIMESHEET_ID,
        f"{PACKAGE_ID}::whitelist::Timesheet",
        fields={"name": "March", "list": [employee.address, reviewer.address]},
    )
    ledger.create_object(
        CAP_ID,
        f"{PACKAGE_ID}::whitelist::Cap",
        fields={"for": TIMESHEET_ID},
        owner=OWNER_ADDRESS,
        owner_address=reviewer.address,
    )
    ledger.create_object(
        OTHER_SCOPE_ID,
        f"{PACKAGE_ID}::whitelist::Timesheet",
        fields={"name": "Other", "list": []},
    )
    return ledger


@pytest.fixture
def key_servers(ledger):
    return [LocalKeyServer(f"ks-{i}", bytes([i]) * 32, ledger) for i in (1, 2, 3)]


@pytest.fixture
def gateway(key_servers):
    return EncryptionGateway(key_servers, fetch_timeout=5.0)


@pytest.fixture
def authorizer(gateway, ledger):
    return AccessAuthorizer(gateway, ledger)


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def credentials(kv):
    return SessionCredentialCache(kv)


@pytest.fixture
def memory_backend():
    return MemoryBackend()


@pytest.fixture
def publisher(memory_backend):
    return BlobPublisher([memory_backend])


@pytest.fixture
def orchestrator(gateway, publisher, authorizer, credentials, ledger, kv, reviewer):
    return WorkLogOrchestrator(
        gateway=gateway,
        publisher=publisher,
        authorizer=authorizer,
        credentials=credentials,
        ledger=ledger,
        store=kv,
        package_id=PACKAGE_ID,
        threshold=2,
        reviewer_address=reviewer.address,
        clock=lambda: FIXED_DAY,
    )
