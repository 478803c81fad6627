"""
Tests for key server clients (keyserver.py)
"""

import json
from unittest.mock import MagicMock, patch
from urllib.error import URLError

import pytest

from timeseal.crypto import b64e, x25519_from_seed, x25519_public
from timeseal.errors import AccessDenied, BackendRejected, BackendUnreachable, MalformedResponse
from timeseal.keyserver import (
    HttpKeyServerClient,
    LocalKeyServer,
    create_key_server_clients,
    open_sealed_key,
    seal_key,
)
from timeseal.ledger import InMemoryLedger

from test_blobstore import http_error, http_response

POLICY_ID = bytes(range(40))


@pytest.fixture
def client():
    return HttpKeyServerClient("ks-1", "https://ks1.test/", timeout=3.0)


def json_response(data):
    return http_response(json.dumps(data).encode())


def fetch_request():
    request = MagicMock()
    request.to_dict.return_value = {"ptb": "AA=="}
    return request


class TestHttpKeyServerClient:
    """Tests for HttpKeyServerClient"""

    def test_get_public_key(self, client):
        """Test the public key request and response"""
        public_key = b"\x07" * 32
        with patch("timeseal.keyserver.urlopen", return_value=json_response({"public_key": b64e(public_key)})) as urlopen:
            assert client.get_public_key(POLICY_ID) == public_key

        request = urlopen.call_args[0][0]
        assert request.full_url == "https://ks1.test/v1/public_key"
        assert json.loads(request.data) == {"id": POLICY_ID.hex()}
        assert urlopen.call_args[1]["timeout"] == 3.0

    def test_fetch_keys(self, client):
        """Test decoding released keys"""
        body = {"decryption_keys": [{"id": POLICY_ID.hex(), "encrypted_key": b64e(b"sealed")}]}
        with patch("timeseal.keyserver.urlopen", return_value=json_response(body)):
            assert client.fetch_keys(fetch_request()) == {POLICY_ID: b"sealed"}

    @pytest.mark.parametrize("code", [401, 403])
    def test_denied(self, client, code):
        """Test that 401 and 403 mean access denied"""
        with patch("timeseal.keyserver.urlopen", side_effect=http_error("u", code, b"not on list")):
            with pytest.raises(AccessDenied) as exc_info:
                client.fetch_keys(fetch_request())
        assert exc_info.value.details["server_id"] == "ks-1"
        assert exc_info.value.details["body"] == "not on list"

    def test_server_error(self, client):
        """Test other HTTP errors"""
        with patch("timeseal.keyserver.urlopen", side_effect=http_error("u", 500, b"oops")):
            with pytest.raises(BackendRejected) as exc_info:
                client.get_public_key(POLICY_ID)
        assert exc_info.value.details["status"] == 500

    def test_unreachable(self, client):
        """Test connection failures"""
        with patch("timeseal.keyserver.urlopen", side_effect=URLError("refused")):
            with pytest.raises(BackendUnreachable):
                client.get_public_key(POLICY_ID)

    @pytest.mark.parametrize("body", [b"<html>", b"[1, 2]", b'{"other": 1}'])
    def test_malformed_public_key_response(self, client, body):
        """Test responses without a usable public key"""
        with patch("timeseal.keyserver.urlopen", return_value=http_response(body)):
            with pytest.raises(MalformedResponse):
                client.get_public_key(POLICY_ID)

    def test_malformed_decryption_keys(self, client):
        """Test a fetch response with a bad key list"""
        body = {"decryption_keys": [{"id": "zz", "encrypted_key": "AA=="}]}
        with patch("timeseal.keyserver.urlopen", return_value=json_response(body)):
            with pytest.raises(MalformedResponse):
                client.fetch_keys(fetch_request())


class TestKeySealing:
    """Tests for sealing per-policy keys to the requester"""

    def test_seal_and_open(self):
        """Test that only the requester's key opens a sealed key"""
        requester = x25519_from_seed(b"\x05" * 32, b"requester")
        secret = b"\x09" * 32
        sealed = seal_key("ks-1", POLICY_ID, secret, x25519_public(requester))

        assert open_sealed_key("ks-1", POLICY_ID, sealed, requester) == secret

    def test_too_short(self):
        """Test that truncated sealed keys are malformed"""
        with pytest.raises(MalformedResponse):
            open_sealed_key("ks-1", POLICY_ID, b"\x00" * 10, b"\x00" * 32)


class TestLocalKeyServer:
    """Tests for the in-process key server"""

    def test_public_keys_per_policy(self):
        """Test that keys differ by policy and by server"""
        ledger = InMemoryLedger()
        first = LocalKeyServer("ks-1", b"\x01" * 32, ledger)
        second = LocalKeyServer("ks-2", b"\x02" * 32, ledger)

        assert first.get_public_key(POLICY_ID) == first.get_public_key(POLICY_ID)
        assert first.get_public_key(POLICY_ID) != first.get_public_key(POLICY_ID[::-1])
        assert first.get_public_key(POLICY_ID) != second.get_public_key(POLICY_ID)
        assert first.calls == 3

    def test_offline(self):
        """Test that an offline server is unreachable"""
        server = LocalKeyServer("ks-1", b"\x01" * 32, InMemoryLedger())
        server.online = False
        with pytest.raises(BackendUnreachable):
            server.get_public_key(POLICY_ID)


class TestCreateClients:
    """Tests for building clients from config entries"""

    def test_entries(self):
        """Test that entries become HTTP clients with the shared timeout"""
        clients = create_key_server_clients(
            [{"server_id": "a", "url": "https://a.test"}, {"server_id": "b", "url": "https://b.test/"}],
            timeout=4.0,
        )
        assert [c.server_id for c in clients] == ["a", "b"]
        assert clients[1].url == "https://b.test"
        assert all(c.timeout == 4.0 for c in clients)
