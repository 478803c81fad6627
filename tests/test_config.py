"""
Tests for configuration loading (config.py)
"""

import json

import pytest

from timeseal.config import KeyServerSettings, TimesealConfig, load_config, save_config
from timeseal.errors import InputValidation

from conftest import PACKAGE_ID


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("TIMESEAL_CONFIG", "TIMESEAL_DATA_DIR", "TIMESEAL_PACKAGE_ID", "TIMESEAL_THRESHOLD"):
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:
    """Tests for load_config"""

    def test_defaults(self):
        """Test that no file and no environment gives defaults"""
        config = load_config()
        assert config.package_id == ""
        assert config.threshold == 2
        assert config.session_ttl_min == 10
        assert config.approve_module == "whitelist"

    def test_from_file(self, tmp_path):
        """Test loading values from a JSON file"""
        path = tmp_path / "timeseal.json"
        path.write_text(json.dumps({
            "package_id": PACKAGE_ID,
            "threshold": 1,
            "key_servers": [{"server_id": "ks-1", "url": "https://ks1.test"}],
            "ledger_rpc_url": "https://rpc.test",
        }))

        config = load_config(path)

        assert config.package_id == PACKAGE_ID
        assert config.threshold == 1
        assert config.key_servers == [KeyServerSettings("ks-1", "https://ks1.test")]
        assert config.ledger_rpc_url == "https://rpc.test"

    def test_path_from_environment(self, tmp_path, monkeypatch):
        """Test that TIMESEAL_CONFIG names the file"""
        path = tmp_path / "env.json"
        path.write_text(json.dumps({"reviewer_address": "0xbb"}))
        monkeypatch.setenv("TIMESEAL_CONFIG", str(path))
        assert load_config().reviewer_address == "0xbb"

    def test_environment_overrides(self, tmp_path, monkeypatch):
        """Test that environment variables win over the file"""
        path = tmp_path / "timeseal.json"
        path.write_text(json.dumps({"package_id": "0x01", "threshold": 3}))
        monkeypatch.setenv("TIMESEAL_PACKAGE_ID", PACKAGE_ID)
        monkeypatch.setenv("TIMESEAL_THRESHOLD", "1")
        monkeypatch.setenv("TIMESEAL_DATA_DIR", str(tmp_path / "data"))

        config = load_config(path)

        assert config.package_id == PACKAGE_ID
        assert config.threshold == 1
        assert config.data_path == tmp_path / "data"

    def test_missing_file(self, tmp_path):
        """Test that a missing file is an input error"""
        with pytest.raises(InputValidation):
            load_config(tmp_path / "nope.json")

    def test_invalid_json(self, tmp_path):
        """Test that a corrupt file is an input error"""
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(InputValidation):
            load_config(path)

    def test_non_integer_threshold_env(self, monkeypatch):
        """Test that a malformed threshold override is rejected"""
        monkeypatch.setenv("TIMESEAL_THRESHOLD", "two")
        with pytest.raises(InputValidation) as exc_info:
            load_config()
        assert exc_info.value.details["field"] == "threshold"


class TestValidate:
    """Tests for TimesealConfig.validate"""

    def test_threshold_zero(self):
        """Test that a threshold below one is rejected"""
        with pytest.raises(InputValidation):
            TimesealConfig(threshold=0).validate()

    def test_threshold_exceeds_servers(self):
        """Test that the threshold cannot exceed the configured key servers"""
        config = TimesealConfig(threshold=3, key_servers=[
            KeyServerSettings("ks-1", "https://ks1.test"),
            KeyServerSettings("ks-2", "https://ks2.test"),
        ])
        with pytest.raises(InputValidation):
            config.validate()

    def test_non_positive_timeout(self):
        """Test that timeouts must be positive"""
        with pytest.raises(InputValidation):
            TimesealConfig(key_fetch_timeout=0).validate()

    def test_malformed_key_server_entry(self):
        """Test that from_dict reports bad entries as input errors"""
        with pytest.raises(InputValidation):
            TimesealConfig.from_dict({"key_servers": [{"url": "https://ks.test"}]})


class TestBackendEntries:
    """Tests for blob backend defaults"""

    def test_walrus_defaults_filled(self):
        """Test that walrus entries inherit timeout and epochs"""
        config = TimesealConfig(blob_timeout=7.5, storage_epochs=4, blob_backends=[
            {"backend_id": "w", "publisher_url": "https://p.test", "aggregator_url": "https://a.test"},
            {"kind": "memory", "backend_id": "m"},
        ])
        walrus, memory = config.backend_entries()
        assert walrus["timeout"] == 7.5
        assert walrus["epochs"] == 4
        assert memory == {"kind": "memory", "backend_id": "m"}

    def test_explicit_values_kept(self):
        """Test that per-backend values are not overwritten"""
        config = TimesealConfig(blob_backends=[{"backend_id": "w", "publisher_url": "p",
                                                "aggregator_url": "a", "epochs": 9}])
        assert config.backend_entries()[0]["epochs"] == 9
        assert config.blob_backends[0] == {"backend_id": "w", "publisher_url": "p",
                                           "aggregator_url": "a", "epochs": 9}


class TestSaveConfig:
    """Tests for save_config"""

    def test_round_trip(self, tmp_path):
        """Test that a saved config loads back unchanged"""
        config = TimesealConfig(
            package_id=PACKAGE_ID,
            threshold=1,
            key_servers=[KeyServerSettings("ks-1", "https://ks1.test")],
            blob_backends=[{"kind": "memory", "backend_id": "m"}],
        )
        path = tmp_path / "nested" / "timeseal.json"
        save_config(config, path)

        assert load_config(path) == config
