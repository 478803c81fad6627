"""
Configuration for timeseal.

Loaded from a JSON file (explicit path or ``TIMESEAL_CONFIG``), then
overridden from the environment:

- TIMESEAL_DATA_DIR: directory for durable stores
- TIMESEAL_PACKAGE_ID: package gating key release
- TIMESEAL_THRESHOLD: key servers required to decrypt
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import InputValidation

CONFIG_ENV = "TIMESEAL_CONFIG"
DATA_DIR_ENV = "TIMESEAL_DATA_DIR"
PACKAGE_ID_ENV = "TIMESEAL_PACKAGE_ID"
THRESHOLD_ENV = "TIMESEAL_THRESHOLD"

DEFAULT_DATA_DIR = "~/.timeseal"


@dataclass
class KeyServerSettings:
    """One key server in the recipient set"""
    server_id: str
    url: str

    def to_dict(self) -> Dict[str, Any]:
        return {"server_id": self.server_id, "url": self.url}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KeyServerSettings":
        return cls(server_id=data["server_id"], url=data["url"])


@dataclass
class TimesealConfig:
    """Configuration for the work-log pipelines"""
    package_id: str = ""
    approve_module: str = "whitelist"
    attach_module: str = "whitelist"
    reviewer_address: str = ""
    threshold: int = 2
    recipient_set_version: int = 1
    session_ttl_min: int = 10
    key_fetch_timeout: float = 10.0
    blob_timeout: float = 15.0
    storage_epochs: int = 1
    data_dir: str = DEFAULT_DATA_DIR
    blob_backends: List[Dict[str, Any]] = field(default_factory=list)
    key_servers: List[KeyServerSettings] = field(default_factory=list)
    ledger_rpc_url: str = ""

    @property
    def data_path(self) -> Path:
        return Path(os.path.expanduser(self.data_dir))

    def backend_entries(self) -> List[Dict[str, Any]]:
        """Blob backend entries with timeout and epochs defaults filled in."""
        entries = []
        for entry in self.blob_backends:
            entry = dict(entry)
            if entry.get("kind", "walrus") == "walrus":
                entry.setdefault("timeout", self.blob_timeout)
                entry.setdefault("epochs", self.storage_epochs)
            entries.append(entry)
        return entries

    def validate(self) -> None:
        """
        Raises:
            InputValidation: If a value is out of range
        """
        if self.threshold < 1:
            raise InputValidation("threshold must be at least 1", field="threshold")
        if self.key_servers and self.threshold > len(self.key_servers):
            raise InputValidation(
                f"threshold {self.threshold} exceeds the {len(self.key_servers)} configured key servers",
                field="threshold",
            )
        if self.key_fetch_timeout <= 0 or self.blob_timeout <= 0:
            raise InputValidation("timeouts must be positive", field="timeout")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "package_id": self.package_id,
            "approve_module": self.approve_module,
            "attach_module": self.attach_module,
            "reviewer_address": self.reviewer_address,
            "threshold": self.threshold,
            "recipient_set_version": self.recipient_set_version,
            "session_ttl_min": self.session_ttl_min,
            "key_fetch_timeout": self.key_fetch_timeout,
            "blob_timeout": self.blob_timeout,
            "storage_epochs": self.storage_epochs,
            "data_dir": self.data_dir,
            "blob_backends": [dict(b) for b in self.blob_backends],
            "key_servers": [k.to_dict() for k in self.key_servers],
            "ledger_rpc_url": self.ledger_rpc_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimesealConfig":
        try:
            return cls(
                package_id=data.get("package_id", ""),
                approve_module=data.get("approve_module", "whitelist"),
                attach_module=data.get("attach_module", "whitelist"),
                reviewer_address=data.get("reviewer_address", ""),
                threshold=int(data.get("threshold", 2)),
                recipient_set_version=int(data.get("recipient_set_version", 1)),
                session_ttl_min=int(data.get("session_ttl_min", 10)),
                key_fetch_timeout=float(data.get("key_fetch_timeout", 10.0)),
                blob_timeout=float(data.get("blob_timeout", 15.0)),
                storage_epochs=int(data.get("storage_epochs", 1)),
                data_dir=data.get("data_dir", DEFAULT_DATA_DIR),
                blob_backends=list(data.get("blob_backends", [])),
                key_servers=[KeyServerSettings.from_dict(k) for k in data.get("key_servers", [])],
                ledger_rpc_url=data.get("ledger_rpc_url", ""),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InputValidation(f"Invalid configuration: {e}", field="config")


def load_config(path: Optional[Path] = None) -> TimesealConfig:
    """
    Load configuration from ``path`` (or ``TIMESEAL_CONFIG``) and apply
    environment overrides. With neither, defaults are used.

    Raises:
        InputValidation: If the file is missing, unreadable or invalid
    """
    path = path or os.environ.get(CONFIG_ENV)
    data: Dict[str, Any] = {}
    if path:
        path = Path(path)
        if not path.is_file():
            raise InputValidation(f"Config file not found: {path}", field="config")
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise InputValidation(f"Config file {path} is not valid JSON: {e}", field="config")

    config = TimesealConfig.from_dict(data)

    if os.environ.get(DATA_DIR_ENV):
        config.data_dir = os.environ[DATA_DIR_ENV]
    if os.environ.get(PACKAGE_ID_ENV):
        config.package_id = os.environ[PACKAGE_ID_ENV]
    if os.environ.get(THRESHOLD_ENV):
        try:
            config.threshold = int(os.environ[THRESHOLD_ENV])
        except ValueError:
            raise InputValidation(f"{THRESHOLD_ENV} must be an integer", field="threshold")

    config.validate()
    return config


def save_config(config: TimesealConfig, path: Path) -> None:
    """Save configuration as JSON"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(config.to_dict(), f, indent=2)
