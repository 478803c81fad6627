"""
Shared utilities for timeseal CLI commands.
"""

import sys
from datetime import datetime, timezone
from pathlib import Path

from ..config import TimesealConfig, load_config
from ..crypto import WalletKeyPair
from ..errors import TimesealError
from ..kvstore import FileKeyValueStore
from ..orchestrator import WorkLogOrchestrator, build_orchestrator

WALLET_FILE = "wallet.pem"
STORE_FILE = "store.json"


def fail(error) -> None:
    """Print an error and exit with status 1."""
    if isinstance(error, TimesealError):
        print(f"Error: {error.message}")
        hint = error.summary
        if hint:
            print(f"  ({hint})")
    else:
        print(f"Error: {error}")
    sys.exit(1)


def load_config_or_exit(args) -> TimesealConfig:
    """Load config or exit with error message."""
    try:
        return load_config(getattr(args, 'config', None))
    except TimesealError as e:
        fail(e)


def get_store(config: TimesealConfig) -> FileKeyValueStore:
    """Durable store shared by sessions and markers."""
    return FileKeyValueStore(config.data_path / STORE_FILE)


def wallet_path(args, config: TimesealConfig) -> Path:
    return Path(getattr(args, 'key', None) or config.data_path / WALLET_FILE)


def load_wallet_or_exit(args, config: TimesealConfig) -> WalletKeyPair:
    """Load the wallet key or exit with a hint to generate one."""
    path = wallet_path(args, config)
    if not path.is_file():
        print(f"Error: wallet key not found at {path}")
        print("Generate one: timeseal wallet generate")
        sys.exit(1)
    try:
        return WalletKeyPair.from_pem(path.read_bytes(), getattr(args, 'password', None))
    except TimesealError as e:
        fail(e)


def get_orchestrator(args, config: TimesealConfig, wallet: WalletKeyPair) -> WorkLogOrchestrator:
    """Build the orchestrator; session prompts are answered by the local wallet."""
    try:
        return build_orchestrator(
            config,
            request_signature=wallet.sign_personal_message,
            store=get_store(config),
        )
    except TimesealError as e:
        fail(e)


def read_text_arg(value: str) -> str:
    """Read ``-`` as stdin, inline JSON or unknown paths literally, an existing path as a file."""
    if value == "-":
        return sys.stdin.read()
    if value.lstrip().startswith(("{", "[")):
        return value
    path = Path(value)
    if path.is_file():
        return path.read_text(encoding="utf-8")
    return value


def format_timestamp(epoch_ms: int) -> str:
    """Format epoch milliseconds for display (UTC)."""
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def format_id(value: str, length: int = 12) -> str:
    """Format an id for display (truncated)."""
    return value[:length] + "..." if value and len(value) > length else (value or "N/A")
