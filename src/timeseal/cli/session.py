"""
Wallet and session CLI commands for timeseal.

Commands: wallet, session
"""

import sys

from ..crypto import WalletKeyPair
from ..errors import TimesealError
from ..session import STORE_PREFIX, SessionCredential, SessionCredentialCache
from .utils import fail, format_timestamp, get_store, load_config_or_exit, load_wallet_or_exit, wallet_path


def cmd_wallet(args):
    """Manage the local wallet key"""
    action = args.action
    config = load_config_or_exit(args)

    if action == "generate":
        path = wallet_path(args, config)
        if path.exists() and not args.force:
            print(f"Error: wallet key already exists at {path}")
            print("Use --force to overwrite")
            sys.exit(1)
        wallet = WalletKeyPair.generate()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(wallet.to_pem(getattr(args, 'password', None)))
        path.chmod(0o600)
        print(f"Generated wallet: {wallet.address}")
        print(f"  Key saved to: {path}")

    elif action == "address":
        wallet = load_wallet_or_exit(args, config)
        print(wallet.address)

    else:
        print(f"Unknown action: {action}")
        print("Available: generate, address")


def cmd_session(args):
    """Inspect or clear cached session credentials"""
    action = args.action
    config = load_config_or_exit(args)
    store = get_store(config)
    principal = args.principal or load_wallet_or_exit(args, config).address

    cache = SessionCredentialCache(store, ttl_min=config.session_ttl_min)
    try:
        cache.switch_principal(principal)
    except TimesealError as e:
        fail(e)

    if action == "status":
        keys = store.keys(f"{STORE_PREFIX}{cache.active_principal}:")
        if not keys:
            print("No cached sessions.")
            return
        now = cache.clock()
        print(f"Sessions for {cache.active_principal}:\n")
        for key in keys:
            data = store.get_json(key)
            try:
                credential = SessionCredential.from_dict(data)
            except (KeyError, TypeError, ValueError):
                print(f"  {key}: unreadable")
                continue
            state = "expired" if credential.is_expired(now) else "active"
            print(f"  {credential.deployment_scope_id}: {state}")
            print(f"      Expires: {format_timestamp(credential.expiry_epoch_ms)} UTC")

    elif action == "logout":
        removed = cache.logout(cache.active_principal)
        print(f"Removed {len(removed)} cached session(s)")

    else:
        print(f"Unknown action: {action}")
        print("Available: status, logout")


def register_session_commands(subparsers):
    """Register wallet and session commands with the argument parser."""
    # wallet command
    wallet_parser = subparsers.add_parser("wallet", help="Manage the local wallet key")
    wallet_parser.add_argument("action", choices=["generate", "address"], help="Wallet action")
    wallet_parser.add_argument("--force", "-f", action="store_true", help="Overwrite an existing key")
    wallet_parser.set_defaults(func=cmd_wallet)

    # session command
    session_parser = subparsers.add_parser("session", help="Inspect or clear session credentials")
    session_parser.add_argument("action", choices=["status", "logout"], help="Session action")
    session_parser.add_argument("--principal", help="Principal address (default: wallet)")
    session_parser.set_defaults(func=cmd_session)
