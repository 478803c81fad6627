"""
Reviewer hand-off CLI commands for timeseal.

Commands: markers
"""

import sys

from ..errors import TimesealError
from ..markers import MarkerStore, parse_handoff
from .utils import (
    fail,
    format_id,
    format_timestamp,
    get_orchestrator,
    get_store,
    load_config_or_exit,
    load_wallet_or_exit,
    read_text_arg,
)


def _owner(args, config):
    if getattr(args, 'owner', None):
        return args.owner
    return load_wallet_or_exit(args, config).address


def cmd_markers(args):
    """Manage pending log markers"""
    action = args.action
    config = load_config_or_exit(args)

    try:
        store = MarkerStore(get_store(config), _owner(args, config))
    except TimesealError as e:
        fail(e)

    if action == "import":
        if not args.source:
            print("Error: a hand-off file, JSON text or - is required for import")
            sys.exit(1)
        try:
            result = parse_handoff(read_text_arg(args.source))
            added = sum(1 for marker in result.markers if store.add(marker))
        except TimesealError as e:
            fail(e)

        print(f"Imported {added} marker(s), {len(result.markers) - added} already known")
        for index, error in result.errors:
            print(f"  Item {index} rejected: {', '.join(error.fields)}")
        if result.errors:
            sys.exit(1)

    elif action == "list":
        try:
            markers = store.list_markers(status=args.status)
        except TimesealError as e:
            fail(e)

        if not markers:
            print("No pending markers.")
            return

        print(f"Markers for {store.owner}:\n")
        for marker in markers:
            print(f"  {marker.id}  [{marker.status}]")
            print(f"      Blob: {marker.blob_id}")
            print(f"      Timesheet: {format_id(marker.subject_record_id, 18)}")
            print(f"      Employee: {marker.producing_principal}")
            print(f"      Created: {format_timestamp(marker.created_at_epoch_ms)}")

    elif action == "attach":
        if not args.id:
            print("Error: --id required for attach")
            sys.exit(1)
        wallet = load_wallet_or_exit(args, config)
        orchestrator = get_orchestrator(args, config, wallet)
        try:
            digest = orchestrator.attach_marker(wallet.address, args.id)
        except TimesealError as e:
            fail(e)
        if digest is None:
            print(f"Marker {args.id} already processed; nothing to attach")
        else:
            print(f"Attached marker {args.id}")
            print(f"  Transaction: {digest}")

    elif action == "remove":
        if not args.id:
            print("Error: --id required for remove")
            sys.exit(1)
        try:
            removed = store.remove(args.id)
        except TimesealError as e:
            fail(e)
        if removed:
            print(f"Removed marker {args.id}")
        else:
            print(f"Marker {args.id} not found")

    else:
        print(f"Unknown action: {action}")
        print("Available: import, list, attach, remove")


def register_marker_commands(subparsers):
    """Register marker commands with the argument parser."""
    markers_parser = subparsers.add_parser("markers", help="Manage pending log markers")
    markers_parser.add_argument("action", choices=["import", "list", "attach", "remove"],
                                help="Marker action")
    markers_parser.add_argument("source", nargs="?", help="Hand-off JSON, a file holding it, or - (import)")
    markers_parser.add_argument("--id", help="Marker id (attach, remove)")
    markers_parser.add_argument("--owner", help="Address whose markers to manage (default: wallet)")
    markers_parser.add_argument("--status", choices=["pending", "attached"], help="Filter by status")
    markers_parser.set_defaults(func=cmd_markers)
