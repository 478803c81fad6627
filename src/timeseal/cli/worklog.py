"""
Work-log CLI commands for timeseal.

Commands: derive, submit, retrieve, verify
"""

import json
import sys
from datetime import datetime, timezone

from ..errors import TimesealError
from ..markers import parse_handoff
from ..orchestrator import CONTENT_JSON, CONTENT_TEXT
from ..policy import PURPOSE_TAGS, PURPOSE_WORKLOG, derive_policy_id, policy_id_hex
from .utils import fail, get_orchestrator, load_config_or_exit, load_wallet_or_exit, read_text_arg


def cmd_derive(args):
    """Derive a PolicyId"""
    if args.date:
        try:
            clock = datetime.strptime(args.date, "%Y-%m-%d").replace(tzinfo=timezone.utc)
        except ValueError:
            print(f"Error: --date must be YYYY-MM-DD, got {args.date!r}")
            sys.exit(1)
    else:
        clock = datetime.now(timezone.utc)

    try:
        policy_id = derive_policy_id(args.principal, args.scope, args.purpose, clock)
    except TimesealError as e:
        fail(e)
    print(policy_id_hex(policy_id))


def cmd_submit(args):
    """Encrypt and publish a work log, printing the hand-off JSON"""
    config = load_config_or_exit(args)
    wallet = load_wallet_or_exit(args, config)
    orchestrator = get_orchestrator(args, config, wallet)

    try:
        event = json.loads(read_text_arg(args.event))
    except json.JSONDecodeError as e:
        print(f"Error: checkout event is not valid JSON: {e}")
        sys.exit(1)
    if not isinstance(event, dict):
        print("Error: checkout event must be a JSON object")
        sys.exit(1)
    event.setdefault("employee", wallet.address)

    try:
        result = orchestrator.submit_work_log(
            event,
            timesheet_id=args.timesheet,
            timesheet_cap_id=args.cap,
            timesheet_name=args.name or "",
            reviewer_address=args.reviewer,
        )
    except TimesealError as e:
        fail(e)

    if args.output:
        with open(args.output, 'w') as f:
            f.write(result.handoff)
        print(f"Work log stored as blob {result.blob_id}")
        print(f"Hand-off written to: {args.output}")
    else:
        print(result.handoff)


def cmd_retrieve(args):
    """Download and decrypt a work log"""
    config = load_config_or_exit(args)
    wallet = load_wallet_or_exit(args, config)
    orchestrator = get_orchestrator(args, config, wallet)

    marker = None
    if args.marker:
        try:
            parsed = parse_handoff(read_text_arg(args.marker))
        except TimesealError as e:
            fail(e)
        if not parsed.markers:
            print("Error: hand-off contains no valid marker")
            sys.exit(1)
        marker = parsed.markers[0]

    blob_id = args.blob_id or (marker.blob_id if marker else None)
    scope = args.scope or (marker.subject_record_id if marker else None)
    if not blob_id or not scope:
        print("Error: a blob id and --scope are required (or pass --marker)")
        sys.exit(1)

    try:
        result = orchestrator.retrieve_work_log(
            wallet.address, blob_id, scope, marker=marker, backend_id=args.backend
        )
    except TimesealError as e:
        fail(e)

    if args.output:
        with open(args.output, 'wb') as f:
            f.write(result.plaintext)
        print(f"Decrypted {len(result.plaintext)} bytes ({result.content_type}) to: {args.output}")
    elif result.content_type == CONTENT_JSON:
        print(json.dumps(result.classification.value, indent=2))
    elif result.content_type == CONTENT_TEXT:
        print(result.classification.value)
    else:
        media = result.classification.media_type or "binary"
        print(f"Decrypted {len(result.plaintext)} bytes of {media}; use --output to save them")

    if result.warning:
        print(f"Warning: {result.warning}")
    if args.verbose:
        print(f"\n  Policy: {policy_id_hex(result.policy_id)}")
        print(f"  Download: {result.download_variant}")
        for step, ms in result.timings.items():
            print(f"  {step}: {ms} ms")


def cmd_verify(args):
    """Check today's access to a scope object"""
    config = load_config_or_exit(args)
    wallet = load_wallet_or_exit(args, config)
    orchestrator = get_orchestrator(args, config, wallet)

    try:
        ok = orchestrator.verify_daily_access(wallet.address, args.scope)
    except TimesealError as e:
        fail(e)

    if ok:
        print(f"Access verified for {wallet.address}")
    else:
        print("Access check failed: decrypted value does not match")
        sys.exit(1)


def register_worklog_commands(subparsers):
    """Register work-log commands with the argument parser."""
    # derive command
    derive_parser = subparsers.add_parser("derive", help="Derive a PolicyId")
    derive_parser.add_argument("--principal", required=True, help="Principal address")
    derive_parser.add_argument("--scope", required=True, help="Scope object id")
    derive_parser.add_argument("--purpose", choices=list(PURPOSE_TAGS), default=PURPOSE_WORKLOG,
                               help="Purpose tag (default: worklog)")
    derive_parser.add_argument("--date", help="UTC day as YYYY-MM-DD (default: today)")
    derive_parser.set_defaults(func=cmd_derive)

    # submit command
    submit_parser = subparsers.add_parser("submit", help="Encrypt and publish a work log")
    submit_parser.add_argument("event", help="Checkout event JSON, a file holding it, or - for stdin")
    submit_parser.add_argument("--timesheet", "-t", required=True, help="Timesheet object id")
    submit_parser.add_argument("--cap", required=True, help="Timesheet capability object id")
    submit_parser.add_argument("--name", "-n", help="Timesheet name")
    submit_parser.add_argument("--reviewer", "-r", help="Reviewer address to route the blob to")
    submit_parser.add_argument("--output", "-o", help="Write the hand-off JSON to a file")
    submit_parser.set_defaults(func=cmd_submit)

    # retrieve command
    retrieve_parser = subparsers.add_parser("retrieve", help="Download and decrypt a work log")
    retrieve_parser.add_argument("blob_id", nargs="?", help="Blob id")
    retrieve_parser.add_argument("--scope", "-s", help="Scope (timesheet) object id")
    retrieve_parser.add_argument("--marker", "-m", help="Hand-off JSON or file naming the log")
    retrieve_parser.add_argument("--backend", "-b", help="Blob backend id")
    retrieve_parser.add_argument("--output", "-o", help="Write decrypted bytes to a file")
    retrieve_parser.add_argument("--verbose", "-v", action="store_true", help="Show step timings")
    retrieve_parser.set_defaults(func=cmd_retrieve)

    # verify command
    verify_parser = subparsers.add_parser("verify", help="Check today's access to a scope object")
    verify_parser.add_argument("--scope", "-s", required=True, help="Scope object id")
    verify_parser.set_defaults(func=cmd_verify)
