"""
Policy identifier derivation.

A PolicyId binds a decryption policy to a principal, a UTC calendar day and a
scope object on the ledger:

    PolicyId = bytes(scope_object_id) || utf8("{principal}_{Y}-{M}-{D}_{purpose}")

Object ids are fixed width (32 bytes), so no separator is needed between the
two byte groups. The derivation is a pure function: no salt, no state.
"""

import re
from datetime import datetime, timezone
from typing import Tuple

from .errors import InputValidation

PURPOSE_DAILY_ACCESS = "daily_access"
PURPOSE_WORKLOG = "worklog"
PURPOSE_TAGS = (PURPOSE_DAILY_ACCESS, PURPOSE_WORKLOG)

OBJECT_ID_LENGTH = 32
_HEX_ID_RE = re.compile(r"^0x[0-9a-fA-F]{1,64}$")


def _normalize_hex_id(value: str, label: str) -> str:
    if not isinstance(value, str) or not _HEX_ID_RE.match(value.strip()):
        raise InputValidation(
            f"Invalid {label}: expected 0x-prefixed hex of at most "
            f"{OBJECT_ID_LENGTH} bytes, got {value!r}",
            field=label,
        )
    digits = value.strip()[2:].lower()
    return "0x" + digits.rjust(OBJECT_ID_LENGTH * 2, "0")


def normalize_object_id(object_id: str) -> str:
    """
    Normalize a ledger object id to its 0x-prefixed, 64-hex-digit form.

    Short ids such as ``0x6`` are left-padded with zeros.

    Raises:
        InputValidation: If the id is not 0x-prefixed hex or is too long
    """
    return _normalize_hex_id(object_id, "object_id")


def normalize_address(address: str) -> str:
    """Normalize a principal address the same way as object ids."""
    return _normalize_hex_id(address, "address")


def object_id_bytes(object_id: str) -> bytes:
    return bytes.fromhex(normalize_object_id(object_id)[2:])


def utc_day_string(clock: datetime) -> str:
    """
    Return the ``Y-M-D`` day label for ``clock`` in UTC.

    The month is zero-based (January is 0) and no component is zero padded,
    matching the identifiers already issued by the deployed clients.

    Raises:
        InputValidation: If ``clock`` is naive; local time is never assumed
    """
    if not isinstance(clock, datetime):
        raise InputValidation("clock must be a datetime", field="clock")
    if clock.tzinfo is None or clock.utcoffset() is None:
        raise InputValidation(
            "clock must be timezone-aware; naive datetimes are ambiguous",
            field="clock",
        )
    utc = clock.astimezone(timezone.utc)
    return f"{utc.year}-{utc.month - 1}-{utc.day}"


def derive_policy_id(
    principal: str,
    scope_object_id: str,
    purpose_tag: str,
    clock: datetime,
) -> bytes:
    """
    Derive the PolicyId for a principal, scope object, purpose and UTC day.

    Args:
        principal: Address of the principal the policy is issued for
        scope_object_id: Ledger object gating access (e.g. a timesheet)
        purpose_tag: One of ``daily_access`` or ``worklog``
        clock: Timezone-aware instant; only its UTC calendar day matters

    Returns:
        PolicyId bytes

    Raises:
        InputValidation: On malformed address, object id, purpose or clock
    """
    if purpose_tag not in PURPOSE_TAGS:
        raise InputValidation(
            f"Unknown purpose tag {purpose_tag!r}; expected one of {', '.join(PURPOSE_TAGS)}",
            field="purpose_tag",
        )
    address = normalize_address(principal)
    label = f"{address}_{utc_day_string(clock)}_{purpose_tag}"
    return object_id_bytes(scope_object_id) + label.encode("utf-8")


def derive_policy_id_now(principal: str, scope_object_id: str, purpose_tag: str) -> bytes:
    return derive_policy_id(principal, scope_object_id, purpose_tag, datetime.now(timezone.utc))


def policy_id_hex(policy_id: bytes) -> str:
    """Wire form of a PolicyId (lowercase hex, no prefix)."""
    return bytes(policy_id).hex()


def policy_id_from_hex(value: str) -> bytes:
    """
    Decode a hex PolicyId, tolerating an optional 0x prefix.

    Raises:
        InputValidation: If the value is not hex or too short to hold a scope id
    """
    text = value[2:] if isinstance(value, str) and value.startswith("0x") else value
    try:
        raw = bytes.fromhex(text)
    except (TypeError, ValueError):
        raise InputValidation(f"PolicyId is not valid hex: {value!r}", field="policy_id")
    if len(raw) <= OBJECT_ID_LENGTH:
        raise InputValidation("PolicyId is too short", field="policy_id")
    return raw


def parse_policy_id(policy_id: bytes) -> Tuple[str, str]:
    """
    Split a PolicyId into its scope object id and UTF-8 label.

    Returns:
        Tuple of (0x-prefixed object id, label)

    Raises:
        InputValidation: If the label is not valid UTF-8
    """
    raw = bytes(policy_id)
    if len(raw) <= OBJECT_ID_LENGTH:
        raise InputValidation("PolicyId is too short", field="policy_id")
    try:
        label = raw[OBJECT_ID_LENGTH:].decode("utf-8")
    except UnicodeDecodeError:
        raise InputValidation("PolicyId label is not UTF-8", field="policy_id")
    return "0x" + raw[:OBJECT_ID_LENGTH].hex(), label
