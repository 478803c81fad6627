"""
Pending log markers: the hand-off contract between submitter and reviewer.

A marker is a self-describing pointer to an encrypted work log. Its
portable form is the hand-off JSON, a versioned wire contract with exactly
these keys::

    blobId, sealLogId, timesheetId, timesheetCapId, employeeAddress,
    originalWorkLogData, timestamp, status

The marker id is derived from (blobId, sealLogId) so both sides agree on it
without transmitting it.
"""

import hashlib
import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import InputValidation, MarkerStoreConflict, MarkerValidationError
from .kvstore import DurableKeyValueStore
from .logging import get_logger
from .policy import normalize_address, normalize_object_id, policy_id_from_hex, policy_id_hex

logger = get_logger()

HANDOFF_KEYS = (
    "blobId",
    "sealLogId",
    "timesheetId",
    "timesheetCapId",
    "employeeAddress",
    "originalWorkLogData",
    "timestamp",
    "status",
)

STATUS_PENDING = "pending"
STATUS_ATTACHED = "attached"
STATUSES = (STATUS_PENDING, STATUS_ATTACHED)

MAX_TOMBSTONES = 1000
CLAIM_TTL_SECONDS = 300.0


def marker_id_for(blob_id: str, seal_log_id: str) -> str:
    """Stable marker id for a (blob id, hex PolicyId) pair."""
    return hashlib.sha256((blob_id + seal_log_id.lower()).encode("utf-8")).hexdigest()[:16]


@dataclass
class PendingLogMarker:
    """
    Pointer to an encrypted work log awaiting on-ledger attachment.

    Attributes:
        blob_id: Blob holding the ciphertext
        policy_id: PolicyId the ciphertext was encrypted under
        subject_record_id: Timesheet object the log belongs to
        capability_id: Timesheet capability needed to attach the log
        producing_principal: Address of the submitter
        original_payload_summary: Unencrypted work-log summary
        created_at_epoch_ms: Creation time
        status: ``pending`` or ``attached``
    """
    blob_id: str
    policy_id: bytes
    subject_record_id: str
    capability_id: str
    producing_principal: str
    original_payload_summary: Dict[str, Any] = field(default_factory=dict)
    created_at_epoch_ms: int = 0
    status: str = STATUS_PENDING

    @property
    def seal_log_id(self) -> str:
        return policy_id_hex(self.policy_id)

    @property
    def id(self) -> str:
        return marker_id_for(self.blob_id, self.seal_log_id)

    def to_handoff(self) -> Dict[str, Any]:
        return {
            "blobId": self.blob_id,
            "sealLogId": self.seal_log_id,
            "timesheetId": self.subject_record_id,
            "timesheetCapId": self.capability_id,
            "employeeAddress": self.producing_principal,
            "originalWorkLogData": self.original_payload_summary,
            "timestamp": self.created_at_epoch_ms,
            "status": self.status,
        }

    def to_handoff_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_handoff(), indent=indent)

    @classmethod
    def from_handoff(cls, data: Any) -> "PendingLogMarker":
        """
        Validate and decode one hand-off object.

        Raises:
            MarkerValidationError: Listing every missing or malformed field
        """
        if not isinstance(data, dict):
            raise MarkerValidationError("Hand-off item must be a JSON object", fields=["<item>"])

        errors: Dict[str, str] = {}
        for key in HANDOFF_KEYS:
            if key not in data:
                errors[key] = "missing"

        def check(key: str, convert: Callable[[Any], Any]) -> Any:
            if key in errors:
                return None
            try:
                return convert(data[key])
            except (InputValidation, TypeError, ValueError) as e:
                errors[key] = getattr(e, "message", str(e)) or "invalid"
                return None

        blob_id = check("blobId", _non_empty_str)
        policy_id = check("sealLogId", lambda v: policy_id_from_hex(_non_empty_str(v)))
        timesheet_id = check("timesheetId", lambda v: normalize_object_id(_non_empty_str(v)))
        cap_id = check("timesheetCapId", lambda v: normalize_object_id(_non_empty_str(v)))
        employee = check("employeeAddress", _address_str)
        summary = check("originalWorkLogData", _object)
        timestamp = check("timestamp", _epoch_ms)
        status = check("status", _status)

        if errors:
            raise MarkerValidationError(
                "Invalid hand-off marker: " + ", ".join(f"{k} ({v})" for k, v in errors.items()),
                fields=list(errors),
                errors=errors,
            )
        return cls(
            blob_id=blob_id,
            policy_id=policy_id,
            subject_record_id=timesheet_id,
            capability_id=cap_id,
            producing_principal=employee,
            original_payload_summary=summary,
            created_at_epoch_ms=timestamp,
            status=status,
        )


def _non_empty_str(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("must be a non-empty string")
    return value.strip()


def _address_str(value: Any) -> str:
    text = _non_empty_str(value)
    normalize_address(text)
    return text


def _object(value: Any) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ValueError("must be an object")
    return value


def _epoch_ms(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("must be a number")
    return int(value)


def _status(value: Any) -> str:
    if value not in STATUSES:
        raise ValueError(f"must be one of {', '.join(STATUSES)}")
    return value


@dataclass
class HandoffParseResult:
    """Outcome of parsing a hand-off batch; valid items are never discarded."""
    markers: List[PendingLogMarker] = field(default_factory=list)
    errors: List[Tuple[int, MarkerValidationError]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def parse_handoff(text: str) -> HandoffParseResult:
    """
    Parse hand-off text holding one marker object or an array of them.

    Each item is validated independently; failures are reported by index.

    Raises:
        MarkerValidationError: If the text is not JSON or not an object/array
    """
    try:
        data = json.loads(text)
    except (TypeError, json.JSONDecodeError) as e:
        raise MarkerValidationError(f"Hand-off text is not valid JSON: {e}", fields=["<json>"])

    if isinstance(data, dict):
        items = [data]
    elif isinstance(data, list):
        items = data
    else:
        raise MarkerValidationError("Hand-off must be an object or an array", fields=["<json>"])

    result = HandoffParseResult()
    for index, item in enumerate(items):
        try:
            result.markers.append(PendingLogMarker.from_handoff(item))
        except MarkerValidationError as e:
            logger.warning("Rejected hand-off item", index=index, fields=e.fields)
            result.errors.append((index, e))
    return result


class MarkerStore:
    """
    Durable set of pending markers for one principal.

    The whole set lives under a single key and every mutation is an
    optimistic compare-and-swap, retried up to ``max_retries`` times.
    Removed marker ids are tombstoned so a stale writer cannot bring them
    back. A marker being attached is claimed first; a claim older than
    ``claim_ttl`` seconds is treated as abandoned.
    """

    def __init__(
        self,
        store: DurableKeyValueStore,
        owner: str,
        max_retries: int = 8,
        claim_ttl: float = CLAIM_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.owner = normalize_address(owner)
        self.max_retries = max_retries
        self.claim_ttl = claim_ttl
        self.clock = clock
        self.key = f"markers:{self.owner}"

    def _load(self, raw: Optional[str]) -> Dict[str, Any]:
        if raw is None:
            return {"markers": {}, "processed": [], "claims": {}}
        try:
            doc = json.loads(raw)
        except json.JSONDecodeError:
            raise InputValidation(f"Marker store {self.key} is corrupted", field="store")
        doc.setdefault("markers", {})
        doc.setdefault("processed", [])
        doc.setdefault("claims", {})
        return doc

    def _update(self, mutate: Callable[[Dict[str, Any]], Any]) -> Any:
        for attempt in range(self.max_retries):
            raw = self.store.get(self.key)
            doc = self._load(raw)
            result = mutate(doc)
            new_raw = json.dumps(doc, sort_keys=True)
            if new_raw == raw:
                return result
            if self.store.compare_and_swap(self.key, raw, new_raw):
                return result
            logger.debug("Marker store update collided, retrying", attempt=attempt + 1)
        raise MarkerStoreConflict(
            f"Marker store update failed after {self.max_retries} attempts",
            key=self.key, attempts=self.max_retries,
        )

    def _snapshot(self) -> Dict[str, Any]:
        return self._load(self.store.get(self.key))

    def add(self, marker: PendingLogMarker) -> bool:
        """
        Persist ``marker``.

        Returns:
            False if it is already present or was already processed
        """
        def mutate(doc):
            if marker.id in doc["markers"] or marker.id in doc["processed"]:
                return False
            doc["markers"][marker.id] = marker.to_handoff()
            return True

        added = self._update(mutate)
        if added:
            logger.info("Marker saved", marker_id=marker.id, blob_id=marker.blob_id)
        return added

    def get(self, marker_id: str) -> Optional[PendingLogMarker]:
        data = self._snapshot()["markers"].get(marker_id)
        return PendingLogMarker.from_handoff(data) if data is not None else None

    def list_markers(self, status: Optional[str] = None) -> List[PendingLogMarker]:
        markers = [PendingLogMarker.from_handoff(d) for d in self._snapshot()["markers"].values()]
        if status:
            markers = [m for m in markers if m.status == status]
        return sorted(markers, key=lambda m: (m.created_at_epoch_ms, m.id))

    def is_processed(self, marker_id: str) -> bool:
        return marker_id in self._snapshot()["processed"]

    def mark_attached(self, marker_id: str) -> bool:
        def mutate(doc):
            data = doc["markers"].get(marker_id)
            if data is None:
                return False
            data["status"] = STATUS_ATTACHED
            return True

        return self._update(mutate)

    def claim(self, marker_id: str) -> Optional[PendingLogMarker]:
        """
        Claim a pending marker for attachment.

        Returns:
            The marker, or None if it is absent or already claimed by a
            caller whose claim has not expired
        """
        now = self.clock()

        def mutate(doc):
            data = doc["markers"].get(marker_id)
            if data is None:
                return None
            claimed_at = doc["claims"].get(marker_id)
            if claimed_at is not None and now - claimed_at < self.claim_ttl:
                return None
            doc["claims"][marker_id] = now
            return data

        data = self._update(mutate)
        return PendingLogMarker.from_handoff(data) if data is not None else None

    def release(self, marker_id: str) -> None:
        """Drop the claim on ``marker_id`` so another caller may attach it."""
        def mutate(doc):
            doc["claims"].pop(marker_id, None)

        self._update(mutate)

    def remove(self, marker_id: str) -> bool:
        """
        Remove a marker and tombstone its id.

        Returns:
            True if the marker was present
        """
        def mutate(doc):
            doc["claims"].pop(marker_id, None)
            existed = doc["markers"].pop(marker_id, None) is not None
            if marker_id not in doc["processed"]:
                doc["processed"].append(marker_id)
                del doc["processed"][:-MAX_TOMBSTONES]
            return existed

        removed = self._update(mutate)
        if removed:
            logger.info("Marker removed", marker_id=marker_id)
        return removed
