"""
Ledger collaborator.

The core touches the ledger only through three narrow capabilities:
object reads (scope metadata for authorization proofs), Move-call
submission (reviewer attaching a marker), and dynamic-field listing
(attached log ids on a timesheet).

Implementations:
- InMemoryLedger: a process-local double with pluggable Move handlers
- JsonRpcLedgerClient: read-only client for a full node's JSON-RPC API
"""

import hashlib
import itertools
import json
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .errors import InputValidation, LedgerError, MalformedResponse
from .logging import get_logger
from .policy import normalize_address, normalize_object_id

logger = get_logger()

OWNER_SHARED = "shared"
OWNER_ADDRESS = "address"
OWNER_IMMUTABLE = "immutable"

STRING_TYPE = "0x1::string::String"


@dataclass
class LedgerObject:
    """
    Snapshot of an on-ledger object.

    Attributes:
        object_id: Normalized object id
        type: Fully qualified Move type
        version: Current version
        digest: Current object digest (raw bytes)
        owner: One of ``shared``, ``address``, ``immutable``
        initial_shared_version: Version at which a shared object became shared
        owner_address: Owning address for address-owned objects
        fields: Move struct fields as decoded JSON
    """
    object_id: str
    type: str
    version: int
    digest: bytes
    owner: str = OWNER_SHARED
    initial_shared_version: Optional[int] = None
    owner_address: Optional[str] = None
    fields: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_shared(self) -> bool:
        return self.owner == OWNER_SHARED


@dataclass(frozen=True)
class DynamicFieldName:
    type: str
    value: Any


@dataclass
class MoveCallRecord:
    """A Move call executed against the in-memory ledger."""
    digest: str
    sender: str
    target: str
    arguments: List[Any]


class LedgerClient(ABC):
    """Abstract ledger collaborator."""

    @abstractmethod
    def get_object(self, object_id: str) -> LedgerObject:
        """
        Read an object by id.

        Raises:
            LedgerError: If the object does not exist or the read fails
        """
        pass

    @abstractmethod
    def execute_move_call(self, sender: str, target: str, arguments: List[Any]) -> str:
        """
        Submit a Move call on behalf of ``sender`` and wait for finality.

        Args:
            sender: Address signing the transaction
            target: ``{package}::{module}::{function}``
            arguments: Object ids and pure values in call order

        Returns:
            Transaction digest
        """
        pass

    @abstractmethod
    def get_dynamic_field_names(self, object_id: str) -> List[DynamicFieldName]:
        pass


MoveHandler = Callable[["InMemoryLedger", str, List[Any]], None]


class InMemoryLedger(LedgerClient):
    """
    Process-local ledger double.

    Move calls are dispatched by ``module::function`` to registered
    handlers; the timesheet ``attach_log_marker`` entry point is built in.
    """

    def __init__(self):
        self._objects: Dict[str, LedgerObject] = {}
        self._dynamic_fields: Dict[str, List[DynamicFieldName]] = {}
        self._handlers: Dict[str, MoveHandler] = {}
        self._lock = threading.RLock()
        self._counter = itertools.count(1)
        self.transactions: List[MoveCallRecord] = []
        self.register_handler("whitelist::attach_log_marker", _attach_log_marker)

    def register_handler(self, module_function: str, handler: MoveHandler) -> None:
        self._handlers[module_function] = handler

    def _next_digest(self, seed: str) -> str:
        return hashlib.sha256(f"{seed}:{next(self._counter)}".encode()).hexdigest()

    def put_object(self, obj: LedgerObject) -> LedgerObject:
        with self._lock:
            obj.object_id = normalize_object_id(obj.object_id)
            self._objects[obj.object_id] = obj
            return obj

    def create_object(
        self,
        object_id: str,
        object_type: str,
        fields: Optional[Dict[str, Any]] = None,
        owner: str = OWNER_SHARED,
        owner_address: Optional[str] = None,
    ) -> LedgerObject:
        """Create an object at version 1 (shared objects become shared at version 1)."""
        digest = bytes.fromhex(self._next_digest(object_id))
        return self.put_object(LedgerObject(
            object_id=object_id,
            type=object_type,
            version=1,
            digest=digest,
            owner=owner,
            initial_shared_version=1 if owner == OWNER_SHARED else None,
            owner_address=normalize_address(owner_address) if owner_address else None,
            fields=dict(fields or {}),
        ))

    def get_object(self, object_id: str) -> LedgerObject:
        with self._lock:
            obj = self._objects.get(normalize_object_id(object_id))
            if obj is None:
                raise LedgerError(f"Object not found: {object_id}", object_id=object_id)
            return obj

    def bump(self, object_id: str) -> None:
        """Record a mutation of an object (new version and digest)."""
        with self._lock:
            obj = self.get_object(object_id)
            obj.version += 1
            obj.digest = bytes.fromhex(self._next_digest(obj.object_id))

    def add_dynamic_field(self, object_id: str, name: DynamicFieldName) -> None:
        with self._lock:
            key = self.get_object(object_id).object_id
            self._dynamic_fields.setdefault(key, []).append(name)

    def get_dynamic_field_names(self, object_id: str) -> List[DynamicFieldName]:
        with self._lock:
            key = self.get_object(object_id).object_id
            return list(self._dynamic_fields.get(key, []))

    def execute_move_call(self, sender: str, target: str, arguments: List[Any]) -> str:
        parts = target.split("::")
        if len(parts) != 3:
            raise LedgerError(f"Invalid Move call target: {target}", target=target)
        handler = self._handlers.get(f"{parts[1]}::{parts[2]}")
        if handler is None:
            raise LedgerError(f"No such function: {target}", target=target)

        with self._lock:
            handler(self, normalize_address(sender), list(arguments))
            digest = self._next_digest(target)
            self.transactions.append(MoveCallRecord(digest, sender, target, list(arguments)))
        logger.debug("Move call executed", target=target, digest=digest)
        return digest


def _attach_log_marker(ledger: InMemoryLedger, sender: str, arguments: List[Any]) -> None:
    """``attach_log_marker(timesheet, cap, blob_id, seal_log_id)``"""
    if len(arguments) != 4:
        raise LedgerError("attach_log_marker expects 4 arguments", count=len(arguments))
    timesheet_id, cap_id, blob_id, seal_log_id = arguments
    timesheet = ledger.get_object(timesheet_id)
    cap = ledger.get_object(cap_id)

    if cap.owner_address != sender:
        raise LedgerError("Sender does not own the timesheet capability", cap_id=cap_id)
    if normalize_object_id(str(cap.fields.get("for", "0x0"))) != timesheet.object_id:
        raise LedgerError("Capability does not govern this timesheet", cap_id=cap_id)

    names = ledger.get_dynamic_field_names(timesheet.object_id)
    if any(n.value == blob_id for n in names):
        raise LedgerError("Log marker already attached", blob_id=blob_id)

    ledger.add_dynamic_field(timesheet.object_id, DynamicFieldName(STRING_TYPE, blob_id))
    timesheet.fields.setdefault("log_markers", {})[blob_id] = seal_log_id
    ledger.bump(timesheet.object_id)


_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


def _b58decode(text: str) -> bytes:
    value = 0
    for char in text:
        index = _B58_ALPHABET.find(char)
        if index < 0:
            raise MalformedResponse(f"Invalid base58 digest: {text!r}")
        value = value * 58 + index
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    leading = len(text) - len(text.lstrip("1"))
    return b"\x00" * leading + raw


class JsonRpcLedgerClient(LedgerClient):
    """
    Read-only ledger client over a full node's JSON-RPC endpoint.

    Transaction submission needs the principal's wallet to sign, so
    ``execute_move_call`` is not available here.
    """

    def __init__(self, rpc_url: str, timeout: float = 15.0):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self._ids = itertools.count(1)

    def _call(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        request = Request(
            self.rpc_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urlopen(request, timeout=self.timeout) as response:
                body = json.loads(response.read().decode("utf-8"))
        except HTTPError as e:
            raise LedgerError(f"Ledger RPC error ({e.code})", status=e.code, method=method)
        except (URLError, OSError) as e:
            raise LedgerError(f"Ledger RPC unreachable: {getattr(e, 'reason', e)}", method=method)
        except json.JSONDecodeError:
            raise MalformedResponse("Ledger RPC returned non-JSON", method=method)

        if not isinstance(body, dict):
            raise MalformedResponse("Ledger RPC returned unexpected JSON", method=method)
        if "error" in body:
            raise LedgerError(f"Ledger RPC error: {body['error']}", method=method)
        return body.get("result")

    def get_object(self, object_id: str) -> LedgerObject:
        object_id = normalize_object_id(object_id)
        result = self._call("sui_getObject", [object_id, {"showContent": True, "showOwner": True}])
        data = result.get("data") if isinstance(result, dict) else None
        if not data:
            raise LedgerError(f"Object not found: {object_id}", object_id=object_id)
        if not isinstance(data, dict):
            raise MalformedResponse("Unexpected object shape: data is not an object", object_id=object_id)

        try:
            raw_owner = data.get("owner")
            owner, initial_shared_version, owner_address = OWNER_IMMUTABLE, None, None
            if isinstance(raw_owner, dict) and "Shared" in raw_owner:
                owner = OWNER_SHARED
                initial_shared_version = int(raw_owner["Shared"]["initial_shared_version"])
            elif isinstance(raw_owner, dict) and "AddressOwner" in raw_owner:
                owner = OWNER_ADDRESS
                owner_address = normalize_address(raw_owner["AddressOwner"])

            content = data.get("content") or {}
            return LedgerObject(
                object_id=normalize_object_id(data["objectId"]),
                type=data.get("type") or content.get("type", ""),
                version=int(data["version"]),
                digest=_b58decode(data["digest"]),
                owner=owner,
                initial_shared_version=initial_shared_version,
                owner_address=owner_address,
                fields=content.get("fields") or {},
            )
        except (KeyError, TypeError, ValueError, AttributeError, InputValidation) as e:
            raise MalformedResponse(f"Unexpected object shape: {e}", object_id=object_id)

    def get_dynamic_field_names(self, object_id: str) -> List[DynamicFieldName]:
        object_id = normalize_object_id(object_id)
        names: List[DynamicFieldName] = []
        cursor = None
        while True:
            page = self._call("suix_getDynamicFields", [object_id, cursor, 50]) or {}
            entries = page.get("data", []) if isinstance(page, dict) else None
            if not isinstance(entries, list):
                raise MalformedResponse("Unexpected dynamic fields page", object_id=object_id)
            for entry in entries:
                name = (entry.get("name") or {}) if isinstance(entry, dict) else None
                if not isinstance(name, dict):
                    raise MalformedResponse("Unexpected dynamic field entry", object_id=object_id)
                names.append(DynamicFieldName(name.get("type", ""), name.get("value")))
            if not page.get("hasNextPage"):
                return names
            cursor = page.get("nextCursor")

    def execute_move_call(self, sender: str, target: str, arguments: List[Any]) -> str:
        raise LedgerError(
            "This ledger client is read-only; submit the transaction from the principal's wallet",
            target=target,
        )
