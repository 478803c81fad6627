"""
Work-log orchestration.

Submission:  Idle -> Encrypting -> Publishing -> MarkerCreated -> HandedOff
Retrieval:   Idle -> Downloading -> Authorizing -> Decrypting
             -> Rendered | RenderedWithWarning
Either flow ends in Failed when a step raises; the step is recorded on the
error's details as ``step`` and the error propagates unchanged.

Each call runs sequentially on its calling thread. Work already persisted
(an uploaded blob, a saved marker) is never retracted.
"""

import json
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .artifact import EncryptedArtifact
from .authorizer import AccessAuthorizer
from .blobstore import BlobBackend, BlobPublisher, MemoryBackend, StoredBlobPointer, create_backend
from .config import TimesealConfig
from .errors import (
    CredentialExpired,
    InputValidation,
    PolicyIdMismatch,
    TimesealError,
)
from .gateway import EncryptionGateway
from .keyserver import KeyServerClient, create_key_server_clients
from .kvstore import DurableKeyValueStore, FileKeyValueStore
from .ledger import STRING_TYPE, JsonRpcLedgerClient, LedgerClient
from .logging import get_logger, log_context
from .markers import HandoffParseResult, MarkerStore, PendingLogMarker, STATUS_PENDING, parse_handoff
from .policy import (
    PURPOSE_DAILY_ACCESS,
    PURPOSE_WORKLOG,
    derive_policy_id,
    normalize_object_id,
    policy_id_hex,
)
from .session import SessionCredential, SessionCredentialCache, SignatureCallback

logger = get_logger()


class SubmissionState:
    IDLE = "idle"
    ENCRYPTING = "encrypting"
    PUBLISHING = "publishing"
    MARKER_CREATED = "marker_created"
    HANDED_OFF = "handed_off"
    FAILED = "failed"


class RetrievalState:
    IDLE = "idle"
    DOWNLOADING = "downloading"
    AUTHORIZING = "authorizing"
    DECRYPTING = "decrypting"
    RENDERED = "rendered"
    RENDERED_WITH_WARNING = "rendered_with_warning"
    FAILED = "failed"


CONTENT_JSON = "json"
CONTENT_TEXT = "text"
CONTENT_MEDIA = "media"
CONTENT_BINARY = "binary"

_MEDIA_SIGNATURES = [
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"%PDF-", "application/pdf"),
]


def _media_type(data: bytes) -> Optional[str]:
    for magic, mime in _MEDIA_SIGNATURES:
        if data.startswith(magic):
            return mime
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


@dataclass
class Classification:
    content_type: str
    value: Any = None
    media_type: Optional[str] = None
    warning: Optional[str] = None


def classify_plaintext(data: bytes) -> Classification:
    """
    Decide how decrypted bytes should be rendered.

    JSON first, then known media signatures, then UTF-8 text; anything
    else is opaque binary with a warning. Never raises.
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        text = None

    if text is not None:
        try:
            return Classification(CONTENT_JSON, json.loads(text))
        except ValueError:
            pass

    media = _media_type(data)
    if media:
        return Classification(CONTENT_MEDIA, data, media_type=media)
    if text is not None:
        return Classification(CONTENT_TEXT, text)
    return Classification(
        CONTENT_BINARY, data,
        warning=f"Decrypted {len(data)} bytes of unrecognized content; showing raw data",
    )


@dataclass
class CheckoutEvent:
    """A check-out event; times and duration are epoch/elapsed milliseconds."""
    employee: str
    check_in_ms: int
    check_out_ms: int
    duration_ms: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CheckoutEvent":
        """
        Build from ``{employee, check_in_time, check_out_time, duration}``;
        numeric fields may be numbers or decimal strings.

        Raises:
            InputValidation: On missing or non-numeric fields
        """
        if not isinstance(data, dict):
            raise InputValidation("Checkout event must be an object", field="event")
        employee = data.get("employee")
        if not isinstance(employee, str) or not employee:
            raise InputValidation("Checkout event needs an employee address", field="employee")
        values = {}
        for key in ("check_in_time", "check_out_time", "duration"):
            raw = data.get(key)
            try:
                if isinstance(raw, bool):
                    raise ValueError(raw)
                values[key] = int(raw)
            except (TypeError, ValueError):
                raise InputValidation(f"{key} must be an integer number of milliseconds", field=key)
        return cls(employee, values["check_in_time"], values["check_out_time"], values["duration"])


@dataclass
class SubmissionResult:
    pointer: StoredBlobPointer
    marker: PendingLogMarker
    handoff: str
    policy_id: bytes
    state: str = SubmissionState.HANDED_OFF
    timings: Dict[str, float] = field(default_factory=dict)

    @property
    def blob_id(self) -> str:
        return self.pointer.blob_id

    @property
    def seal_log_id(self) -> str:
        return policy_id_hex(self.policy_id)


@dataclass
class RetrievalResult:
    plaintext: bytes
    classification: Classification
    policy_id: bytes
    download_variant: str
    state: str = RetrievalState.RENDERED
    timings: Dict[str, float] = field(default_factory=dict)

    @property
    def content_type(self) -> str:
        return self.classification.content_type

    @property
    def warning(self) -> Optional[str]:
        return self.classification.warning


class _Pipeline:
    """Tracks the current step and its timing for one flow."""

    def __init__(self, failed_state: str):
        self.state = "idle"
        self.failed_state = failed_state
        self.timings: Dict[str, float] = {}

    @contextmanager
    def step(self, state: str):
        self.state = state
        start = time.perf_counter()
        try:
            yield
        except TimesealError as e:
            e.details.setdefault("step", state)
            logger.warning("Pipeline step failed", step=state, error=e.code)
            self.state = self.failed_state
            raise
        finally:
            self.timings[state] = round((time.perf_counter() - start) * 1000, 2)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WorkLogOrchestrator:
    """
    Composes policy derivation, encryption, blob storage, authorization and
    the marker hand-off into the end-to-end work-log flows.

    All collaborators are injected; construct one per process and share it.
    """

    def __init__(
        self,
        gateway: EncryptionGateway,
        publisher: BlobPublisher,
        authorizer: AccessAuthorizer,
        credentials: SessionCredentialCache,
        ledger: LedgerClient,
        store: DurableKeyValueStore,
        package_id: str,
        threshold: int,
        reviewer_address: Optional[str] = None,
        backend_id: Optional[str] = None,
        attach_module: str = "whitelist",
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.gateway = gateway
        self.publisher = publisher
        self.authorizer = authorizer
        self.credentials = credentials
        self.ledger = ledger
        self.store = store
        self.package_id = normalize_object_id(package_id)
        self.threshold = threshold
        self.reviewer_address = reviewer_address
        self.backend_id = backend_id
        self.attach_module = attach_module
        self.clock = clock

    def marker_store(self, principal: str) -> MarkerStore:
        return MarkerStore(self.store, principal)

    # --------- submission ----------

    def submit_work_log(
        self,
        event: Any,
        timesheet_id: str,
        timesheet_cap_id: str,
        timesheet_name: str = "",
        reviewer_address: Optional[str] = None,
    ) -> SubmissionResult:
        """
        Encrypt a check-out event, publish it and hand off a marker.

        Args:
            event: CheckoutEvent or its dict form
            timesheet_id: Timesheet object (the PolicyId scope)
            timesheet_cap_id: Capability the reviewer uses to attach the log
            timesheet_name: Human-readable timesheet name
            reviewer_address: Address to route the blob to (defaults to the configured reviewer)

        Returns:
            SubmissionResult with the hand-off JSON string

        Raises:
            InputValidation, EncryptionUnavailable, InvalidThreshold,
            BackendUnreachable, BackendRejected, MalformedResponse
        """
        if not isinstance(event, CheckoutEvent):
            event = CheckoutEvent.from_dict(event)
        normalize_object_id(timesheet_cap_id)
        now = self.clock()
        payload = {
            "employee": event.employee,
            "date_in_ms": event.check_in_ms,
            "date_out_ms": event.check_out_ms,
            "work_duration_ms": event.duration_ms,
            "timesheet_id": timesheet_id,
            "timesheet_name": timesheet_name,
        }
        pipeline = _Pipeline(SubmissionState.FAILED)

        with log_context(principal=event.employee, operation="submit"):
            with pipeline.step(SubmissionState.ENCRYPTING):
                policy_id = derive_policy_id(event.employee, timesheet_id, PURPOSE_WORKLOG, now)
                plaintext = json.dumps(payload, separators=(",", ":")).encode("utf-8")
                artifact = self.gateway.encrypt(policy_id, self.package_id, plaintext, self.threshold)

            with pipeline.step(SubmissionState.PUBLISHING):
                pointer = self.publisher.publish(
                    self.backend_id, artifact.to_bytes(), reviewer_address or self.reviewer_address or None
                )

            with pipeline.step(SubmissionState.MARKER_CREATED):
                marker = PendingLogMarker(
                    blob_id=pointer.blob_id,
                    policy_id=policy_id,
                    subject_record_id=normalize_object_id(timesheet_id),
                    capability_id=normalize_object_id(timesheet_cap_id),
                    producing_principal=event.employee,
                    original_payload_summary=payload,
                    created_at_epoch_ms=int(now.timestamp() * 1000),
                    status=STATUS_PENDING,
                )
                self.marker_store(event.employee).add(marker)

            pipeline.state = SubmissionState.HANDED_OFF
            logger.info("Work log handed off", blob_id=pointer.blob_id, marker_id=marker.id)

        return SubmissionResult(
            pointer=pointer,
            marker=marker,
            handoff=marker.to_handoff_json(),
            policy_id=policy_id,
            state=pipeline.state,
            timings=pipeline.timings,
        )

    # --------- retrieval ----------

    def _resolve_policy_id(self, artifact: EncryptedArtifact, marker: Optional[PendingLogMarker]) -> bytes:
        if marker is None:
            return artifact.policy_id
        if marker.policy_id != artifact.policy_id:
            raise PolicyIdMismatch(
                "Marker PolicyId does not match the ciphertext header",
                marker_policy_id=marker.seal_log_id,
                header_policy_id=policy_id_hex(artifact.policy_id),
            )
        return marker.policy_id

    def retrieve_work_log(
        self,
        principal: str,
        blob_id: str,
        scope_object_id: str,
        marker: Optional[PendingLogMarker] = None,
        backend_id: Optional[str] = None,
        request_signature: Optional[SignatureCallback] = None,
    ) -> RetrievalResult:
        """
        Download, authorize and decrypt a work log, then classify it.

        A CredentialExpired failure is retried once with a fresh credential.

        Raises:
            BackendUnreachable, BackendRejected, MalformedResponse,
            PolicyIdMismatch, AccessDenied, CredentialExpired,
            CredentialSignatureDeclined, KeyFetchTimeout, DecryptionFailed
        """
        pipeline = _Pipeline(RetrievalState.FAILED)

        with log_context(principal=principal, operation="retrieve", blob_id=blob_id):
            with pipeline.step(RetrievalState.DOWNLOADING):
                download = self.publisher.download(blob_id, backend_id or self.backend_id)
                artifact = EncryptedArtifact.from_bytes(download.data)
                policy_id = self._resolve_policy_id(artifact, marker)

            with pipeline.step(RetrievalState.AUTHORIZING):
                credential = self.credentials.get_credential(
                    principal, self.package_id, request_signature=request_signature
                )

            with pipeline.step(RetrievalState.DECRYPTING):
                plaintext = self._decrypt_with_renewal(
                    artifact, scope_object_id, credential, request_signature
                )

            classification = classify_plaintext(plaintext)
            if classification.warning:
                logger.warning(classification.warning)
                pipeline.state = RetrievalState.RENDERED_WITH_WARNING
            else:
                pipeline.state = RetrievalState.RENDERED
            logger.info("Work log decrypted", content_type=classification.content_type,
                        variant=download.variant)

        return RetrievalResult(
            plaintext=plaintext,
            classification=classification,
            policy_id=policy_id,
            download_variant=download.variant,
            state=pipeline.state,
            timings=pipeline.timings,
        )

    def _decrypt_with_renewal(
        self,
        artifact: EncryptedArtifact,
        scope_object_id: str,
        credential: SessionCredential,
        request_signature: Optional[SignatureCallback],
    ) -> bytes:
        try:
            return self.authorizer.authorize_and_decrypt(
                artifact, self.package_id, scope_object_id, credential
            )
        except CredentialExpired:
            logger.info("Session credential expired, requesting a new one")
            self.credentials.invalidate(credential.principal, self.package_id, credential.scope_object_id)
            fresh = self.credentials.get_credential(
                credential.principal, self.package_id, request_signature=request_signature
            )
            return self.authorizer.authorize_and_decrypt(artifact, self.package_id, scope_object_id, fresh)

    # --------- reviewer hand-off ----------

    def import_handoff(self, reviewer: str, text: str) -> HandoffParseResult:
        """
        Parse hand-off text and save every valid marker to the reviewer's store.

        Invalid items are reported in the result without discarding the rest.
        """
        result = parse_handoff(text)
        store = self.marker_store(reviewer)
        for marker in result.markers:
            store.add(marker)
        logger.info("Hand-off imported", accepted=len(result.markers), rejected=len(result.errors))
        return result

    def attach_marker(self, reviewer: str, marker_id: str) -> Optional[str]:
        """
        Attach a pending marker on the ledger, then remove it locally.

        The marker is claimed before the ledger call so concurrent callers
        attach it at most once; the claim is released if the call fails.
        The producer's copy of the marker, when it lives in the same store,
        is tombstoned as well.

        Returns:
            Transaction digest, or None when the marker was already processed
            or is being attached by another caller
        """
        store = self.marker_store(reviewer)
        marker = store.claim(marker_id)
        if marker is None:
            logger.info("Marker already processed or being attached", marker_id=marker_id)
            return None

        with log_context(principal=reviewer, operation="attach", marker_id=marker_id):
            try:
                digest = self.ledger.execute_move_call(
                    reviewer,
                    f"{self.package_id}::{self.attach_module}::attach_log_marker",
                    [marker.subject_record_id, marker.capability_id, marker.blob_id, marker.seal_log_id],
                )
            except TimesealError:
                store.release(marker_id)
                raise
            store.mark_attached(marker_id)
            store.remove(marker_id)
            producer = self.marker_store(marker.producing_principal)
            if producer.key != store.key:
                producer.remove(marker_id)
            logger.info("Marker attached on ledger", blob_id=marker.blob_id, digest=digest)
        return digest

    def list_pending(self, principal: str) -> List[PendingLogMarker]:
        return self.marker_store(principal).list_markers(status=STATUS_PENDING)

    def list_attached_blob_ids(self, timesheet_id: str) -> List[str]:
        """Blob ids attached to a timesheet (its string-named dynamic fields)."""
        return [
            str(name.value)
            for name in self.ledger.get_dynamic_field_names(timesheet_id)
            if name.type == STRING_TYPE
        ]

    # --------- daily access ----------

    def verify_daily_access(
        self,
        principal: str,
        scope_object_id: str,
        request_signature: Optional[SignatureCallback] = None,
    ) -> bool:
        """
        Prove today's access by encrypting one byte under the ``daily_access``
        PolicyId and decrypting it back.

        Raises:
            AccessDenied: If the principal is not authorized for the scope
        """
        with log_context(principal=principal, operation="daily_access"):
            policy_id = derive_policy_id(principal, scope_object_id, PURPOSE_DAILY_ACCESS, self.clock())
            artifact = self.gateway.encrypt(policy_id, self.package_id, b"\x01", self.threshold)
            credential = self.credentials.get_credential(
                principal, self.package_id, request_signature=request_signature
            )
            plaintext = self._decrypt_with_renewal(artifact, scope_object_id, credential, request_signature)
        return plaintext == b"\x01"


def build_orchestrator(
    config: TimesealConfig,
    request_signature: Optional[SignatureCallback] = None,
    ledger: Optional[LedgerClient] = None,
    key_servers: Optional[List[KeyServerClient]] = None,
    backends: Optional[List[BlobBackend]] = None,
    store: Optional[DurableKeyValueStore] = None,
) -> WorkLogOrchestrator:
    """
    Wire a WorkLogOrchestrator from configuration.

    Any collaborator passed explicitly replaces the one the config would build.

    Raises:
        InputValidation: If the config lacks a package id, ledger or key servers
    """
    config.validate()
    if not config.package_id:
        raise InputValidation("package_id is not configured", field="package_id")

    if ledger is None:
        if not config.ledger_rpc_url:
            raise InputValidation("ledger_rpc_url is not configured", field="ledger_rpc_url")
        ledger = JsonRpcLedgerClient(config.ledger_rpc_url)
    if key_servers is None:
        key_servers = create_key_server_clients(
            [k.to_dict() for k in config.key_servers], timeout=config.key_fetch_timeout
        )
    if not key_servers:
        raise InputValidation("No key servers configured", field="key_servers")
    if backends is None:
        backends = [create_backend(entry) for entry in config.backend_entries()] or [MemoryBackend()]
    if store is None:
        store = FileKeyValueStore(config.data_path / "store.json")

    gateway = EncryptionGateway(
        key_servers,
        recipient_set_version=config.recipient_set_version,
        fetch_timeout=config.key_fetch_timeout,
    )
    return WorkLogOrchestrator(
        gateway=gateway,
        publisher=BlobPublisher(backends),
        authorizer=AccessAuthorizer(gateway, ledger, approve_module=config.approve_module),
        credentials=SessionCredentialCache(store, request_signature, ttl_min=config.session_ttl_min),
        ledger=ledger,
        store=store,
        package_id=config.package_id,
        threshold=config.threshold,
        reviewer_address=config.reviewer_address or None,
        attach_module=config.attach_module,
    )
