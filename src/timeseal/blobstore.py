"""
Blob storage for ciphertext.

Backends are registered by kind and addressed by id:

- ``walrus``: publisher/aggregator HTTP API
      PUT {publisher}/v1/blobs?epochs=N[&send_object_to=ADDR]
      GET {aggregator}/v1/blobs/{blob_id}
- ``memory``: process-local, for tests and offline use

Uploads are a single PUT; nothing is chunked or resumed.
"""

import base64
import hashlib
import json
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Type
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from .errors import BackendRejected, BackendUnreachable, InputValidation, MalformedResponse
from .logging import get_logger
from .policy import normalize_address

logger = get_logger()

DEFAULT_TIMEOUT = 15.0
DEFAULT_EPOCHS = 1

VARIANT_LITERAL = "literal"
VARIANT_URL_ENCODED = "url_encoded"


@dataclass(frozen=True)
class StoredBlobPointer:
    """Immutable pointer to an uploaded blob."""
    blob_id: str
    backend_id: str


@dataclass
class DownloadResult:
    data: bytes
    blob_id: str
    backend_id: str
    variant: str = VARIANT_LITERAL


def extract_blob_id(response: Any) -> str:
    """
    Pull the blob id out of a publisher response.

    Known shapes, in order: ``blob_id``, ``id``,
    ``alreadyCertified.blobId``, ``newlyCreated.blobObject.blobId``.

    Raises:
        MalformedResponse: If none of the shapes carries a non-empty string id
    """
    paths = [
        ("blob_id",),
        ("id",),
        ("alreadyCertified", "blobId"),
        ("newlyCreated", "blobObject", "blobId"),
    ]
    for path in paths:
        candidate = response
        for key in path:
            candidate = candidate.get(key) if isinstance(candidate, dict) else None
        if isinstance(candidate, str) and candidate:
            return candidate
    raise MalformedResponse(
        "Upload response carries no recognizable blob id",
        body=json.dumps(response, default=str)[:500],
    )


class BlobBackend(ABC):
    """Abstract blob backend."""

    kind = "abstract"

    def __init__(self, backend_id: str):
        self.backend_id = backend_id

    @abstractmethod
    def publish(self, data: bytes, route_to: Optional[str] = None) -> str:
        """
        Upload ``data`` and return its blob id.

        Raises:
            BackendUnreachable: On network errors or timeout
            BackendRejected: On non-2xx responses (status and body captured)
            MalformedResponse: If the response carries no blob id
        """
        pass

    @abstractmethod
    def download(self, blob_id: str) -> DownloadResult:
        pass


class WalrusBackend(BlobBackend):
    """Walrus publisher/aggregator pair."""

    kind = "walrus"

    def __init__(
        self,
        backend_id: str,
        publisher_url: str,
        aggregator_url: str,
        epochs: int = DEFAULT_EPOCHS,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        super().__init__(backend_id)
        self.publisher_url = publisher_url.rstrip("/")
        self.aggregator_url = aggregator_url.rstrip("/")
        self.epochs = epochs
        self.timeout = timeout

    def _send(self, request: Request) -> bytes:
        try:
            with urlopen(request, timeout=self.timeout) as response:
                return response.read()
        except HTTPError as e:
            body = e.read().decode("utf-8", errors="replace") if e.fp else ""
            raise BackendRejected(
                f"Blob backend {self.backend_id} answered {e.code}",
                backend_id=self.backend_id, status=e.code, body=body,
            )
        except (URLError, OSError) as e:
            raise BackendUnreachable(
                f"Blob backend {self.backend_id} unreachable: {getattr(e, 'reason', e)}",
                backend_id=self.backend_id,
            )

    def publish(self, data: bytes, route_to: Optional[str] = None) -> str:
        params = {"epochs": self.epochs}
        if route_to:
            params["send_object_to"] = route_to
        request = Request(
            f"{self.publisher_url}/v1/blobs?{urlencode(params)}",
            data=bytes(data),
            headers={"Content-Type": "application/octet-stream"},
            method="PUT",
        )
        raw = self._send(request)
        try:
            body = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise MalformedResponse(
                "Upload response is not JSON",
                backend_id=self.backend_id, body=raw[:500].decode("utf-8", errors="replace"),
            )
        return extract_blob_id(body)

    def _get(self, path_id: str) -> bytes:
        return self._send(Request(f"{self.aggregator_url}/v1/blobs/{path_id}", method="GET"))

    def download(self, blob_id: str) -> DownloadResult:
        """
        Fetch a blob; on 404, retry once with the URL-encoded id if it differs.
        """
        try:
            return DownloadResult(self._get(blob_id), blob_id, self.backend_id, VARIANT_LITERAL)
        except BackendRejected as e:
            encoded = quote(blob_id, safe="")
            if e.status != 404 or encoded == blob_id:
                raise
            logger.info("Blob not found by literal id, retrying URL-encoded", blob_id=blob_id)
        return DownloadResult(self._get(encoded), blob_id, self.backend_id, VARIANT_URL_ENCODED)


class MemoryBackend(BlobBackend):
    """Content-addressed in-memory backend."""

    kind = "memory"

    def __init__(self, backend_id: str = "memory"):
        super().__init__(backend_id)
        self._blobs: Dict[str, bytes] = {}
        self._routes: Dict[str, Optional[str]] = {}
        self._lock = threading.Lock()

    def publish(self, data: bytes, route_to: Optional[str] = None) -> str:
        digest = hashlib.sha256(bytes(data)).digest()
        with self._lock:
            blob_id = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
            self._blobs[blob_id] = bytes(data)
            self._routes[blob_id] = route_to
            return blob_id

    def routed_to(self, blob_id: str) -> Optional[str]:
        return self._routes.get(blob_id)

    def download(self, blob_id: str) -> DownloadResult:
        with self._lock:
            data = self._blobs.get(blob_id)
        if data is None:
            raise BackendRejected(
                f"Blob {blob_id} not found", backend_id=self.backend_id, status=404, body="not found"
            )
        return DownloadResult(data, blob_id, self.backend_id, VARIANT_LITERAL)


# Registry of backend kinds
_backend_kinds: Dict[str, Type[BlobBackend]] = {}


def register_backend_kind(kind: str, backend_class: Type[BlobBackend]) -> None:
    """
    Register a blob backend implementation.

    Args:
        kind: Backend kind (e.g., "walrus", "memory")
        backend_class: Class constructed with the backend's config entry
    """
    _backend_kinds[kind.lower()] = backend_class


register_backend_kind(WalrusBackend.kind, WalrusBackend)
register_backend_kind(MemoryBackend.kind, MemoryBackend)


def create_backend(entry: Dict[str, Any]) -> BlobBackend:
    """
    Build a backend from a config entry ``{"kind", "backend_id", ...}``.

    Raises:
        InputValidation: If the kind is unknown
    """
    options = dict(entry)
    kind = str(options.pop("kind", "walrus")).lower()
    if kind not in _backend_kinds:
        available = ", ".join(sorted(_backend_kinds)) or "none"
        raise InputValidation(f"Unknown blob backend kind '{kind}'. Available: {available}", field="kind")
    return _backend_kinds[kind](**options)


class BlobPublisher:
    """Publishes ciphertext to, and downloads it from, the configured backends."""

    def __init__(self, backends: List[BlobBackend]):
        if not backends:
            raise InputValidation("At least one blob backend is required", field="backends")
        self.backends = list(backends)

    def backend(self, backend_id: Optional[str] = None) -> BlobBackend:
        """Select a backend by id; unknown ids fall back to the first backend."""
        if backend_id is None:
            return self.backends[0]
        for backend in self.backends:
            if backend.backend_id == backend_id:
                return backend
        logger.warning("Unknown blob backend, using default",
                       requested=backend_id, default=self.backends[0].backend_id)
        return self.backends[0]

    def publish(
        self,
        backend_id: Optional[str],
        data: bytes,
        route_to_principal: Optional[str] = None,
    ) -> StoredBlobPointer:
        """
        Upload ``data`` and return a pointer to it.

        Args:
            backend_id: Backend to use (None or unknown selects the default)
            data: Ciphertext bytes
            route_to_principal: Address the backend should associate the blob with
        """
        if not isinstance(data, (bytes, bytearray)) or not data:
            raise InputValidation("Blob data must be non-empty bytes", field="data")
        route_to = normalize_address(route_to_principal) if route_to_principal else None
        backend = self.backend(backend_id)
        with logger.timed("blob upload"):
            blob_id = backend.publish(bytes(data), route_to)
        logger.info("Blob stored", blob_id=blob_id, backend_id=backend.backend_id, size=len(data))
        return StoredBlobPointer(blob_id=blob_id, backend_id=backend.backend_id)

    def download(self, blob_id: str, backend_id: Optional[str] = None) -> DownloadResult:
        if not isinstance(blob_id, str) or not blob_id.strip():
            raise InputValidation("blob_id must be a non-empty string", field="blob_id")
        backend = self.backend(backend_id)
        with logger.timed("blob download"):
            return backend.download(blob_id.strip())
