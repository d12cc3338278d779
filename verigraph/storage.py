"""Storage collaborators for asset bytes and metadata records.

Every backend implements the same two calls:

  ``put(name, body, kind) -> location``
  ``get(location, kind) -> bytes | dict``

``kind`` is ``StorageKind.META`` for AssetRecord JSON (``body`` is a dict) and
``StorageKind.ASSET`` for raw or encrypted bytes. Backends are interchangeable;
the location string is the only thing the engine keeps.

Backends:
- ``PinningStorage``: a content-addressed pinning service over HTTP
  (``pinJSONToIPFS`` / ``pinFileToIPFS``), read back through its gateway.
  Locations are ``ipfs://<cid>``.
- ``ObjectStore``: a filesystem CAS following ``<root>/<kind>/<digest>.*``.
  Locations are ``store://<kind>/<digest>``.
- ``MemoryStorage``: a dict, for tests and dry runs.
"""

from __future__ import annotations

import hashlib
import json
import pathlib
import re
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Tuple, Union, runtime_checkable

import httpx

from verigraph.config import StorageConfig
from verigraph.core import ensure_ipfs
from verigraph.errors import StorageError
from verigraph.observability import EngineLayer, get_logger
from verigraph.schema import LocationProtocol

logger = get_logger("storage", EngineLayer.STORAGE)

SHA256_HEX_RE = re.compile(r"^[a-f0-9]{64}$")

Body = Union[bytes, Dict[str, Any]]


class StorageKind(Enum):
    META = "meta"
    ASSET = "asset"


def content_id(body: bytes) -> str:
    """Content-addressed id of ``body`` (lowercase sha256 hex)."""
    return hashlib.sha256(body).hexdigest()


def _encode(body: Body, kind: StorageKind) -> bytes:
    if kind is StorageKind.META:
        if not isinstance(body, dict):
            raise StorageError("metadata body must be a JSON object")
        return json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")
    if not isinstance(body, (bytes, bytearray)):
        raise StorageError("asset body must be bytes")
    return bytes(body)


def _decode(raw: bytes, kind: StorageKind, location: str) -> Body:
    if kind is StorageKind.ASSET:
        return raw
    try:
        obj = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise StorageError(f"stored metadata at {location} is not JSON: {exc}") from exc
    if not isinstance(obj, dict):
        raise StorageError(f"stored metadata at {location} is not a JSON object")
    return obj


def location_protocol(location: str) -> LocationProtocol:
    """Protocol tag recorded next to a storage location."""
    if location.startswith("ipfs://"):
        return LocationProtocol.IPFS
    if location.startswith("https://") or location.startswith("http://"):
        return LocationProtocol.HTTPS
    return LocationProtocol.OBJECT_STORE


@runtime_checkable
class Storage(Protocol):
    def put(self, name: str, body: Body, kind: StorageKind) -> str:
        ...

    def get(self, location: str, kind: StorageKind) -> Body:
        ...


class GuardedStorage:
    """Storage wrapper that turns any backend failure into ``StorageError``."""

    def __init__(self, inner: Storage):
        self._inner = inner

    @property
    def inner(self) -> Storage:
        return self._inner

    def put(self, name: str, body: Body, kind: StorageKind) -> str:
        try:
            return self._inner.put(name, body, kind)
        except StorageError:
            raise
        except Exception as exc:
            logger.error("Storage put failed", error_code=type(exc).__name__, operation="put", kind=kind.value)
            raise StorageError(f"put of {name} failed: {exc}") from exc

    def get(self, location: str, kind: StorageKind) -> Body:
        try:
            return self._inner.get(location, kind)
        except StorageError:
            raise
        except Exception as exc:
            logger.error("Storage get failed", error_code=type(exc).__name__, operation="get", location=location)
            raise StorageError(f"get of {location} failed: {exc}") from exc


# =============================================================================
# PINNING SERVICE
# =============================================================================

class PinningStorage:
    """HTTP client for a pinning service with a public gateway.

    Example:
        with PinningStorage(api_key="k", api_secret="s") as storage:
            location = storage.put("record.json", record.to_dict(), StorageKind.META)
    """

    DEFAULT_API_ROOT = "https://api.pinata.cloud"
    DEFAULT_GATEWAY = "https://gateway.pinata.cloud"

    def __init__(
        self,
        api_key: str = "",
        api_secret: str = "",
        api_root: Optional[str] = None,
        gateway: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        """Initialize client.

        Args:
            api_key: Pinning service API key.
            api_secret: Pinning service API secret.
            api_root: API base URL. Defaults to production.
            gateway: Gateway base URL used for reads.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (tests use ``httpx.MockTransport``).
        """
        self.api_root = (api_root or self.DEFAULT_API_ROOT).rstrip("/")
        self.gateway = (gateway or self.DEFAULT_GATEWAY).rstrip("/")
        self._client = httpx.Client(
            timeout=timeout,
            transport=transport,
            headers={"pinata_api_key": api_key, "pinata_secret_api_key": api_secret},
        )

    def __enter__(self) -> "PinningStorage":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _post(self, endpoint: str, **kwargs: Any) -> Dict[str, Any]:
        url = f"{self.api_root}{endpoint}"
        try:
            response = self._client.post(url, **kwargs)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            raise StorageError(
                f"pinning request failed with status {exc.response.status_code}",
                raw_data=exc.response.text,
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise StorageError(f"pinning request failed: {exc}") from exc
        if not isinstance(data, dict) or not data.get("IpfsHash"):
            raise StorageError("pinning response carries no IpfsHash", raw_data=json.dumps(data))
        return data

    def put(self, name: str, body: Body, kind: StorageKind) -> str:
        options = {"cidVersion": 1}
        if kind is StorageKind.META:
            if not isinstance(body, dict):
                raise StorageError("metadata body must be a JSON object")
            data = self._post(
                "/pinning/pinJSONToIPFS",
                json={"pinataContent": body, "pinataMetadata": {"name": name}, "pinataOptions": options},
            )
        else:
            data = self._post(
                "/pinning/pinFileToIPFS",
                files={"file": (name, _encode(body, kind))},
                data={
                    "pinataMetadata": json.dumps({"name": name}),
                    "pinataOptions": json.dumps(options),
                },
            )
        location = ensure_ipfs(data["IpfsHash"])
        logger.debug("Pinned object", operation="put", kind=kind.value, location=location)
        return location

    def get(self, location: str, kind: StorageKind) -> Body:
        cid = location[len("ipfs://"):] if location.startswith("ipfs://") else location
        if not cid:
            raise StorageError("empty storage location")
        url = f"{self.gateway}/ipfs/{cid}"
        try:
            response = self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise StorageError(
                f"gateway read of {location} failed with status {exc.response.status_code}",
                raw_data=exc.response.text,
            ) from exc
        except httpx.HTTPError as exc:
            raise StorageError(f"gateway read of {location} failed: {exc}") from exc
        return _decode(response.content, kind, location)

    def test_connection(self) -> bool:
        """Check the API credentials."""
        try:
            response = self._client.get(f"{self.api_root}/data/testAuthentication")
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise StorageError(f"pinning authentication failed: {exc}") from exc
        return True


# =============================================================================
# FILESYSTEM OBJECT STORE
# =============================================================================

class ObjectStore:
    """Content-addressed object store on the local filesystem.

    Objects live at ``<root>/<kind>/<digest>.json`` (metadata) or
    ``<root>/<kind>/<digest>.bin`` (assets). Writing the same bytes twice
    yields the same location.
    """

    SCHEME = "store://"

    def __init__(self, root: Union[str, pathlib.Path]):
        self.root = pathlib.Path(root)

    @staticmethod
    def _suffix(kind: StorageKind) -> str:
        return ".json" if kind is StorageKind.META else ".bin"

    def _path(self, kind: StorageKind, digest: str) -> pathlib.Path:
        return self.root / kind.value / f"{digest}{self._suffix(kind)}"

    def _parse(self, location: str) -> Tuple[StorageKind, str]:
        if not location.startswith(self.SCHEME):
            raise StorageError(f"not an object-store location: {location}")
        rest = location[len(self.SCHEME):]
        kind_s, _, digest = rest.partition("/")
        try:
            kind = StorageKind(kind_s)
        except ValueError as exc:
            raise StorageError(f"unknown object kind in location: {location}") from exc
        if not SHA256_HEX_RE.match(digest):
            raise StorageError(f"malformed object digest in location: {location}")
        return kind, digest

    def put(self, name: str, body: Body, kind: StorageKind) -> str:
        raw = _encode(body, kind)
        digest = content_id(raw)
        path = self._path(kind, digest)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            if not path.exists():
                path.write_bytes(raw)
        except OSError as exc:
            raise StorageError(f"object-store write failed for {name}: {exc}") from exc
        location = f"{self.SCHEME}{kind.value}/{digest}"
        logger.debug("Stored object", operation="put", kind=kind.value, location=location, name=name)
        return location

    def get(self, location: str, kind: StorageKind) -> Body:
        stored_kind, digest = self._parse(location)
        path = self._path(stored_kind, digest)
        if not path.exists():
            raise StorageError(f"object not found: {location}")
        try:
            raw = path.read_bytes()
        except OSError as exc:
            raise StorageError(f"object-store read failed for {location}: {exc}") from exc
        if content_id(raw) != digest:
            raise StorageError(f"object digest mismatch: {location}")
        return _decode(raw, kind, location)


# =============================================================================
# IN-MEMORY STORAGE
# =============================================================================

class MemoryStorage:
    """Dict-backed storage with object-store style locations."""

    SCHEME = "memory://"

    def __init__(self) -> None:
        self.objects: Dict[str, bytes] = {}
        self.puts = 0

    def put(self, name: str, body: Body, kind: StorageKind) -> str:
        raw = _encode(body, kind)
        location = f"{self.SCHEME}{kind.value}/{content_id(raw)}"
        self.objects[location] = raw
        self.puts += 1
        return location

    def get(self, location: str, kind: StorageKind) -> Body:
        raw = self.objects.get(location)
        if raw is None:
            raise StorageError(f"object not found: {location}")
        return _decode(raw, kind, location)


def storage_from_config(config: StorageConfig, transport: Optional[httpx.BaseTransport] = None) -> Storage:
    """Build the configured backend."""
    backend = config.backend.get()
    if backend == "pinning":
        return PinningStorage(
            api_key=config.api_key.get(),
            api_secret=config.api_secret.get(),
            api_root=config.api_root.get(),
            gateway=config.gateway.get(),
            timeout=config.timeout_seconds.get(),
            transport=transport,
        )
    return ObjectStore(config.root_dir.get())
