"""Canonicalizer: asset identity and metadata fingerprint.

Identity
    text kinds digest the literal body; binary kinds digest the bytes fetched
    from the item's locator. Identical bytes always give the same identity.

Fingerprint
    digest of a record's data portion with the volatile fields removed:
    ``locations`` is emptied and, unless the record type is ``text/html``,
    ``manifest.published`` is blanked. Text records keep their timestamp, so a
    text item republished with a new timestamp fingerprints as changed.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import httpx

from verigraph.core import canonical_digest, ensure_https, sha256_bytes, sha256_text
from verigraph.errors import (
    CollaboratorError,
    DecodedError,
    ErrorKind,
    InputError,
    VerigraphError,
    wrap_collaborator_error,
)
from verigraph.observability import EngineLayer, get_logger
from verigraph.schema import TEXT_MIME, AssetRecord, ContentItem, ContentKind, TextItem

logger = get_logger("canonical", EngineLayer.CANONICAL)


@runtime_checkable
class ContentFetcher(Protocol):
    def fetch(self, uri: str) -> bytes:
        ...


class HttpContentFetcher:
    """Fetches binary content over HTTPS."""

    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.BaseTransport] = None):
        self._client = httpx.Client(timeout=timeout, transport=transport, follow_redirects=True)

    def __enter__(self) -> "HttpContentFetcher":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def fetch(self, uri: str) -> bytes:
        url = ensure_https(uri)
        try:
            response = self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise CollaboratorError(
                DecodedError(
                    kind=ErrorKind.UNKNOWN,
                    message=f"fetch of {url} failed with status {exc.response.status_code}",
                ),
                collaborator="fetcher",
            ) from exc
        except httpx.HTTPError as exc:
            raise CollaboratorError(
                DecodedError(kind=ErrorKind.UNKNOWN, message=f"fetch of {url} failed: {exc}"),
                collaborator="fetcher",
            ) from exc
        return response.content


@dataclass
class LoadedContent:
    """An item's identity together with the bytes it was computed from."""
    identity: str
    body: bytes


class Canonicalizer:
    """Computes identities and fingerprints."""

    def __init__(self, fetcher: Optional[ContentFetcher] = None):
        self._fetcher = fetcher

    def load(self, item: ContentItem) -> LoadedContent:
        """Compute the identity of ``item`` and return it with the item's bytes.

        Raises:
            InputError: empty text body or missing locator
            CollaboratorError: the locator could not be fetched
        """
        if item.kind is ContentKind.TEXT:
            if not isinstance(item, TextItem):
                raise InputError("kind", f"text content must be a TextItem, got {type(item).__name__}")
            if not item.body:
                raise InputError("body", "text content requires a non-empty body")
            return LoadedContent(identity=sha256_text(item.body), body=item.body.encode("utf-8"))

        if item.kind in (ContentKind.IMAGE, ContentKind.VIDEO, ContentKind.BINARY):
            if not item.uri:
                raise InputError("uri", f"{item.kind.value} content requires a locator")
            if self._fetcher is None:
                raise InputError("uri", "no content fetcher configured for binary content")
            try:
                body = self._fetcher.fetch(item.uri)
            except VerigraphError:
                raise
            except Exception as exc:
                logger.error("Fetch failed", error_code=type(exc).__name__, operation="load", uri=item.uri)
                raise wrap_collaborator_error(exc, "fetcher") from exc
            if not body:
                raise InputError("uri", f"locator returned no bytes: {item.uri}", item.uri)
            identity = sha256_bytes(body)
            logger.debug("Fetched binary content", operation="load", uri=item.uri, identity=identity, size=len(body))
            return LoadedContent(identity=identity, body=body)

        raise InputError("kind", f"unsupported content kind {item.kind!r}")

    def identity(self, item: ContentItem) -> str:
        return self.load(item).identity

    @staticmethod
    def fingerprint(record: AssetRecord) -> str:
        return fingerprint_data(record.data_dict())


def strip_volatile(data: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a record's data portion with locations and, for non-text, the timestamp removed."""
    stripped = copy.deepcopy(data)
    stripped["locations"] = []
    if stripped.get("type") != TEXT_MIME:
        stripped.setdefault("manifest", {})["published"] = ""
    return stripped


def fingerprint_data(data: Dict[str, Any]) -> str:
    return canonical_digest(strip_volatile(data))
