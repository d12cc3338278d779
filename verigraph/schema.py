"""Data model for the publish engine.

Content items
-------------
``ContentItem`` is a tagged union. Each variant (``TextItem``, ``ImageItem``,
``VideoItem``, ``BinaryItem``) carries a ``kind`` discriminant and only the
fields it needs. Items are frozen once created.

Asset records
-------------
``AssetRecord`` is the signable, versioned metadata envelope. At rest it is::

    {
      "version": "1.0.0",
      "data": {
        "description", "type", "encrypted", "access", "locations",
        "manifest": {"uri", "title", "alt", "description", "caption",
                     "creditedSource", "signingOrg": {"name", "unit"},
                     "published", "history"},
        "contentBinding": {"algo", "hash"}
      },
      "signature": {"curve", "signature", "message", "description"}
    }

``to_dict`` / ``from_dict`` reproduce this layout exactly; ``from_dict``
validates against ``schemas/asset-record.schema.json``.
"""

from __future__ import annotations

import copy
import json
import pathlib
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Any, ClassVar, Dict, List, Optional, Type

from jsonschema import Draft202012Validator

from verigraph.errors import InputError

RECORD_VERSION = "1.0.0"
TEXT_MIME = "text/html"
CONTENT_BINDING_ALGO = "sha256"
SIGNATURE_CURVE = "ed25519"

SCHEMA_DIR = pathlib.Path(__file__).resolve().parent / "schemas"


class ContentKind(Enum):
    """Discriminant of a content item."""
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    BINARY = "binary"

    @property
    def is_text(self) -> bool:
        return self is ContentKind.TEXT


class Ownership(Enum):
    """Whether the publisher owns the content or licenses it from someone."""
    OWNED = "owned"
    LICENSED = "licensed"


class LocationProtocol(Enum):
    """Scheme of a storage location."""
    IPFS = "ipfs"
    HTTPS = "https"
    OBJECT_STORE = "object-store"


# =============================================================================
# CONTENT ITEMS
# =============================================================================

@dataclass(frozen=True)
class Authority:
    """Publishing organization credited on a record."""
    name: str
    contact: str = ""


@dataclass(frozen=True)
class ContentItem:
    """
    Publisher-supplied input common to every content kind.

    ``uri`` is the canonical page URL for text and the remote locator of the
    bytes for binary kinds. ``origin`` and ``source_id`` identify the article a
    text item belongs to and drive its placement.
    """
    title: str
    description: str
    uri: str
    authority: Authority
    content_type: str
    published: str = ""
    ownership: Ownership = Ownership.OWNED
    licensed_from: str = ""
    credited_source: str = ""
    source_id: str = ""
    origin: str = ""
    encrypt: bool = False

    kind: ClassVar[ContentKind]

    def validate(self) -> None:
        """Reject items that cannot be published."""
        if not self.authority or not self.authority.name:
            raise InputError("authority.name", "authority name is required")
        if not self.content_type:
            raise InputError("content_type", "content type is required")
        if not self.uri:
            raise InputError("uri", "a canonical uri or locator is required")
        if self.ownership is Ownership.LICENSED and not self.licensed_from.strip():
            raise InputError("licensed_from", "licensed content requires a licensor")

    @property
    def is_owned(self) -> bool:
        return self.ownership is Ownership.OWNED


@dataclass(frozen=True)
class TextItem(ContentItem):
    """Article-like text; its identity is the digest of ``body``."""
    body: str = ""

    kind: ClassVar[ContentKind] = ContentKind.TEXT

    def validate(self) -> None:
        super().validate()
        if not self.body:
            raise InputError("body", "text content requires a non-empty body")
        if not self.description:
            raise InputError("description", "text content requires a description")


@dataclass(frozen=True)
class ImageItem(ContentItem):
    alt: str = ""
    caption: str = ""

    kind: ClassVar[ContentKind] = ContentKind.IMAGE


@dataclass(frozen=True)
class VideoItem(ContentItem):
    thumbnail_uri: str = ""
    duration: int = 0

    kind: ClassVar[ContentKind] = ContentKind.VIDEO


@dataclass(frozen=True)
class BinaryItem(ContentItem):
    kind: ClassVar[ContentKind] = ContentKind.BINARY


ITEM_TYPES: Dict[ContentKind, Type[ContentItem]] = {
    ContentKind.TEXT: TextItem,
    ContentKind.IMAGE: ImageItem,
    ContentKind.VIDEO: VideoItem,
    ContentKind.BINARY: BinaryItem,
}


def item_from_dict(data: Dict[str, Any]) -> ContentItem:
    """Build a content item from its JSON form, dispatching on ``type``."""
    raw_kind = str(data.get("type") or "").strip().lower()
    try:
        kind = ContentKind(raw_kind)
    except ValueError:
        raise InputError("type", f"unsupported content kind {raw_kind!r}")

    authority = data.get("authority") or {}
    try:
        ownership = Ownership(str(data.get("ownership") or "owned").lower())
    except ValueError:
        raise InputError("ownership", f"unsupported ownership {data.get('ownership')!r}")

    common: Dict[str, Any] = dict(
        title=str(data.get("title") or ""),
        description=str(data.get("description") or ""),
        uri=str(data.get("uri") or ""),
        authority=Authority(name=str(authority.get("name") or ""), contact=str(authority.get("contact") or "")),
        content_type=str(data.get("contentType") or ""),
        published=str(data.get("published") or ""),
        ownership=ownership,
        licensed_from=str(data.get("licensedFrom") or ""),
        credited_source=str(data.get("creditedSource") or ""),
        source_id=str(data.get("id") or ""),
        origin=str(data.get("origin") or ""),
        encrypt=bool(data.get("encrypt", False)),
    )

    if kind is ContentKind.TEXT:
        return TextItem(body=str(data.get("body") or ""), **common)
    if kind is ContentKind.IMAGE:
        return ImageItem(alt=str(data.get("alt") or ""), caption=str(data.get("caption") or ""), **common)
    if kind is ContentKind.VIDEO:
        thumb = data.get("thumbnail") or {}
        thumb_uri = thumb.get("uri", "") if isinstance(thumb, dict) else str(thumb)
        return VideoItem(thumbnail_uri=str(thumb_uri or ""), duration=int(data.get("duration") or 0), **common)
    return BinaryItem(**common)


@dataclass(frozen=True)
class ArticleMetadata:
    title: str
    description: str
    uri: str
    origin: str
    date_published: str
    id: str
    authority: Authority


@dataclass(frozen=True)
class Article:
    """An article: metadata plus its text and media contents."""
    metadata: ArticleMetadata
    contents: List[ContentItem] = field(default_factory=list)


# =============================================================================
# ASSET RECORD
# =============================================================================

@dataclass
class Location:
    protocol: str
    uri: str

    def to_dict(self) -> Dict[str, str]:
        return {"protocol": self.protocol, "uri": self.uri}


@dataclass
class SigningOrg:
    name: str
    unit: str


@dataclass
class Manifest:
    uri: str
    title: str
    description: str
    credited_source: str
    signing_org: SigningOrg
    published: str
    history: List[str] = field(default_factory=list)
    alt: str = ""
    caption: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uri": self.uri,
            "title": self.title,
            "alt": self.alt,
            "description": self.description,
            "caption": self.caption,
            "creditedSource": self.credited_source,
            "signingOrg": {"name": self.signing_org.name, "unit": self.signing_org.unit},
            "published": self.published,
            "history": list(self.history),
        }


@dataclass
class ContentBinding:
    algo: str
    hash: str


@dataclass
class Signature:
    curve: str = SIGNATURE_CURVE
    signature: str = ""
    message: str = ""
    description: str = ""


@dataclass
class AssetRecord:
    """
    Versioned, signable metadata envelope of one asset.

    Records are never mutated after they are persisted: a change produces a new
    record whose ``manifest.history`` references the old one's location.
    """
    description: str
    type: str
    encrypted: bool
    manifest: Manifest
    content_binding: ContentBinding
    access: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    locations: List[Location] = field(default_factory=list)
    signature: Signature = field(default_factory=Signature)
    version: str = RECORD_VERSION

    @property
    def identity(self) -> str:
        return self.content_binding.hash

    @property
    def history(self) -> List[str]:
        return self.manifest.history

    def data_dict(self) -> Dict[str, Any]:
        """The signed portion of the record."""
        return {
            "description": self.description,
            "type": self.type,
            "encrypted": self.encrypted,
            "access": copy.deepcopy(self.access),
            "locations": [loc.to_dict() for loc in self.locations],
            "manifest": self.manifest.to_dict(),
            "contentBinding": {"algo": self.content_binding.algo, "hash": self.content_binding.hash},
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "data": self.data_dict(),
            "signature": {
                "curve": self.signature.curve,
                "signature": self.signature.signature,
                "message": self.signature.message,
                "description": self.signature.description,
            },
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)

    def copy(self) -> "AssetRecord":
        return copy.deepcopy(self)

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "AssetRecord":
        """Parse a stored record, rejecting anything that is not schema-valid."""
        errors = validate_record_dict(obj)
        if errors:
            raise InputError("record", "; ".join(errors))

        data = obj["data"]
        m = data["manifest"]
        sig = obj.get("signature") or {}
        return cls(
            description=data["description"],
            type=data["type"],
            encrypted=bool(data["encrypted"]),
            access=copy.deepcopy(data.get("access") or {}),
            locations=[Location(protocol=loc["protocol"], uri=loc["uri"]) for loc in data.get("locations") or []],
            manifest=Manifest(
                uri=m["uri"],
                title=m["title"],
                description=m.get("description", ""),
                credited_source=m["creditedSource"],
                signing_org=SigningOrg(name=m["signingOrg"]["name"], unit=m["signingOrg"]["unit"]),
                published=m["published"],
                history=list(m.get("history") or []),
                alt=m.get("alt", ""),
                caption=m.get("caption", ""),
            ),
            content_binding=ContentBinding(algo=data["contentBinding"]["algo"], hash=data["contentBinding"]["hash"]),
            signature=Signature(
                curve=sig.get("curve", SIGNATURE_CURVE),
                signature=sig.get("signature", ""),
                message=sig.get("message", ""),
                description=sig.get("description", ""),
            ),
            version=obj.get("version", RECORD_VERSION),
        )


@lru_cache(maxsize=1)
def _record_validator() -> Draft202012Validator:
    schema_path = SCHEMA_DIR / "asset-record.schema.json"
    schema = json.loads(schema_path.read_text(encoding="utf-8"))
    return Draft202012Validator(schema)


def validate_record_dict(obj: Any) -> List[str]:
    """Validate an at-rest record.

    Returns:
        List of validation error messages (empty if valid)
    """
    return [
        f"{error.json_path}: {error.message}"
        for error in _record_validator().iter_errors(obj)
    ]


def required_field_errors(record: AssetRecord) -> List[str]:
    """Fields that must be populated before a record may be signed."""
    missing: List[str] = []
    if not record.description:
        missing.append("description")
    if not record.manifest.uri:
        missing.append("manifest.uri")
    if not record.content_binding.hash:
        missing.append("contentBinding.hash")
    return missing


def find_access_token(record: AssetRecord) -> Optional[Dict[str, Any]]:
    """First non-empty access entry, if any."""
    for token in record.access.values():
        if token:
            return token
    return None
