"""
Record builder: assembles and signs AssetRecords.

Lifecycle of a record for one identity:

    construct   fresh fields from the item (per kind), nothing carried over
    build_new   first publication: attach the storage location and access token
    draft       re-run: new metadata carrying the prior access, locations and
                history, so that only real metadata changes alter the fingerprint
    supersede   the draft changed: append the prior record's location to
                history and, for non-text kinds, restamp ``published``
    finalize    validate, digest the data portion and sign it
"""

from __future__ import annotations

import copy
import posixpath
from typing import Callable, Optional
from urllib.parse import urlparse

from verigraph.core import canonical_digest, ensure_https, now_iso8601
from verigraph.diff import Action
from verigraph.encryption import EncryptionResult
from verigraph.errors import InputError
from verigraph.observability import EngineLayer, get_logger
from verigraph.schema import (
    CONTENT_BINDING_ALGO,
    SIGNATURE_CURVE,
    AssetRecord,
    ContentBinding,
    ContentItem,
    ContentKind,
    ImageItem,
    Location,
    Manifest,
    Signature,
    SigningOrg,
    find_access_token,
    required_field_errors,
)
from verigraph.signing import Signer

logger = get_logger("record", EngineLayer.RECORD)


def _indefinite(word: str) -> str:
    return ("an " if word[:1].lower() in "aeiou" else "a ") + word


def describe(item: ContentItem) -> str:
    """Generated description of a non-text asset."""
    noun = _indefinite(item.kind.value)
    if item.is_owned:
        return f"{noun} owned by {item.authority.name}"
    return f"{noun} licensed from {item.licensed_from}"


def title_from_locator(uri: str) -> str:
    return posixpath.basename(urlparse(ensure_https(uri)).path)


class RecordBuilder:
    """Builds unsigned records and finalizes them with a signer."""

    def __init__(self, clock: Callable[[], str] = now_iso8601):
        self._clock = clock

    def construct(self, item: ContentItem, identity: str) -> AssetRecord:
        """Fresh record from ``item`` alone; empty locations, access and history."""
        org = SigningOrg(name=item.authority.name, unit=item.authority.name)

        if item.kind is ContentKind.TEXT:
            manifest = Manifest(
                uri=ensure_https(item.uri),
                title=item.title,
                description=item.description,
                credited_source=item.credited_source or item.authority.name,
                signing_org=org,
                published=item.published,
            )
            description = item.description
        elif item.kind in (ContentKind.IMAGE, ContentKind.VIDEO, ContentKind.BINARY):
            description = describe(item)
            manifest = Manifest(
                uri=ensure_https(item.uri),
                title=title_from_locator(item.uri) or item.title,
                description=description,
                credited_source=item.authority.name if item.is_owned else item.licensed_from,
                signing_org=org,
                published=self._clock(),
            )
            if isinstance(item, ImageItem):
                manifest.alt = item.alt
                manifest.caption = item.caption
        else:
            raise InputError("kind", f"unsupported content kind {item.kind!r}")

        return AssetRecord(
            description=description,
            type=item.content_type,
            encrypted=False,
            manifest=manifest,
            content_binding=ContentBinding(algo=CONTENT_BINDING_ALGO, hash=identity),
        )

    def build_new(
        self,
        item: ContentItem,
        identity: str,
        location: Optional[Location] = None,
        encryption: Optional[EncryptionResult] = None,
    ) -> AssetRecord:
        """Record for an identity that is not on the ledger yet."""
        record = self.construct(item, identity)
        if encryption is not None:
            record.encrypted = True
            record.access = {encryption.protocol: copy.deepcopy(encryption.access_token)}
        if location is not None:
            record.locations.append(location)
        return record

    def draft(self, item: ContentItem, identity: str, prior: AssetRecord) -> AssetRecord:
        """Candidate for an existing identity; the stored bytes did not move."""
        record = self.construct(item, identity)
        record.encrypted = prior.encrypted
        record.access = copy.deepcopy(prior.access)
        record.locations = copy.deepcopy(prior.locations)
        record.manifest.history = list(prior.manifest.history)
        return record

    def supersede(self, candidate: AssetRecord, prior_location: str, kind: ContentKind) -> AssetRecord:
        """Successor of the prior record: history grows by the prior location."""
        if not prior_location:
            raise InputError("prior_location", "superseding a record requires the prior record location")
        record = candidate.copy()
        record.manifest.history.append(prior_location)
        if not kind.is_text:
            record.manifest.published = self._clock()
        return record

    def build(
        self,
        item: ContentItem,
        identity: str,
        action: Action,
        prior: Optional[AssetRecord] = None,
        prior_location: str = "",
        location: Optional[Location] = None,
        encryption: Optional[EncryptionResult] = None,
    ) -> AssetRecord:
        """Unsigned record for ``action``.

        NOOP returns a copy of the prior record unchanged.
        """
        if prior is None:
            if action is not Action.PUBLISH:
                raise InputError("action", f"{action.value} requires a prior record")
            return self.build_new(item, identity, location, encryption)
        if action is Action.NOOP:
            return prior.copy()
        return self.supersede(self.draft(item, identity, prior), prior_location, item.kind)

    def finalize(self, record: AssetRecord, signer: Signer) -> AssetRecord:
        """Validate and sign; returns a new record.

        Raises:
            InputError: missing required fields, or encrypted without an access token
        """
        missing = required_field_errors(record)
        if missing:
            raise InputError(missing[0], "required field is empty before signing")
        if record.encrypted and find_access_token(record) is None:
            raise InputError("access", "encrypted record carries no access token")

        signed = record.copy()
        digest = canonical_digest(signed.data_dict())
        signed.signature = Signature(
            curve=SIGNATURE_CURVE,
            signature=signer.sign(digest),
            message=digest,
            description=f"signed by {signer.address()}",
        )
        logger.debug("Record signed", operation="finalize", identity=record.identity, digest=digest)
        return signed
