"""
Publish orchestrator.

Runs each content item to completion before starting the next, because the
write for item *n* may create hierarchy nodes that item *n+1* reads:

    validate -> identity -> existence -> classify -> build/sign
             -> store record -> hierarchy parent -> one ledger write

Exactly one of ``publish`` / ``set_uri`` / nothing is issued per item. Under
dated placement a license grant (``set_access_auth``) follows a write.

A failing item yields an ``ItemResult`` carrying its error. With
``batch_policy = continue`` the batch moves on; with ``abort`` it stops and
marks the result as aborted. Errors are never swallowed:
``BatchResult.raise_for_errors()`` turns failures into an exception.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from verigraph.article import break_article
from verigraph.canonical import Canonicalizer, ContentFetcher, LoadedContent
from verigraph.config import EngineConfig
from verigraph.core import ZERO_HASH, ensure_https, now_iso8601
from verigraph.diff import Action, check_action, classify
from verigraph.encryption import EncryptionClient, EncryptionResult
from verigraph.errors import InputError, VerigraphError
from verigraph.existence import ExistenceResolver, Resolution
from verigraph.hierarchy import HierarchyResolver, PlacementPolicy, validate_placement
from verigraph.ledger import GuardedLedger, Ledger, PublishEntry
from verigraph.observability import (
    EngineLayer,
    generate_correlation_id,
    get_logger,
    reset_correlation_id,
    set_correlation_id,
)
from verigraph.record import RecordBuilder
from verigraph.schema import Article, AssetRecord, ContentItem, ContentKind, Location, LocationProtocol
from verigraph.signing import Signer
from verigraph.storage import GuardedStorage, Storage, StorageKind, location_protocol, storage_from_config

logger = get_logger("orchestrator", EngineLayer.ORCHESTRATOR)


class BatchPolicy(Enum):
    CONTINUE = "continue"
    ABORT = "abort"


@dataclass
class ItemResult:
    """Outcome of one item."""
    identity: str
    kind: ContentKind
    action: Optional[Action] = None
    location: str = ""
    parent: str = ""
    error: Optional[VerigraphError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "identity": self.identity,
            "kind": self.kind.value,
            "action": self.action.value if self.action else None,
            "location": self.location,
            "parent": self.parent,
        }
        if self.error is not None:
            out["error"] = {"type": type(self.error).__name__, "message": str(self.error)}
        return out


class BatchError(VerigraphError):
    """One or more items of a batch failed."""

    def __init__(self, result: "BatchResult"):
        self.result = result
        failures = result.failures
        first = failures[0]
        super().__init__(
            f"{len(failures)} of {len(result.items)} items failed; first: {first.identity or first.kind.value}: {first.error}"
        )


@dataclass
class BatchResult:
    items: List[ItemResult] = field(default_factory=list)
    aborted: bool = False
    correlation_id: str = ""

    @property
    def failures(self) -> List[ItemResult]:
        return [r for r in self.items if not r.ok]

    @property
    def ok(self) -> bool:
        return not self.failures and not self.aborted

    def summary(self) -> List[Dict[str, str]]:
        """``[{identity, kind}]`` of the items that were published or confirmed."""
        return [{"identity": r.identity, "kind": r.kind.value} for r in self.items if r.ok]

    def raise_for_errors(self) -> None:
        if self.failures:
            raise BatchError(self)


class PublishOrchestrator:
    """
    Sequences the engine components for a batch of content items.

    All collaborators and the configuration are passed in; nothing is read from
    process-wide state.
    """

    def __init__(
        self,
        config: EngineConfig,
        ledger: Ledger,
        storage: Storage,
        signer: Signer,
        encryption: Optional[EncryptionClient] = None,
        fetcher: Optional[ContentFetcher] = None,
        clock: Callable[[], str] = now_iso8601,
    ):
        self._config = config
        self._ledger = GuardedLedger(ledger, config.ledger.max_gas_price.get())
        self._storage = GuardedStorage(storage)
        self._signer = signer
        self._encryption = encryption
        self._canonicalizer = Canonicalizer(fetcher)
        self._existence = ExistenceResolver(self._ledger, self._storage)
        self._hierarchy = HierarchyResolver(self._ledger)
        self._builder = RecordBuilder(clock)

    @property
    def batch_policy(self) -> BatchPolicy:
        return BatchPolicy(self._config.publish.batch_policy.get())

    @property
    def placement(self) -> PlacementPolicy:
        return PlacementPolicy(self._config.publish.placement.get())

    # ------------------------------------------------------------------
    # Batch entry points
    # ------------------------------------------------------------------

    def publish_batch(
        self,
        items: Sequence[ContentItem],
        org: str,
        original_material: Optional[str] = None,
    ) -> BatchResult:
        """Publish ``items`` in order under the organization node ``org``."""
        correlation_id = generate_correlation_id()
        token = set_correlation_id(correlation_id)
        batch = BatchResult(correlation_id=correlation_id)
        policy = self.batch_policy
        start = time.monotonic()
        completed = False
        logger.info("Batch started", operation="publish_batch", org=org, items=len(items), policy=policy.value)

        try:
            for index, item in enumerate(items):
                result = ItemResult(identity="", kind=item.kind)
                try:
                    self._publish_item(item, org, original_material, result)
                except VerigraphError as exc:
                    result.error = exc
                    logger.error(
                        "Item failed",
                        error_code=type(exc).__name__,
                        operation="publish_item",
                        index=index,
                        identity=result.identity,
                        reason=str(exc),
                    )
                batch.items.append(result)
                if not result.ok and policy is BatchPolicy.ABORT:
                    batch.aborted = True
                    logger.warning("Batch aborted", operation="publish_batch", index=index, remaining=len(items) - index - 1)
                    break
            completed = True
        finally:
            if self._encryption is not None and self._encryption.connected:
                self._encryption.disconnect()
            logger.operation(
                "publish_batch",
                (time.monotonic() - start) * 1000,
                success=completed and batch.ok,
                published=len(batch.items) - len(batch.failures),
                failed=len(batch.failures),
            )
            reset_correlation_id(token)
        return batch

    def publish_article(
        self,
        article: Article,
        org: str,
        original_material: Optional[str] = None,
    ) -> BatchResult:
        """Decompose ``article`` and publish its images and text as one batch."""
        items = break_article(article, self._canonicalizer)
        return self.publish_batch(items, org, original_material)

    # ------------------------------------------------------------------
    # Per-item state machine
    # ------------------------------------------------------------------

    def _check_input(self, item: ContentItem, placement: PlacementPolicy) -> None:
        item.validate()
        validate_placement(item, placement)
        if placement is PlacementPolicy.DATED and not self._config.publish.license.get():
            raise InputError("license", "dated placement requires a license label")
        if item.encrypt and (self._encryption is None or not self._config.encryption.enabled.get()):
            raise InputError("encrypt", "encryption requested but no encryption service is enabled")

    def _store_asset(self, item: ContentItem, loaded: LoadedContent) -> Tuple[Location, Optional[EncryptionResult]]:
        """Persist the asset bytes of a new identity; returns (location, encryption)."""
        encryption: Optional[EncryptionResult] = None
        if item.encrypt:
            if self._encryption is None:
                raise InputError("encrypt", "encryption requested but no encryption client is configured")
            encryption = self._encryption.encrypt(loaded.body, loaded.identity)
            uri = self._storage.put(loaded.identity, encryption.ciphertext, StorageKind.ASSET)
        elif item.kind is ContentKind.TEXT:
            uri = self._storage.put(loaded.identity, loaded.body, StorageKind.ASSET)
        else:
            return Location(protocol=LocationProtocol.HTTPS.value, uri=ensure_https(item.uri)), None
        return Location(protocol=location_protocol(uri).value, uri=uri), encryption

    def _candidate(self, item: ContentItem, loaded: LoadedContent, resolution: Resolution) -> Tuple[Action, AssetRecord]:
        """(action, record to persist) for this run."""
        if resolution.is_new:
            location, encryption = self._store_asset(item, loaded)
            record = self._builder.build_new(item, loaded.identity, location, encryption)
            return classify(None, record, item.kind), record

        prior = resolution.prior_record
        draft = self._builder.draft(item, loaded.identity, prior)
        action = classify(prior, draft, item.kind)
        if not action.writes:
            return action, prior
        return action, self._builder.supersede(draft, resolution.prior_record_location, item.kind)

    def _publish_item(
        self,
        item: ContentItem,
        org: str,
        original_material: Optional[str],
        result: ItemResult,
    ) -> None:
        placement = self.placement
        self._check_input(item, placement)

        loaded = self._canonicalizer.load(item)
        identity = loaded.identity
        result.identity = identity

        resolution = self._existence.resolve(identity)
        action, record = self._candidate(item, loaded, resolution)
        check_action(action, resolution.is_new, item.kind)
        result.action = action

        if action.writes:
            record = self._builder.finalize(record, self._signer)
            result.location = self._storage.put(identity, record.to_dict(), StorageKind.META)
        else:
            result.location = resolution.prior_record_location

        if action is Action.SET_URI:
            # set_uri keeps the node under its current parent
            result.parent = self._current_parent(resolution)
        elif action.writes or not self._config.publish.skip_hierarchy_on_noop.get():
            result.parent = self._hierarchy.parent_for(
                item,
                record,
                org,
                policy=placement,
                license=self._config.publish.license.get(),
                original_material=original_material,
            )

        self._write(action, identity, result.parent, result.location)

        if placement is PlacementPolicy.DATED and action.writes:
            self._ledger.set_access_auth(identity, self._config.publish.license.get())

        logger.info(
            "Item processed",
            operation="publish_item",
            identity=identity,
            kind=item.kind.value,
            action=action.value,
            location=result.location,
            parent=result.parent,
            history=len(record.manifest.history),
        )

    def _current_parent(self, resolution: Resolution) -> str:
        if resolution.node is None:
            return ""
        parent = self._ledger.parent_of(resolution.node.token)
        return parent.id if parent is not None else ""

    def _write(self, action: Action, identity: str, parent: str, location: str) -> None:
        if action is Action.PUBLISH:
            self._ledger.publish(parent, PublishEntry(id=identity, uri=location, reference_of=ZERO_HASH))
        elif action is Action.SET_URI:
            self._ledger.set_uri(identity, location)


def build_orchestrator(
    config: EngineConfig,
    ledger: Ledger,
    signer: Signer,
    storage: Optional[Storage] = None,
    fetcher: Optional[ContentFetcher] = None,
    encryption_factory: Optional[Callable[[], Any]] = None,
) -> PublishOrchestrator:
    """Wire an orchestrator from configuration, building storage and encryption as configured."""
    encryption = None
    if config.encryption.enabled.get() and encryption_factory is not None:
        encryption = EncryptionClient(encryption_factory, timeout_seconds=config.encryption.timeout_seconds.get())
    return PublishOrchestrator(
        config,
        ledger,
        storage or storage_from_config(config.storage),
        signer,
        encryption=encryption,
        fetcher=fetcher,
    )
