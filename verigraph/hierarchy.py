"""
Hierarchy resolver: deterministic placement of assets in the content graph.

Every container node id is derived from its parent and a label::

    segment_id(parent, label) = sha256(normalize(parent + "-" + label))

where ``normalize`` lower-cases and removes all whitespace. Resolving the same
path twice yields the same ids, and ``ensure_segment`` only creates a node when
a read shows it is absent.

Placement policies:

    ownership   owned text      org -> original-material -> article -> asset
                owned non-text  org -> original-material -> asset
                licensed        org -> license-<licensor> -> asset
    dated       org -> <license> -> <kind> -> <year> -> <month> -> <YYYY-MM-DD> -> asset
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional

from verigraph.core import ZERO_HASH, normalize_label, parse_iso8601, sha256_text
from verigraph.errors import CollaboratorError, ConsistencyError, InputError
from verigraph.ledger import Ledger, NodeNotFound, NodeType
from verigraph.observability import EngineLayer, get_logger
from verigraph.schema import AssetRecord, ContentItem, ContentKind

logger = get_logger("hierarchy", EngineLayer.HIERARCHY)

ORIGINAL_MATERIAL_LABEL = "original-material"
LICENSE_LABEL_PREFIX = "license-"


class PlacementPolicy(Enum):
    OWNERSHIP = "ownership"
    DATED = "dated"


def segment_id(parent: str, label: str) -> str:
    """Deterministic id of the container ``label`` under ``parent``."""
    if not label or not str(label).strip():
        raise InputError("label", "hierarchy label must not be empty")
    return sha256_text(normalize_label(f"{parent}-{label}"))


def license_label(licensor: str) -> str:
    return LICENSE_LABEL_PREFIX + licensor


def license_node_id(org: str, licensor: str) -> str:
    """Id of the license container for content licensed from ``licensor``."""
    return segment_id(org, license_label(licensor))


def date_labels(published: str) -> List[str]:
    """Year, month and calendar-date labels for dated placement.

    Raises:
        ValueError: if ``published`` is not an ISO 8601 timestamp
    """
    dt = parse_iso8601(published)
    if dt is None:
        raise ValueError(f"not an ISO 8601 timestamp: {published!r}")
    return [str(dt.year), str(dt.month), dt.date().isoformat()]


def validate_placement(item: ContentItem, policy: PlacementPolicy) -> None:
    """Reject items whose placement cannot be computed, before any network call."""
    if policy is PlacementPolicy.OWNERSHIP:
        if item.is_owned and item.kind is ContentKind.TEXT:
            if not item.origin:
                raise InputError("origin", "owned text content requires the article origin")
            if not item.source_id:
                raise InputError("source_id", "owned text content requires the article id")
    elif item.kind is ContentKind.TEXT and parse_iso8601(item.published) is None:
        raise InputError("published", "dated placement requires an ISO 8601 timestamp", item.published)


class HierarchyResolver:
    """Resolves and idempotently creates container nodes on the ledger."""

    def __init__(self, ledger: Ledger):
        self._ledger = ledger

    def _ensure(self, node_id: str, parent: str) -> str:
        try:
            self._ledger.get_node_by_id(node_id)
            return node_id
        except NodeNotFound:
            pass

        try:
            self._ledger.create_node(node_id, parent, NodeType.ORG, ZERO_HASH)
        except CollaboratorError as exc:
            # Another writer may have created it between our read and write.
            try:
                self._ledger.get_node_by_id(node_id)
            except NodeNotFound:
                raise exc
            logger.debug("Segment created concurrently", operation="ensure_segment", node_id=node_id)
            return node_id
        logger.info("Segment created", operation="ensure_segment", node_id=node_id, parent=parent)
        return node_id

    def ensure_segment(self, parent: str, label: str) -> str:
        """Get-or-create the container ``label`` under ``parent``."""
        return self._ensure(segment_id(parent, label), parent)

    def resolve_path(self, segments: List[str], root: str) -> List[str]:
        """Ensure each segment in turn, each under the previous one.

        Returns the node ids in order; the last one is the asset's parent.
        """
        ids: List[str] = []
        parent = root
        for label in segments:
            parent = self.ensure_segment(parent, label)
            ids.append(parent)
        return ids

    def original_material(self, org: str) -> str:
        return self.ensure_segment(org, ORIGINAL_MATERIAL_LABEL)

    def license_node(self, org: str, licensor: str) -> str:
        return self.ensure_segment(org, license_label(licensor))

    def article_node(self, original_material: str, origin: str, article_id: str) -> str:
        """Article container, identified by origin and article id, under original material."""
        return self._ensure(segment_id(origin, article_id), original_material)

    def parent_for(
        self,
        item: ContentItem,
        record: AssetRecord,
        org: str,
        policy: PlacementPolicy = PlacementPolicy.OWNERSHIP,
        license: str = "",
        original_material: Optional[str] = None,
    ) -> str:
        """Parent node id for ``item``, creating missing containers.

        ``record`` is the record that will be on the ledger after this run (the
        prior one for NOOP); dated placement takes its date from it.
        """
        if policy is PlacementPolicy.DATED:
            if not license:
                raise InputError("license", "dated placement requires a license label")
            try:
                dates = date_labels(record.manifest.published)
            except ValueError as exc:
                raise ConsistencyError(f"record {record.identity} has no usable published date") from exc
            path = self.resolve_path([license, item.kind.value] + dates, org)
            return path[-1]

        if not item.is_owned:
            return self.license_node(org, item.licensed_from)

        om = original_material or self.original_material(org)
        if item.kind is ContentKind.TEXT:
            return self.article_node(om, item.origin, item.source_id)
        return om
