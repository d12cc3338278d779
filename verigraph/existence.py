"""Existence resolver: is this identity already on the graph, and with which record?"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from verigraph.errors import ConsistencyError, InputError, StorageError
from verigraph.ledger import GraphNode, Ledger, NodeNotFound
from verigraph.observability import EngineLayer, get_logger
from verigraph.schema import AssetRecord
from verigraph.storage import Storage, StorageKind

logger = get_logger("existence", EngineLayer.EXISTENCE)


@dataclass
class Resolution:
    is_new: bool
    prior_record: Optional[AssetRecord] = None
    prior_record_location: str = ""
    node: Optional[GraphNode] = None


class ExistenceResolver:
    """
    Looks an identity up on the ledger and loads its last record from storage.

    Only ``NodeNotFound`` means "new". A node that exists but whose record
    cannot be read or parsed is a ``ConsistencyError``; any other ledger
    failure propagates unchanged.
    """

    def __init__(self, ledger: Ledger, storage: Storage):
        self._ledger = ledger
        self._storage = storage

    def resolve(self, identity: str) -> Resolution:
        try:
            node = self._ledger.get_node_by_id(identity)
        except NodeNotFound:
            logger.debug("Identity not on ledger", operation="resolve", identity=identity)
            return Resolution(is_new=True)

        if not node.uri:
            raise ConsistencyError(f"node {identity} exists but carries no record uri")

        try:
            stored = self._storage.get(node.uri, StorageKind.META)
        except StorageError as exc:
            raise ConsistencyError(f"node {identity} points at unreadable record {node.uri}: {exc}") from exc

        try:
            record = AssetRecord.from_dict(stored)
        except InputError as exc:
            raise ConsistencyError(f"record at {node.uri} is malformed: {exc.message}") from exc

        if record.content_binding.hash != identity:
            raise ConsistencyError(
                f"record at {node.uri} binds {record.content_binding.hash}, expected {identity}"
            )

        logger.debug("Identity found", operation="resolve", identity=identity, uri=node.uri)
        return Resolution(is_new=False, prior_record=record, prior_record_location=node.uri, node=node)
