"""
Ledger collaborator.

The content graph lives on someone else's ledger. This module defines the exact
surface the engine consumes, an in-memory adapter that behaves like the real
contract (reverts included), and a guard that enforces the configured gas
ceiling before every write.

Architecture:

    ┌─────────────────────────────────────────────────────────┐
    │                 PUBLISH ORCHESTRATOR                     │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                    GUARDED LEDGER                        │
    │  gas ceiling check, error decoding                       │
    └───────────────────────┬─────────────────────────────────┘
                            │
              ┌─────────────┴─────────────┐
              ▼                           ▼
    ┌───────────────────┐       ┌───────────────────┐
    │  InMemoryLedger   │       │  RPC adapter      │
    └───────────────────┘       └───────────────────┘
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from verigraph.core import ZERO_HASH
from verigraph.errors import ERROR_STRING_PREFIX, GasCeilingExceeded, VerigraphError, wrap_ledger_error
from verigraph.observability import EngineLayer, get_logger

logger = get_logger("ledger", EngineLayer.LEDGER)


# =============================================================================
# GRAPH ENTITIES
# =============================================================================

class NodeType(Enum):
    """Kind of node in the content graph."""
    ORG = 0
    REFERENCE = 1
    ASSET = 2


@dataclass
class GraphNode:
    """A node as the ledger reports it."""
    token: int
    node_type: NodeType
    id: str
    reference_of: str = ZERO_HASH
    uri: str = ""
    access_auth: str = ""
    reference_auth: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "nodeType": self.node_type.name,
            "id": self.id,
            "referenceOf": self.reference_of,
            "uri": self.uri,
            "accessAuth": self.access_auth,
            "referenceAuth": self.reference_auth,
        }


@dataclass
class PublishEntry:
    """Payload of a ``publish`` write."""
    id: str
    uri: str
    reference_of: str = ZERO_HASH


@dataclass
class Receipt:
    """Returned once a write is final."""
    tx_hash: str
    block_number: int
    operation: str
    node_id: str


class NodeNotFound(VerigraphError):
    """The ledger has no node with the requested id."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"node not found: {node_id}")


class LedgerRevert(Exception):
    """Transport-level revert carrying the raw ABI payload in ``data``."""

    def __init__(self, message: str, data: str):
        super().__init__(message)
        self.data = data


def encode_revert_reason(reason: str) -> str:
    """ABI-encode ``Error(string)`` revert data."""
    payload = reason.encode("utf-8")
    padded = payload + b"\x00" * ((32 - len(payload) % 32) % 32)
    body = (32).to_bytes(32, "big") + len(payload).to_bytes(32, "big") + padded
    return ERROR_STRING_PREFIX + body.hex()


# =============================================================================
# LEDGER INTERFACE
# =============================================================================

@runtime_checkable
class Ledger(Protocol):
    """
    Surface of the content-graph ledger consumed by the engine.

    All writes return only after the receipt is final.
    """

    def get_node_by_id(self, node_id: str) -> GraphNode:
        """Return the node or raise NodeNotFound."""
        ...

    def create_node(self, node_id: str, parent_id: str, node_type: NodeType, reference_of: str) -> Receipt:
        ...

    def publish(self, parent_id: str, entry: PublishEntry) -> Receipt:
        ...

    def set_uri(self, node_id: str, uri: str) -> Receipt:
        ...

    def set_access_auth(self, node_id: str, auth: str) -> Receipt:
        ...

    def parent_of(self, token: int) -> Optional[GraphNode]:
        ...

    def children_of(self, token: int) -> List[GraphNode]:
        ...

    def gas_price(self) -> int:
        """Current network price, in the ledger's smallest unit."""
        ...


# =============================================================================
# IN-MEMORY LEDGER
# =============================================================================

@dataclass
class WriteOp:
    """One write observed by the in-memory ledger."""
    operation: str
    node_id: str
    args: Dict[str, Any] = field(default_factory=dict)


class InMemoryLedger:
    """
    In-memory ledger for tests and dry runs.

    Enforces the contract's rules: ids are unique, parents must exist, and
    ``set_uri`` needs an existing node. Violations raise ``LedgerRevert`` with an
    ABI-encoded ``Error(string)`` payload, as a real node would.

    ``publish`` on an id that already exists re-anchors it: the token is kept,
    the uri and parent are replaced.
    """

    def __init__(self, gas_price: int = 20):
        self._nodes: Dict[str, GraphNode] = {}
        self._by_token: Dict[int, GraphNode] = {}
        self._parent: Dict[int, int] = {}
        self._next_token = 1
        self._block_number = 1000000
        self._gas_price = gas_price
        self.writes: List[WriteOp] = []

    def _revert(self, reason: str) -> None:
        raise LedgerRevert(f"execution reverted: {reason}", encode_revert_reason(reason))

    def _receipt(self, operation: str, node_id: str, **args: Any) -> Receipt:
        self._block_number += 1
        self.writes.append(WriteOp(operation=operation, node_id=node_id, args=args))
        return Receipt(
            tx_hash="0x" + secrets.token_hex(32),
            block_number=self._block_number,
            operation=operation,
            node_id=node_id,
        )

    def _parent_token(self, parent_id: str) -> int:
        if parent_id in ("", ZERO_HASH):
            return 0
        parent = self._nodes.get(parent_id)
        if parent is None:
            self._revert("Parent node does not exist")
        return parent.token

    def get_node_by_id(self, node_id: str) -> GraphNode:
        node = self._nodes.get(node_id)
        if node is None:
            raise NodeNotFound(node_id)
        return node

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def create_node(self, node_id: str, parent_id: str, node_type: NodeType, reference_of: str = ZERO_HASH) -> Receipt:
        if node_id in self._nodes:
            self._revert("Node already exists")
        parent_token = self._parent_token(parent_id)
        node = GraphNode(token=self._next_token, node_type=node_type, id=node_id, reference_of=reference_of)
        self._next_token += 1
        self._nodes[node_id] = node
        self._by_token[node.token] = node
        self._parent[node.token] = parent_token
        return self._receipt("create_node", node_id, parent_id=parent_id, node_type=node_type.name)

    def publish(self, parent_id: str, entry: PublishEntry) -> Receipt:
        parent_token = self._parent_token(parent_id)
        existing = self._nodes.get(entry.id)
        if existing is not None:
            existing.uri = entry.uri
            existing.reference_of = entry.reference_of
            self._parent[existing.token] = parent_token
        else:
            node = GraphNode(
                token=self._next_token,
                node_type=NodeType.ASSET,
                id=entry.id,
                reference_of=entry.reference_of,
                uri=entry.uri,
            )
            self._next_token += 1
            self._nodes[entry.id] = node
            self._by_token[node.token] = node
            self._parent[node.token] = parent_token
        return self._receipt("publish", entry.id, parent_id=parent_id, uri=entry.uri)

    def set_uri(self, node_id: str, uri: str) -> Receipt:
        node = self._nodes.get(node_id)
        if node is None:
            self._revert("Node does not exist")
        node.uri = uri
        return self._receipt("set_uri", node_id, uri=uri)

    def set_access_auth(self, node_id: str, auth: str) -> Receipt:
        node = self._nodes.get(node_id)
        if node is None:
            self._revert("Node does not exist")
        node.access_auth = auth
        return self._receipt("set_access_auth", node_id, auth=auth)

    def parent_of(self, token: int) -> Optional[GraphNode]:
        parent_token = self._parent.get(token, 0)
        return self._by_token.get(parent_token)

    def children_of(self, token: int) -> List[GraphNode]:
        return [
            self._by_token[child]
            for child, parent in sorted(self._parent.items())
            if parent == token
        ]

    def gas_price(self) -> int:
        return self._gas_price

    def set_gas_price(self, price: int) -> None:
        self._gas_price = price

    def writes_for(self, node_id: str) -> List[WriteOp]:
        return [w for w in self.writes if w.node_id == node_id]


# =============================================================================
# GAS CEILING GUARD
# =============================================================================

class GuardedLedger:
    """
    Ledger wrapper that checks the gas ceiling before every write and decodes
    transport failures into ``CollaboratorError``.

    A ceiling of 0 disables the check. Reads are passed through; only
    ``NodeNotFound`` escapes undecoded, since the existence resolver relies on it.
    """

    def __init__(self, inner: Ledger, max_gas_price: int = 0):
        self._inner = inner
        self._max_gas_price = max_gas_price

    @property
    def inner(self) -> Ledger:
        return self._inner

    def _check_gas(self, operation: str, node_id: str) -> None:
        if not self._max_gas_price:
            return
        try:
            price = self._inner.gas_price()
        except Exception as exc:
            raise wrap_ledger_error(exc) from exc
        if price > self._max_gas_price:
            logger.warning(
                "Gas price above ceiling, write refused",
                operation=operation,
                node_id=node_id,
                gas_price=price,
                ceiling=self._max_gas_price,
            )
            raise GasCeilingExceeded(price, self._max_gas_price)

    def _write(self, operation: str, node_id: str, call: Any) -> Receipt:
        self._check_gas(operation, node_id)
        try:
            receipt = call()
        except Exception as exc:
            decoded = wrap_ledger_error(exc)
            logger.error(
                "Ledger write failed",
                error_code=decoded.kind.value,
                operation=operation,
                node_id=node_id,
                reason=decoded.decoded.message,
            )
            raise decoded from exc
        logger.info("Ledger write confirmed", operation=operation, node_id=node_id, tx_hash=receipt.tx_hash)
        return receipt

    def get_node_by_id(self, node_id: str) -> GraphNode:
        try:
            return self._inner.get_node_by_id(node_id)
        except NodeNotFound:
            raise
        except Exception as exc:
            raise wrap_ledger_error(exc) from exc

    def create_node(self, node_id: str, parent_id: str, node_type: NodeType, reference_of: str = ZERO_HASH) -> Receipt:
        return self._write(
            "create_node", node_id,
            lambda: self._inner.create_node(node_id, parent_id, node_type, reference_of),
        )

    def publish(self, parent_id: str, entry: PublishEntry) -> Receipt:
        return self._write("publish", entry.id, lambda: self._inner.publish(parent_id, entry))

    def set_uri(self, node_id: str, uri: str) -> Receipt:
        return self._write("set_uri", node_id, lambda: self._inner.set_uri(node_id, uri))

    def set_access_auth(self, node_id: str, auth: str) -> Receipt:
        return self._write("set_access_auth", node_id, lambda: self._inner.set_access_auth(node_id, auth))

    def parent_of(self, token: int) -> Optional[GraphNode]:
        try:
            return self._inner.parent_of(token)
        except Exception as exc:
            raise wrap_ledger_error(exc) from exc

    def children_of(self, token: int) -> List[GraphNode]:
        try:
            return self._inner.children_of(token)
        except Exception as exc:
            raise wrap_ledger_error(exc) from exc

    def gas_price(self) -> int:
        return self._inner.gas_price()
