"""Identity registry collaborator: maps a signer address to its root identity."""

from __future__ import annotations

from typing import Dict, Optional, Protocol, runtime_checkable


@runtime_checkable
class IdentityRegistry(Protocol):
    def who_is(self, address: str) -> str:
        """Root identity registered for ``address``; empty string if unknown."""
        ...


class InMemoryIdentityRegistry:
    """Registry backed by a dict, for tests and offline verification."""

    def __init__(self, roots: Optional[Dict[str, str]] = None):
        self._roots: Dict[str, str] = dict(roots or {})

    def register(self, address: str, root: str) -> None:
        self._roots[address] = root

    def who_is(self, address: str) -> str:
        return self._roots.get(address, "")
