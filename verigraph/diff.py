"""Diff engine: classify a candidate record against the prior one.

    prior is None                           -> PUBLISH
    fingerprints equal                      -> NOOP
    fingerprints differ, text kind          -> PUBLISH  (re-anchor)
    fingerprints differ, non-text kind      -> SET_URI  (pointer update)

Nothing is persisted; the action is recomputed on every run.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from verigraph.canonical import Canonicalizer
from verigraph.errors import ConsistencyError
from verigraph.schema import AssetRecord, ContentKind


class Action(Enum):
    """The single ledger write issued for an item."""
    PUBLISH = "PUBLISH"
    SET_URI = "SET_URI"
    NOOP = "NOOP"

    @property
    def writes(self) -> bool:
        return self is not Action.NOOP


def classify(prior: Optional[AssetRecord], candidate: AssetRecord, kind: ContentKind) -> Action:
    if prior is None:
        return Action.PUBLISH
    if Canonicalizer.fingerprint(prior) == Canonicalizer.fingerprint(candidate):
        return Action.NOOP
    if kind.is_text:
        return Action.PUBLISH
    return Action.SET_URI


def check_action(action: Action, is_new: bool, kind: ContentKind) -> None:
    """Refuse the two writes the ledger must never see.

    Raises:
        ConsistencyError: SET_URI for an absent node, or PUBLISH on an existing
            non-text node
    """
    if action is Action.SET_URI and is_new:
        raise ConsistencyError("SET_URI issued for a node that does not exist")
    if action is Action.PUBLISH and not is_new and not kind.is_text:
        raise ConsistencyError("PUBLISH issued for an existing non-text node")
