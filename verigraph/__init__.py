"""
verigraph: content publish & provenance engine

Publishes content items (article text, images, video, opaque binaries) to an
on-chain content graph with verifiable provenance. Each asset is identified by
the digest of its canonical bytes, described by a signed AssetRecord held in
content-addressed storage, and anchored under a deterministic hierarchy of
ledger nodes.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │  orchestrator.py   one item at a time: identity -> existence -> diff    │
    │                    -> record -> storage -> hierarchy -> one write       │
    │                                                                          │
    │  canonical.py      asset identity and metadata fingerprint              │
    │  existence.py      prior record lookup through the ledger               │
    │  diff.py           PUBLISH / SET_URI / NOOP classification              │
    │  hierarchy.py      deterministic segment ids, get-or-create nodes       │
    │  record.py         AssetRecord assembly and signing                     │
    │  verify.py         signature, content binding and root identity         │
    │  article.py        article decomposition into images + text             │
    │                                                                          │
    │  ledger.py  storage.py  encryption.py  identity.py   collaborators      │
    │  config.py  observability.py  errors.py  cli.py       ambient stack     │
    └─────────────────────────────────────────────────────────────────────────┘

Records are never mutated once stored. A change produces a new record whose
``manifest.history`` lists the locations of every prior version.
"""

__version__ = "0.3.0"


# Lazy imports to avoid circular dependencies
def __getattr__(name):
    """Lazy import verigraph modules on first access."""

    if name in ("ContentItem", "TextItem", "ImageItem", "VideoItem", "BinaryItem",
                "ContentKind", "Ownership", "Authority", "Article", "ArticleMetadata",
                "AssetRecord", "item_from_dict"):
        from verigraph import schema
        return getattr(schema, name)

    if name in ("PublishOrchestrator", "BatchResult", "BatchPolicy", "BatchError",
                "ItemResult", "build_orchestrator"):
        from verigraph import orchestrator
        return getattr(orchestrator, name)

    if name in ("verify", "verify_dict", "VerificationResult"):
        from verigraph import verify
        return getattr(verify, name)

    if name in ("Action",):
        from verigraph import diff
        return getattr(diff, name)

    if name in ("Ed25519Signer", "recover_signer"):
        from verigraph import signing
        return getattr(signing, name)

    if name in ("EngineConfig", "ConfigManager", "load_config"):
        from verigraph import config
        return getattr(config, name)

    raise AttributeError(f"module 'verigraph' has no attribute {name!r}")
