"""Verification protocol for stored AssetRecords.

``verify`` never short-circuits: the signer's root identity is resolved even
when one of the checks fails, and callers must inspect both booleans.

``signature_verified`` holds when the digest of the record's data portion equals
``signature.message`` and the Ed25519 signature over that message checks out.
``content_binding_verified`` holds when the expected identity equals
``contentBinding.hash``.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict

from verigraph.core import canonical_digest
from verigraph.errors import SignatureError
from verigraph.identity import IdentityRegistry
from verigraph.observability import EngineLayer, get_logger
from verigraph.schema import AssetRecord
from verigraph.signing import recover_signer

logger = get_logger("verify", EngineLayer.VERIFY)


@dataclass
class VerificationResult:
    signature_verified: bool
    content_binding_verified: bool
    signer: str
    root_identity: str

    @property
    def ok(self) -> bool:
        return self.signature_verified and self.content_binding_verified

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def verify(identity: str, record: AssetRecord, registry: IdentityRegistry) -> VerificationResult:
    """Check ``record`` against the expected ``identity``.

    ``signature_verified`` is False when the recomputed digest equals
    ``signature.message`` but no signer can be recovered from the signature.
    """
    digest = canonical_digest(record.data_dict())
    digest_matches = digest == record.signature.message

    try:
        signer = recover_signer(record.signature.message, record.signature.signature)
    except SignatureError as exc:
        logger.warning("Signer could not be recovered", operation="verify", identity=identity, reason=str(exc))
        signer = ""

    root = registry.who_is(signer) if signer else ""
    result = VerificationResult(
        signature_verified=digest_matches and bool(signer),
        content_binding_verified=identity == record.content_binding.hash,
        signer=signer,
        root_identity=root,
    )
    logger.info(
        "Record verified" if result.ok else "Record failed verification",
        operation="verify",
        identity=identity,
        signature_verified=result.signature_verified,
        content_binding_verified=result.content_binding_verified,
    )
    return result


def verify_dict(identity: str, obj: Dict[str, Any], registry: IdentityRegistry) -> VerificationResult:
    """Verify a record in its at-rest JSON form."""
    return verify(identity, AssetRecord.from_dict(obj), registry)
