"""verigraph.signing

Signing key capability for asset records.

Profile:
- Signer addresses are `did:key` identifiers (Ed25519 only).
- The signed message is the `0x`-prefixed digest string of the record's data
  portion, encoded as UTF-8.
- The stored signature is base64url (no padding) of `public_key || signature`
  (32 + 64 bytes). Carrying the public key lets a verifier recover the signer
  address from `(message, signature)` alone; recovery fails unless the
  signature verifies under that key.
"""

from __future__ import annotations

import base64
import json
import pathlib
from typing import Any, Dict, Protocol, Tuple, Union, runtime_checkable

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from verigraph.errors import SignatureError

SIGNATURE_BYTES = 64
PUBLIC_KEY_BYTES = 32

# Base58 implementation (no external deps)
B58_ALPHABET = b"123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
B58_MAP = {c: i for i, c in enumerate(B58_ALPHABET)}


def b58decode(s: str) -> bytes:
    s_bytes = s.encode("ascii")
    num = 0
    for c in s_bytes:
        if c not in B58_MAP:
            raise ValueError("Invalid base58 character")
        num = num * 58 + B58_MAP[c]
    n_pad = 0
    for c in s_bytes:
        if c == B58_ALPHABET[0]:
            n_pad += 1
        else:
            break
    full = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    return b"\x00" * n_pad + full


def b58encode(b: bytes) -> str:
    n_pad = 0
    for c in b:
        if c == 0:
            n_pad += 1
        else:
            break
    num = int.from_bytes(b, "big")
    out = bytearray()
    while num > 0:
        num, rem = divmod(num, 58)
        out.append(B58_ALPHABET[rem])
    out.extend(B58_ALPHABET[0] for _ in range(n_pad))
    out.reverse()
    return out.decode("ascii")


def b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def b64url_decode(s: str) -> bytes:
    pad = "=" * ((4 - len(s) % 4) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("ascii"))


# ---------------------------------------------------------------------------
# did:key (Ed25519)
# ---------------------------------------------------------------------------


def did_key_from_public_bytes(pub: bytes) -> str:
    # multicodec 0xed01 + 32-byte pubkey (ed25519-pub)
    return "did:key:z" + b58encode(bytes([0xED, 0x01]) + pub)


def public_key_from_did_key(did: str) -> Ed25519PublicKey:
    """Parse a `did:key` (Ed25519) and return a cryptography public key."""
    if not did.startswith("did:key:z"):
        raise SignatureError("Only did:key:z... supported")
    try:
        decoded = b58decode(did[len("did:key:z"):])
    except ValueError as exc:
        raise SignatureError(str(exc)) from exc
    if not decoded.startswith(bytes([0xED, 0x01])):
        raise SignatureError("did:key multicodec prefix not recognized for Ed25519")
    raw = decoded[2:]
    if len(raw) != PUBLIC_KEY_BYTES:
        raise SignatureError(f"Ed25519 public key must be 32 bytes, got {len(raw)}")
    return Ed25519PublicKey.from_public_bytes(raw)


def _raw_public_bytes(key: Ed25519PublicKey) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


# ---------------------------------------------------------------------------
# Signer capability
# ---------------------------------------------------------------------------


@runtime_checkable
class Signer(Protocol):
    """Signing key capability: never exposes the credential itself."""

    def sign(self, digest: str) -> str:
        ...

    def address(self) -> str:
        ...


class Ed25519Signer:
    """Signer backed by an in-process Ed25519 private key."""

    def __init__(self, private_key: Ed25519PrivateKey):
        self._key = private_key
        self._public = _raw_public_bytes(private_key.public_key())
        self._did = did_key_from_public_bytes(self._public)

    @classmethod
    def generate(cls) -> "Ed25519Signer":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_jwk(cls, jwk: Dict[str, Any]) -> "Ed25519Signer":
        """Load from an OKP JWK with both `d` and `x` members."""
        if jwk.get("kty") != "OKP" or jwk.get("crv") != "Ed25519":
            raise SignatureError("Only OKP/Ed25519 JWK is supported")
        d = jwk.get("d")
        if not d:
            raise SignatureError("JWK must include 'd' (private)")
        signer = cls(Ed25519PrivateKey.from_private_bytes(b64url_decode(d)))
        x = jwk.get("x")
        if x and b64url_decode(x) != signer._public:
            raise SignatureError("JWK 'x' does not match the private key")
        return signer

    @classmethod
    def from_jwk_file(cls, path: Union[str, pathlib.Path]) -> "Ed25519Signer":
        key_obj = json.loads(pathlib.Path(path).read_text(encoding="utf-8"))
        if isinstance(key_obj, dict) and isinstance(key_obj.get("private_jwk"), dict):
            key_obj = key_obj["private_jwk"]
        if not isinstance(key_obj, dict):
            raise SignatureError("key file must be a JSON object")
        return cls.from_jwk(key_obj)

    def address(self) -> str:
        return self._did

    def sign(self, digest: str) -> str:
        if not digest:
            raise SignatureError("nothing to sign")
        sig = self._key.sign(digest.encode("utf-8"))
        return b64url_encode(self._public + sig)


def _split_signature(signature: str) -> Tuple[bytes, bytes]:
    try:
        raw = b64url_decode(signature)
    except (ValueError, UnicodeEncodeError) as exc:
        raise SignatureError(f"signature is not base64url: {exc}") from exc
    if len(raw) != PUBLIC_KEY_BYTES + SIGNATURE_BYTES:
        raise SignatureError(
            f"signature must be {PUBLIC_KEY_BYTES + SIGNATURE_BYTES} bytes, got {len(raw)}"
        )
    return raw[:PUBLIC_KEY_BYTES], raw[PUBLIC_KEY_BYTES:]


def recover_signer(message: str, signature: str) -> str:
    """Return the did:key that produced ``signature`` over ``message``.

    Raises:
        SignatureError: if the signature is malformed or does not verify
    """
    pub_bytes, sig = _split_signature(signature)
    try:
        Ed25519PublicKey.from_public_bytes(pub_bytes).verify(sig, message.encode("utf-8"))
    except (InvalidSignature, ValueError) as exc:
        raise SignatureError("signature does not verify") from exc
    return did_key_from_public_bytes(pub_bytes)


def generate_ed25519_jwk(kid: str = "key-1") -> Dict[str, Any]:
    """Generate a new Ed25519 OKP JWK keypair."""
    priv = Ed25519PrivateKey.generate()
    priv_bytes = priv.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    pub_bytes = _raw_public_bytes(priv.public_key())
    return {
        "kty": "OKP",
        "crv": "Ed25519",
        "x": b64url_encode(pub_bytes),
        "d": b64url_encode(priv_bytes),
        "kid": kid,
    }
