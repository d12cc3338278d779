"""
Encryption collaborator.

``EncryptionService`` is the surface the engine needs: encrypt bytes bound to an
asset identity and hand back an opaque access token plus the ciphertext to
store. ``AesGcmEncryptionService`` is a local implementation that wraps a fresh
per-asset AES-256-GCM key under a master key.

``EncryptionClient`` owns the service connection. It is created disconnected,
connects on first use (or on ``connect()``), and is released by
``disconnect()`` or by leaving its ``with`` block. Every call is bounded by
``timeout_seconds``; a call that does not finish in time raises
``EncryptionTimeout`` and the item fails.
"""

from __future__ import annotations

import concurrent.futures
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol, runtime_checkable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from verigraph.core import sha256_bytes
from verigraph.errors import (
    CollaboratorError,
    DecodedError,
    EncryptionTimeout,
    ErrorKind,
    VerigraphError,
    wrap_collaborator_error,
)
from verigraph.observability import EngineLayer, get_logger
from verigraph.signing import b64url_decode, b64url_encode

logger = get_logger("encryption", EngineLayer.ENCRYPTION)

ACCESS_PROTOCOL = "aes-gcm"
NONCE_BYTES = 12
DEFAULT_TIMEOUT_SECONDS = 60.0


@dataclass
class EncryptionResult:
    """Opaque access token plus the ciphertext to store."""
    access_token: Dict[str, Any]
    ciphertext: bytes
    protocol: str = ACCESS_PROTOCOL


@runtime_checkable
class EncryptionService(Protocol):
    def encrypt(self, data: bytes, identity: str) -> EncryptionResult:
        ...

    def decrypt(self, ciphertext: bytes, access_token: Dict[str, Any]) -> bytes:
        ...


class AesGcmEncryptionService:
    """
    Envelope encryption with AES-256-GCM.

    The asset identity is bound as associated data, so a ciphertext cannot be
    replayed under a different asset.
    """

    def __init__(self, master_key: Optional[bytes] = None):
        self._master = AESGCM(master_key or AESGCM.generate_key(bit_length=256))

    @staticmethod
    def _seal(aead: AESGCM, plaintext: bytes, aad: bytes) -> bytes:
        nonce = os.urandom(NONCE_BYTES)
        return nonce + aead.encrypt(nonce, plaintext, aad)

    @staticmethod
    def _open(aead: AESGCM, sealed: bytes, aad: bytes) -> bytes:
        return aead.decrypt(sealed[:NONCE_BYTES], sealed[NONCE_BYTES:], aad)

    def encrypt(self, data: bytes, identity: str) -> EncryptionResult:
        aad = identity.encode("utf-8")
        data_key = AESGCM.generate_key(bit_length=256)
        ciphertext = self._seal(AESGCM(data_key), data, aad)
        wrapped = self._seal(self._master, data_key, aad)
        token = {
            "scheme": "aes-256-gcm",
            "identity": identity,
            "wrappedKey": b64url_encode(wrapped),
            "ciphertextHash": sha256_bytes(ciphertext),
        }
        return EncryptionResult(access_token=token, ciphertext=ciphertext)

    def decrypt(self, ciphertext: bytes, access_token: Dict[str, Any]) -> bytes:
        aad = str(access_token.get("identity", "")).encode("utf-8")
        try:
            data_key = self._open(self._master, b64url_decode(access_token["wrappedKey"]), aad)
            return self._open(AESGCM(data_key), ciphertext, aad)
        except (KeyError, InvalidTag, ValueError) as exc:
            raise CollaboratorError(
                DecodedError(kind=ErrorKind.UNKNOWN, message=f"decryption failed: {exc!r}"),
                collaborator="encryption",
            ) from exc


class EncryptionClient:
    """
    Lifecycle-owned handle on an encryption service.

    Example:
        with EncryptionClient(AesGcmEncryptionService, timeout_seconds=60) as client:
            result = client.encrypt(body, identity)
    """

    def __init__(
        self,
        factory: Callable[[], EncryptionService],
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self._factory = factory
        self.timeout_seconds = timeout_seconds
        self._service: Optional[EncryptionService] = None
        self._executor: Optional[concurrent.futures.ThreadPoolExecutor] = None
        self.connects = 0

    @property
    def connected(self) -> bool:
        return self._service is not None

    def connect(self) -> EncryptionService:
        if self._service is None:
            self._service = self._call(self._factory, "connect")
            self.connects += 1
            logger.info("Encryption service connected", operation="connect")
        return self._service

    def disconnect(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        if self._service is not None:
            self._service = None
            logger.info("Encryption service disconnected", operation="disconnect")

    def __enter__(self) -> "EncryptionClient":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.disconnect()

    def _call(self, func: Callable[[], Any], operation: str) -> Any:
        if self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="verigraph-encryption"
            )
        start = time.monotonic()
        future = self._executor.submit(func)
        try:
            return future.result(timeout=self.timeout_seconds)
        except concurrent.futures.TimeoutError:
            # The worker may still be running; abandon it with its executor.
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
            logger.error(
                "Encryption call timed out",
                error_code="timeout",
                operation=operation,
                timeout_seconds=self.timeout_seconds,
            )
            raise EncryptionTimeout(self.timeout_seconds)
        except VerigraphError:
            raise
        except Exception as exc:
            raise wrap_collaborator_error(exc, "encryption") from exc
        finally:
            logger.debug(
                "Encryption call finished",
                operation=operation,
                duration_ms=(time.monotonic() - start) * 1000,
            )

    def encrypt(self, data: bytes, identity: str) -> EncryptionResult:
        service = self.connect()
        return self._call(lambda: service.encrypt(data, identity), "encrypt")

    def decrypt(self, ciphertext: bytes, access_token: Dict[str, Any]) -> bytes:
        service = self.connect()
        return self._call(lambda: service.decrypt(ciphertext, access_token), "decrypt")
