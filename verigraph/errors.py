"""
Error taxonomy for the publish engine.

Three families, matching how failures are handled:

    InputError          Bad caller data. Rejected before any network call,
                        never retried.
    CollaboratorError   Ledger, storage or encryption failure. Carries a
                        DecodedError {kind, message, raw_data}.
    ConsistencyError    The ledger and storage disagree, or an action does not
                        match the node state. Fatal for the item.

Ledger failures arrive as arbitrary exceptions from the transport. The
``decode_ledger_error`` helper walks the nested ``data`` / ``error`` attributes
the way RPC clients wrap them and classifies the revert payload.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


# =============================================================================
# EXCEPTIONS
# =============================================================================

class VerigraphError(Exception):
    """Base exception for the publish engine."""
    pass


class InputError(VerigraphError):
    """Invalid content item or record field."""

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class ErrorKind(Enum):
    """Classification of a collaborator failure."""
    EMPTY_RETURN = "empty-return"
    REVERT = "revert"
    PANIC = "panic"
    USER_REJECTED = "user-rejected"
    CUSTOM = "custom-contract-error"
    UNKNOWN = "unknown"


@dataclass
class DecodedError:
    """Tagged decoding of a collaborator failure."""
    kind: ErrorKind
    message: str
    raw_data: Optional[str] = None
    args: List[Any] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "raw_data": self.raw_data,
            "args": list(self.args),
        }


class CollaboratorError(VerigraphError):
    """A ledger, storage or encryption call failed."""

    def __init__(self, decoded: DecodedError, collaborator: str = "ledger"):
        self.decoded = decoded
        self.collaborator = collaborator
        super().__init__(f"{collaborator} {decoded.kind.value}: {decoded.message}")

    @property
    def kind(self) -> ErrorKind:
        return self.decoded.kind


class GasCeilingExceeded(CollaboratorError):
    """Current network price is above the configured ceiling."""

    def __init__(self, price: int, ceiling: int):
        self.price = price
        self.ceiling = ceiling
        super().__init__(
            DecodedError(
                kind=ErrorKind.UNKNOWN,
                message=f"gas price {price} exceeds configured ceiling {ceiling}",
            ),
            collaborator="ledger",
        )


class EncryptionTimeout(CollaboratorError):
    """Encryption call did not finish within its bounded wait."""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            DecodedError(
                kind=ErrorKind.UNKNOWN,
                message=f"encryption did not complete within {timeout_seconds}s",
            ),
            collaborator="encryption",
        )


class StorageError(CollaboratorError):
    """Storage put/get failure."""

    def __init__(self, message: str, raw_data: Optional[str] = None):
        super().__init__(
            DecodedError(kind=ErrorKind.UNKNOWN, message=message, raw_data=raw_data),
            collaborator="storage",
        )


class ConsistencyError(VerigraphError):
    """Ledger/storage state contradicts what the engine was told."""
    pass


class SignatureError(VerigraphError):
    """Signature could not be produced or parsed."""
    pass


# =============================================================================
# LEDGER ERROR DECODING
# =============================================================================

ERROR_STRING_PREFIX = "0x08c379a0"
PANIC_CODE_PREFIX = "0x4e487b71"

PANIC_REASONS: Dict[int, str] = {
    0x00: "Generic compiler panic",
    0x01: "Assertion error",
    0x11: "Arithmetic operation underflowed or overflowed outside of an unchecked block",
    0x12: "Division or modulo division by zero",
    0x21: "Tried to convert a value into an enum, but the value was too big or negative",
    0x22: "Incorrectly encoded storage byte array",
    0x31: ".pop() was called on an empty array",
    0x32: "Array accessed at an out-of-bounds or negative index",
    0x41: "Too much memory was allocated, or an array was created that is too large",
    0x51: "Called a zero-initialized variable of internal function type",
}


def _extract_error_data(error: Any) -> Optional[str]:
    """Walk nested ``data``/``error`` members until a hex payload is found."""
    current = error
    seen = 0
    while current is not None and seen < 16:
        seen += 1
        if isinstance(current, dict):
            data = current.get("data")
            nxt = current.get("error")
        else:
            data = getattr(current, "data", None)
            nxt = getattr(current, "error", None)
        if isinstance(data, dict):
            data = data.get("data")
        if isinstance(data, str) and data.startswith("0x"):
            return data
        current = nxt
    return None


def _abi_word(payload: bytes, offset: int) -> int:
    return int.from_bytes(payload[offset:offset + 32], "big")


def _decode_abi_string(encoded: str) -> str:
    payload = bytes.fromhex(encoded)
    offset = _abi_word(payload, 0)
    length = _abi_word(payload, offset)
    start = offset + 32
    if start + length > len(payload):
        raise ValueError("ABI string length exceeds payload")
    return payload[start:start + length].decode("utf-8")


def _decode_abi_uint(encoded: str) -> int:
    payload = bytes.fromhex(encoded)
    if len(payload) < 32:
        raise ValueError("ABI uint256 payload too short")
    return _abi_word(payload, 0)


def _decode_with_prefix(data: str, prefix: str, kind: ErrorKind, default_message: str) -> DecodedError:
    encoded = data[len(prefix):]
    try:
        if kind == ErrorKind.PANIC:
            code = _decode_abi_uint(encoded)
            reason = PANIC_REASONS.get(code, default_message)
            return DecodedError(kind=kind, message=reason, raw_data=data, args=[code])
        reason = _decode_abi_string(encoded)
        return DecodedError(kind=kind, message=reason, raw_data=data)
    except (ValueError, UnicodeDecodeError):
        return DecodedError(kind=ErrorKind.UNKNOWN, message=default_message, raw_data=data)


def decode_ledger_error(
    error: BaseException,
    custom_errors: Optional[Dict[str, str]] = None,
) -> DecodedError:
    """Classify a ledger transport failure.

    Args:
        error: The exception raised by the ledger client
        custom_errors: Optional map of 4-byte selector (0x-prefixed) to the
            contract's custom error name

    Returns:
        DecodedError with the kind, a human readable message and raw payload
    """
    if isinstance(error, CollaboratorError):
        return error.decoded

    message = str(error) or type(error).__name__
    data = _extract_error_data(error)

    if data is None:
        if "user rejected transaction" in message.lower():
            return DecodedError(
                kind=ErrorKind.USER_REJECTED,
                message="User has rejected the transaction",
            )
        return DecodedError(kind=ErrorKind.UNKNOWN, message=message)

    if data == "0x":
        return DecodedError(kind=ErrorKind.EMPTY_RETURN, message="Empty error data returned", raw_data=data)
    if data.startswith(ERROR_STRING_PREFIX):
        return _decode_with_prefix(data, ERROR_STRING_PREFIX, ErrorKind.REVERT, "Unknown error returned")
    if data.startswith(PANIC_CODE_PREFIX):
        return _decode_with_prefix(data, PANIC_CODE_PREFIX, ErrorKind.PANIC, "Unknown panic code")

    selector = data[:10]
    name = (custom_errors or {}).get(selector, selector)
    return DecodedError(kind=ErrorKind.CUSTOM, message=name, raw_data=data)


def wrap_ledger_error(error: BaseException) -> CollaboratorError:
    """Return ``error`` as a CollaboratorError, decoding it if needed."""
    if isinstance(error, CollaboratorError):
        return error
    return CollaboratorError(decode_ledger_error(error), collaborator="ledger")



def wrap_collaborator_error(error: BaseException, collaborator: str) -> VerigraphError:
    """Return ``error`` unchanged if it is already a VerigraphError, else as an unknown CollaboratorError."""
    if isinstance(error, VerigraphError):
        return error
    return CollaboratorError(
        DecodedError(kind=ErrorKind.UNKNOWN, message=str(error) or type(error).__name__),
        collaborator=collaborator,
    )
