"""
Exception hierarchy for Kerykeion.

All engine exceptions inherit from KerykeionError. Transport problems
surface as RpcError subclasses; node-reported domain failures are mapped
onto the taxonomy below by ``classify_node_error`` and reach the caller
unmodified.
"""

from __future__ import annotations

from typing import Any, Optional


class KerykeionError(Exception):
    """Base exception for all Kerykeion errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigError(KerykeionError):
    """Configuration is missing or invalid."""


class InvalidStateError(KerykeionError):
    """An operation was attempted from a state that does not allow it."""


# ============ RPC transport ============


class RpcError(KerykeionError):
    """A remote procedure call failed."""

    def __init__(
        self,
        message: str,
        method: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.method = method


class ConnectivityError(RpcError):
    """
    The node could not be reached or did not answer in time.

    Retryable for idempotent reads, never for submissions.
    """


class ProtocolError(RpcError):
    """The node answered with something that is not a JSON-RPC response."""


class RpcApplicationError(RpcError):
    """The node returned a JSON-RPC error object."""

    def __init__(
        self,
        message: str,
        method: Optional[str] = None,
        code: Optional[int] = None,
        data: Any = None,
    ) -> None:
        super().__init__(message, method=method, details={"code": code} if code is not None else None)
        self.code = code
        self.data = data


# ============ Domain ============


class InsufficientFunds(KerykeionError):
    """The account balance cannot cover value plus the maximum fee."""

    def __init__(
        self,
        message: str,
        required: Optional[int] = None,
        available: Optional[int] = None,
    ) -> None:
        details = {}
        if required is not None:
            details["required"] = required
        if available is not None:
            details["available"] = available
        super().__init__(message, details)
        self.required = required
        self.available = available


class NonceConflict(KerykeionError):
    """
    The node rejected the nonce or considers the payload already known.

    The caller must re-plan nonce and fee and submit a new transaction.
    """


class EstimationFailure(KerykeionError):
    """Gas estimation failed, usually because the call reverts."""

    def __init__(self, message: str, revert_reason: Optional[str] = None) -> None:
        super().__init__(message, {"revert_reason": revert_reason} if revert_reason else None)
        self.revert_reason = revert_reason


class FeeUnavailable(KerykeionError):
    """The node could not supply a usable fee quote."""


class ReceiptTimeout(KerykeionError):
    """
    No receipt arrived before the deadline.

    Not terminal: the transaction may still be mined later.
    """

    def __init__(self, message: str, tx_hash: Optional[str] = None) -> None:
        super().__init__(message, {"tx_hash": tx_hash} if tx_hash else None)
        self.tx_hash = tx_hash


class DecodeMismatch(KerykeionError):
    """Bytes or topics do not match the declared schema."""


class SubscriptionDropped(KerykeionError):
    """
    The subscription stream failed.

    Reconnected automatically; ``terminal`` is set once the manager gives up.
    """

    def __init__(self, message: str, terminal: bool = False) -> None:
        super().__init__(message)
        self.terminal = terminal


# ============ Node error classification ============

_NONCE_CONFLICT_MARKERS = (
    "nonce too low",
    "already known",
    "known transaction",
    "replacement transaction underpriced",
    "transaction underpriced",
    "nonce has already been used",
)


def classify_node_error(error: RpcApplicationError) -> KerykeionError:
    """Map a node error message onto the domain taxonomy.

    Returns the original error when no domain class applies.
    """
    message = error.message.lower()
    if "insufficient funds" in message:
        return InsufficientFunds(error.message)
    if any(marker in message for marker in _NONCE_CONFLICT_MARKERS):
        return NonceConflict(error.message, {"code": error.code} if error.code is not None else None)
    return error
