"""
Error taxonomy for the send pipeline.

Every failure that crosses the wallet boundary is a WalletError with a
stable ``kind``. Provider-level exceptions are translated before they
leave the backends package.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from utxowallet.wallet.models import FinalizedTransaction


class ErrorKind(str, Enum):
    INVALID_PIN = "invalid_pin"
    NO_UTXOS_AVAILABLE = "no_utxos_available"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    ALL_PROVIDERS_UNAVAILABLE = "all_providers_unavailable"
    SIGNING_ERROR = "signing_error"
    BROADCAST_FAILED = "broadcast_failed"
    INVALID_REQUEST = "invalid_request"
    TXID_MISMATCH = "txid_mismatch"


class ProviderError(Exception):
    """A single backend returned a non-2xx status or an unusable payload."""

    def __init__(self, provider: str, message: str, status_code: int | None = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code


class WalletError(Exception):
    """Base class for all structured wallet failures."""

    kind: ErrorKind

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def retryable(self) -> bool:
        return self.kind in (
            ErrorKind.ALL_PROVIDERS_UNAVAILABLE,
            ErrorKind.BROADCAST_FAILED,
        )

    def to_dict(self) -> dict[str, str]:
        return {"error_kind": self.kind.value, "message": self.message}


class InvalidPinError(WalletError):
    kind = ErrorKind.INVALID_PIN


class NoUtxosAvailableError(WalletError):
    kind = ErrorKind.NO_UTXOS_AVAILABLE


class InsufficientFundsError(WalletError):
    kind = ErrorKind.INSUFFICIENT_FUNDS

    def __init__(self, required: int, available: int):
        super().__init__(f"Insufficient funds: need {required} sats, have {available} sats")
        self.required = required
        self.available = available


class AllProvidersUnavailableError(WalletError):
    kind = ErrorKind.ALL_PROVIDERS_UNAVAILABLE

    def __init__(self, operation: str, attempts: int):
        super().__init__(f"All {attempts} providers failed for {operation}")
        self.operation = operation
        self.attempts = attempts


class SigningError(WalletError):
    kind = ErrorKind.SIGNING_ERROR


class BroadcastFailedError(WalletError):
    """
    The transaction was built and signed but no provider accepted it.

    ``finalized`` can be handed to ``WalletOrchestrator.rebroadcast``
    without rebuilding or re-signing.
    """

    kind = ErrorKind.BROADCAST_FAILED

    def __init__(self, message: str, finalized: FinalizedTransaction):
        super().__init__(message)
        self.finalized = finalized


class InvalidRequestError(WalletError):
    kind = ErrorKind.INVALID_REQUEST


class TxidMismatchError(WalletError):
    """A provider accepted the broadcast but reported a different txid."""

    kind = ErrorKind.TXID_MISMATCH

    def __init__(self, expected: str, reported: str):
        super().__init__(f"Provider reported txid {reported}, expected {expected}")
        self.expected = expected
        self.reported = reported
