"""
utxowallet - self-custodial UTXO wallet transaction pipeline

Unlocks a PIN-protected key, selects coins, builds, signs and broadcasts
payments through a redundant set of explorer APIs.
"""

__version__ = "0.1.0"

from utxowallet.config import NetworkType, Settings, WalletConfig, get_settings
from utxowallet.constants import STANDARD_DUST_LIMIT
from utxowallet.errors import (
    AllProvidersUnavailableError,
    BroadcastFailedError,
    ErrorKind,
    InsufficientFundsError,
    InvalidPinError,
    InvalidRequestError,
    NoUtxosAvailableError,
    ProviderError,
    SigningError,
    TxidMismatchError,
    WalletError,
)

__all__ = [
    "AllProvidersUnavailableError",
    "BroadcastFailedError",
    "ErrorKind",
    "InsufficientFundsError",
    "InvalidPinError",
    "InvalidRequestError",
    "NetworkType",
    "NoUtxosAvailableError",
    "ProviderError",
    "STANDARD_DUST_LIMIT",
    "Settings",
    "SigningError",
    "TxidMismatchError",
    "WalletConfig",
    "WalletError",
    "get_settings",
]
