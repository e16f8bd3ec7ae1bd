"""
Base blockchain data provider interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from utxowallet.wallet.models import AddressStats, Utxo


class ProviderBackend(ABC):
    """
    One independent source of blockchain data for a single address.

    Implementations raise ``ProviderError`` for non-2xx responses and
    unusable payloads, and let ``httpx.HTTPError`` propagate for transport
    failures. ``ProviderSet`` turns both into fallback to the next backend.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Short identifier used in logs"""

    @abstractmethod
    async def get_address_stats(self, address: str) -> AddressStats:
        """Get funded/spent totals for an address"""

    @abstractmethod
    async def get_utxos(self, address: str) -> list[Utxo]:
        """Get unspent outputs of an address, in provider order"""

    @abstractmethod
    async def get_raw_transaction(self, txid: str) -> bytes:
        """Get the serialized transaction for txid"""

    @abstractmethod
    async def broadcast_transaction(self, tx_hex: str) -> str:
        """Broadcast transaction, returns txid"""

    async def close(self) -> None:
        """Close backend connection"""
        pass
