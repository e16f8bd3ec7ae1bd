"""
Broadcast of finalized transactions.
"""

from __future__ import annotations

from loguru import logger

from utxowallet.backends.provider_set import ProviderSet
from utxowallet.errors import (
    AllProvidersUnavailableError,
    BroadcastFailedError,
    TxidMismatchError,
)
from utxowallet.wallet.models import FinalizedTransaction


class Broadcaster:
    def __init__(self, providers: ProviderSet):
        self.providers = providers

    async def broadcast(self, finalized: FinalizedTransaction) -> str:
        """
        Submit ``finalized`` and return its txid.

        Raises:
            BroadcastFailedError: no provider accepted the transaction
            TxidMismatchError: a provider accepted it under a different txid
        """
        try:
            reported = await self.providers.broadcast_transaction(finalized.hex)
        except AllProvidersUnavailableError as e:
            raise BroadcastFailedError(
                f"Broadcast of {finalized.txid} failed: {e.message}", finalized
            ) from e

        if reported != finalized.txid:
            logger.error(
                f"Provider returned txid {reported} for locally computed {finalized.txid}"
            )
            raise TxidMismatchError(expected=finalized.txid, reported=reported)

        logger.info(f"Broadcast {finalized.txid}")
        return finalized.txid
