"""
UTXO snapshot and lazy parent-transaction hydration.
"""

from __future__ import annotations

from loguru import logger

from utxowallet.backends.provider_set import ProviderSet
from utxowallet.errors import NoUtxosAvailableError
from utxowallet.wallet.models import Utxo


class UtxoSetFetcher:
    """
    Fetches the spendable outputs of an address.

    Parent transactions cost one round-trip each, so they are only fetched
    (``hydrate``) for the UTXOs that coin selection actually picked.
    """

    def __init__(self, providers: ProviderSet, include_unconfirmed: bool = True):
        self.providers = providers
        self.include_unconfirmed = include_unconfirmed

    async def get_utxos(self, address: str) -> list[Utxo]:
        utxos = await self.providers.get_utxos(address)
        if not self.include_unconfirmed:
            utxos = [utxo for utxo in utxos if utxo.confirmed]

        if not utxos:
            raise NoUtxosAvailableError(f"No spendable UTXOs for {address}")

        logger.info(f"Fetched {len(utxos)} UTXOs ({sum(u.value for u in utxos)} sats)")
        return utxos

    async def hydrate(self, utxo: Utxo) -> Utxo:
        if utxo.is_hydrated:
            return utxo
        raw = await self.providers.get_raw_transaction(utxo.txid)
        return utxo.with_parent(raw)

    async def hydrate_all(self, utxos: list[Utxo]) -> list[Utxo]:
        hydrated = []
        for utxo in utxos:
            hydrated.append(await self.hydrate(utxo))
        return hydrated
