"""
Confirmed balance lookup used for display and polling.
"""

from __future__ import annotations

from utxowallet.backends.provider_set import ProviderSet


class BalanceAggregator:
    def __init__(self, providers: ProviderSet):
        self.providers = providers

    async def get_spendable_balance(self, address: str) -> int:
        """Confirmed funded minus confirmed spent, in sats. Mempool activity is ignored."""
        stats = await self.providers.get_address_stats(address)
        return stats.confirmed_balance
