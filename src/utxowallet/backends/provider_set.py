"""
Ordered set of independent providers with horizontal fallback.

Each operation is tried once per backend, in order, until one succeeds.
A backend is never retried within the same call.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

import httpx
from loguru import logger

from utxowallet.backends.base import ProviderBackend
from utxowallet.backends.esplora import EsploraBackend
from utxowallet.constants import DEFAULT_REQUEST_TIMEOUT
from utxowallet.errors import AllProvidersUnavailableError, ProviderError
from utxowallet.wallet.models import AddressStats, Utxo

T = TypeVar("T")


class ProviderSet:
    def __init__(
        self,
        backends: Sequence[ProviderBackend],
        attempt_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        if not backends:
            raise ValueError("ProviderSet needs at least one backend")
        self.backends = list(backends)
        self.attempt_timeout = attempt_timeout

    @classmethod
    def from_urls(
        cls, urls: Sequence[str], timeout: float = DEFAULT_REQUEST_TIMEOUT
    ) -> ProviderSet:
        return cls([EsploraBackend(url, timeout=timeout) for url in urls], attempt_timeout=timeout)

    async def call(
        self,
        operation: str,
        fn: Callable[[ProviderBackend], Awaitable[T]],
    ) -> T:
        """
        Run ``fn`` against each backend in order and return the first success.

        Raises:
            AllProvidersUnavailableError: every backend failed
        """
        for position, backend in enumerate(self.backends, start=1):
            try:
                result = await asyncio.wait_for(fn(backend), timeout=self.attempt_timeout)
            except TimeoutError:
                logger.warning(
                    f"{operation} timed out on {backend.name} after {self.attempt_timeout}s "
                    f"(provider {position}/{len(self.backends)})"
                )
                continue
            except (httpx.HTTPError, ProviderError) as e:
                logger.warning(
                    f"{operation} failed on {backend.name} "
                    f"(provider {position}/{len(self.backends)}): {e}"
                )
                continue

            if position > 1:
                logger.info(f"{operation} served by fallback provider {backend.name}")
            return result

        logger.error(f"{operation}: all {len(self.backends)} providers unavailable")
        raise AllProvidersUnavailableError(operation, len(self.backends))

    async def get_address_stats(self, address: str) -> AddressStats:
        return await self.call("get_address_stats", lambda b: b.get_address_stats(address))

    async def get_utxos(self, address: str) -> list[Utxo]:
        return await self.call("get_utxos", lambda b: b.get_utxos(address))

    async def get_raw_transaction(self, txid: str) -> bytes:
        return await self.call("get_raw_transaction", lambda b: b.get_raw_transaction(txid))

    async def broadcast_transaction(self, tx_hex: str) -> str:
        return await self.call("broadcast_transaction", lambda b: b.broadcast_transaction(tx_hex))

    async def close(self) -> None:
        for backend in self.backends:
            await backend.close()
