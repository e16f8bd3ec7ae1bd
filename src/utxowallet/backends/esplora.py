"""
Esplora REST API backend (blockstream.info, mempool.space and compatibles).
"""

from __future__ import annotations

import re
from typing import Any
from urllib.parse import urlparse

import httpx
from loguru import logger

from utxowallet.backends.base import ProviderBackend
from utxowallet.constants import DEFAULT_REQUEST_TIMEOUT
from utxowallet.errors import ProviderError
from utxowallet.wallet.models import AddressStats, Utxo

TXID_RE = re.compile(r"^[0-9a-fA-F]{64}$")
MAX_VOUT = 0xFFFFFFFF


class EsploraBackend(ProviderBackend):
    """
    Blockchain backend using an Esplora-compatible explorer API.

    Endpoints used:
    - GET  /address/{address}        funded/spent totals
    - GET  /address/{address}/utxo   unspent outputs
    - GET  /tx/{txid}/hex            raw transaction
    - POST /tx                       broadcast (body is the raw hex)
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._name = urlparse(self.base_url).netloc or self.base_url
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def name(self) -> str:
        return self._name

    async def _request(self, method: str, path: str, content: str | None = None) -> httpx.Response:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = await self.client.request(method, url, content=content)
        except httpx.HTTPError as e:
            logger.debug(f"{self.name}: {method} {path} failed: {type(e).__name__}: {e}")
            raise

        if not response.is_success:
            detail = response.text.strip()[:200]
            raise ProviderError(
                self.name,
                f"{method} {path} returned HTTP {response.status_code}: {detail}",
                status_code=response.status_code,
            )
        return response

    async def _get_json(self, path: str) -> Any:
        response = await self._request("GET", path)
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(self.name, f"GET {path} returned invalid JSON") from e

    async def get_address_stats(self, address: str) -> AddressStats:
        data = await self._get_json(f"address/{address}")
        try:
            chain = data["chain_stats"]
            mempool = data.get("mempool_stats") or {}
            return AddressStats(
                address=address,
                funded_txo_sum=int(chain["funded_txo_sum"]),
                spent_txo_sum=int(chain["spent_txo_sum"]),
                mempool_funded_txo_sum=int(mempool.get("funded_txo_sum", 0)),
                mempool_spent_txo_sum=int(mempool.get("spent_txo_sum", 0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderError(self.name, f"Malformed address stats: {e}") from e

    async def get_utxos(self, address: str) -> list[Utxo]:
        data = await self._get_json(f"address/{address}/utxo")
        if not isinstance(data, list):
            raise ProviderError(self.name, "UTXO list is not an array")

        utxos: list[Utxo] = []
        try:
            for entry in data:
                status = entry.get("status") or {}
                txid = str(entry["txid"])
                if not TXID_RE.match(txid):
                    raise ValueError(f"bad txid {txid!r}")
                vout = entry["vout"]
                if not isinstance(vout, int) or isinstance(vout, bool) or not 0 <= vout <= MAX_VOUT:
                    raise ValueError(f"bad vout {vout!r}")
                value = entry["value"]
                if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                    raise ValueError(f"bad value {value!r}")
                utxos.append(
                    Utxo(
                        txid=txid.lower(),
                        vout=vout,
                        value=value,
                        confirmed=bool(status.get("confirmed", False)),
                        block_height=status.get("block_height"),
                    )
                )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ProviderError(self.name, f"Malformed UTXO entry: {e}") from e

        logger.debug(f"{self.name}: {len(utxos)} UTXOs for {address}")
        return utxos

    async def get_raw_transaction(self, txid: str) -> bytes:
        response = await self._request("GET", f"tx/{txid}/hex")
        try:
            return bytes.fromhex(response.text.strip())
        except ValueError as e:
            raise ProviderError(self.name, f"Raw transaction {txid} is not hex") from e

    async def broadcast_transaction(self, tx_hex: str) -> str:
        response = await self._request("POST", "tx", content=tx_hex)
        txid = response.text.strip()
        if not TXID_RE.match(txid):
            raise ProviderError(self.name, f"Broadcast returned unexpected body: {txid[:80]}")
        logger.info(f"Broadcast via {self.name}: {txid}")
        return txid.lower()

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()
