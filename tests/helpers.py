"""
Builders for fake chain data and fake provider backends.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

from coincurve import PrivateKey

from utxowallet.backends.base import ProviderBackend
from utxowallet.config import NetworkType
from utxowallet.wallet.address import hash160, p2wpkh_script, pubkey_to_p2wpkh_address
from utxowallet.wallet.models import AddressStats, Utxo
from utxowallet.wallet.tx_builder import TxIn, TxOut, compute_txid, serialize_tx

TEST_PIN = "4821"
WALLET_SECRET = bytes([0x11] * 32)
RECIPIENT_SECRET = bytes([0x22] * 32)


def address_for(secret: bytes, network: NetworkType = NetworkType.TESTNET) -> str:
    return pubkey_to_p2wpkh_address(PrivateKey(secret).public_key.format(), network)


def wallet_script(secret: bytes = WALLET_SECRET) -> bytes:
    return p2wpkh_script(hash160(PrivateKey(secret).public_key.format()))


def make_parent(outputs: list[tuple[int, bytes]], nonce: int = 0) -> tuple[str, bytes]:
    """Raw non-witness parent transaction paying ``outputs``, and its txid."""
    inputs = [TxIn(txid=f"{nonce + 1:064x}", vout=0)]
    tx_outputs = [TxOut(value=value, script=script) for value, script in outputs]
    return compute_txid(inputs, tx_outputs), serialize_tx(inputs, tx_outputs)


def make_utxo(value: int, nonce: int = 0, script: bytes | None = None) -> Utxo:
    """A wallet UTXO together with a parent transaction that backs it."""
    txid, raw = make_parent([(value, script or wallet_script())], nonce)
    return Utxo(txid=txid, vout=0, value=value, raw_parent=raw)


def make_backend(name: str) -> MagicMock:
    """Fake provider backend whose methods are AsyncMocks."""
    backend = MagicMock(spec=ProviderBackend)
    backend.name = name
    backend.get_address_stats = AsyncMock()
    backend.get_utxos = AsyncMock()
    backend.get_raw_transaction = AsyncMock()
    backend.broadcast_transaction = AsyncMock()
    backend.close = AsyncMock()
    return backend


def serve_chain(backend: MagicMock, utxos: list[Utxo], balance: int = 0) -> None:
    """Make ``backend`` answer for a wallet holding ``utxos``."""
    parents = {utxo.txid: utxo.raw_parent for utxo in utxos}
    listed = [
        Utxo(txid=u.txid, vout=u.vout, value=u.value, confirmed=u.confirmed) for u in utxos
    ]

    async def raw_tx(txid: str) -> bytes:
        return parents[txid]

    backend.get_utxos.return_value = listed
    backend.get_raw_transaction.side_effect = raw_tx
    backend.get_address_stats.return_value = AddressStats(
        address="", funded_txo_sum=balance, spent_txo_sum=0
    )
