"""
Wallet data models.

All amounts are integer satoshis.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace


@dataclass(frozen=True)
class Utxo:
    """An unspent output of the wallet address as reported by a provider"""

    txid: str
    vout: int
    value: int
    confirmed: bool = True
    block_height: int | None = None
    # Full parent transaction, fetched only for selected inputs
    raw_parent: bytes | None = field(default=None, repr=False, compare=False)

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"

    @property
    def is_hydrated(self) -> bool:
        return self.raw_parent is not None

    def with_parent(self, raw_parent: bytes) -> Utxo:
        return replace(self, raw_parent=raw_parent)


@dataclass(frozen=True)
class TxOutput:
    address: str
    value: int


@dataclass(frozen=True)
class CoinSelection:
    """Result of coin selection"""

    inputs: list[Utxo]
    input_sum: int
    fee: int


@dataclass(frozen=True)
class UnsignedTransaction:
    """
    Inputs and outputs of a payment before signing.

    ``fee`` is whatever the inputs pay beyond the outputs, so dust that was
    not returned as change is already counted in it.
    """

    inputs: list[Utxo]
    payment_output: TxOutput
    change_output: TxOutput | None
    fee: int

    @property
    def input_sum(self) -> int:
        return sum(utxo.value for utxo in self.inputs)

    @property
    def outputs(self) -> list[TxOutput]:
        if self.change_output is None:
            return [self.payment_output]
        return [self.payment_output, self.change_output]

    @property
    def output_sum(self) -> int:
        return sum(out.value for out in self.outputs)

    def is_balanced(self) -> bool:
        return self.input_sum == self.output_sum + self.fee


@dataclass(frozen=True)
class FinalizedTransaction:
    """Signed, serialized transaction. The txid is computed from ``raw``."""

    raw: bytes = field(repr=False)
    txid: str
    fee: int
    vsize: int

    @property
    def hex(self) -> str:
        return self.raw.hex()


@dataclass(frozen=True)
class AddressStats:
    """Funded/spent totals for an address as reported by a provider"""

    address: str
    funded_txo_sum: int
    spent_txo_sum: int
    mempool_funded_txo_sum: int = 0
    mempool_spent_txo_sum: int = 0

    @property
    def confirmed_balance(self) -> int:
        return self.funded_txo_sum - self.spent_txo_sum

    @property
    def unconfirmed_delta(self) -> int:
        return self.mempool_funded_txo_sum - self.mempool_spent_txo_sum
