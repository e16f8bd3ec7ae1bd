"""
Fee estimation and coin selection.

Selection is first-fit accumulate: UTXOs are taken in the order the
provider listed them until they cover the target plus the fee for the
inputs taken so far. No sorting, no randomness.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence

from loguru import logger

from utxowallet.config import WalletConfig
from utxowallet.constants import (
    DEFAULT_ESTIMATED_OUTPUTS,
    DEFAULT_FEE_RATE,
    P2WPKH_INPUT_VBYTES,
    P2WPKH_OUTPUT_VBYTES,
    TX_OVERHEAD_VBYTES,
)
from utxowallet.errors import InsufficientFundsError
from utxowallet.wallet.models import CoinSelection, Utxo

FeeFunction = Callable[[int], int]


class FeeEstimator:
    """
    Fixed-rate fee model.

    fee = (overhead + inputs * input_vbytes + outputs * output_vbytes) * fee_rate
    """

    def __init__(
        self,
        fee_rate: int = DEFAULT_FEE_RATE,
        input_vbytes: int = P2WPKH_INPUT_VBYTES,
        output_vbytes: int = P2WPKH_OUTPUT_VBYTES,
        overhead_vbytes: int = TX_OVERHEAD_VBYTES,
        estimated_outputs: int = DEFAULT_ESTIMATED_OUTPUTS,
    ):
        self.fee_rate = fee_rate
        self.input_vbytes = input_vbytes
        self.output_vbytes = output_vbytes
        self.overhead_vbytes = overhead_vbytes
        self.estimated_outputs = estimated_outputs

    @classmethod
    def from_config(cls, config: WalletConfig) -> FeeEstimator:
        return cls(
            fee_rate=config.fee_rate,
            input_vbytes=config.input_vbytes,
            output_vbytes=config.output_vbytes,
            overhead_vbytes=config.overhead_vbytes,
            estimated_outputs=config.estimated_outputs,
        )

    def estimate_vsize(self, input_count: int) -> int:
        return (
            self.overhead_vbytes
            + input_count * self.input_vbytes
            + self.estimated_outputs * self.output_vbytes
        )

    def estimate(self, input_count: int) -> int:
        return self.estimate_vsize(input_count) * self.fee_rate

    def __call__(self, input_count: int) -> int:
        return self.estimate(input_count)


class CoinSelector:
    def select(
        self,
        utxos: Sequence[Utxo],
        target_value: int,
        fee_estimate_fn: FeeFunction,
    ) -> CoinSelection:
        """
        Select UTXOs covering ``target_value`` plus the fee.

        The fee is recomputed for every accepted input since it grows with
        the input count.

        Raises:
            InsufficientFundsError: the whole set does not cover the target
        """
        if target_value <= 0:
            raise ValueError("Target value must be positive")

        selected: list[Utxo] = []
        input_sum = 0
        fee = fee_estimate_fn(0)

        for utxo in utxos:
            selected.append(utxo)
            input_sum += utxo.value
            fee = fee_estimate_fn(len(selected))
            if input_sum >= target_value + fee:
                logger.debug(
                    f"Selected {len(selected)}/{len(utxos)} UTXOs: "
                    f"{input_sum} sats for {target_value} + {fee} fee"
                )
                return CoinSelection(inputs=selected, input_sum=input_sum, fee=fee)

        raise InsufficientFundsError(target_value + fee, input_sum)
