"""
Transaction builder and binary encoding.

Builds the unsigned payment from:
- Selected, hydrated UTXOs of the wallet address
- The recipient output
- A change output back to the wallet address, unless it would be dust
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field

from loguru import logger

from utxowallet.config import NetworkType
from utxowallet.constants import SEQUENCE_FINAL, STANDARD_DUST_LIMIT, TX_LOCKTIME, TX_VERSION
from utxowallet.errors import InsufficientFundsError
from utxowallet.wallet.address import address_to_scriptpubkey
from utxowallet.wallet.models import TxOutput, UnsignedTransaction, Utxo


@dataclass
class TxIn:
    """Transaction input."""

    txid: str
    vout: int
    script_sig: bytes = b""
    sequence: int = SEQUENCE_FINAL
    witness: list[bytes] = field(default_factory=list)


@dataclass
class TxOut:
    """Transaction output."""

    value: int
    script: bytes


@dataclass
class ParsedTransaction:
    version: int
    inputs: list[TxIn]
    outputs: list[TxOut]
    locktime: int
    has_witness: bool

    @property
    def txid(self) -> str:
        return compute_txid(self.inputs, self.outputs, self.version, self.locktime)


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def varint(n: int) -> bytes:
    """Encode integer as Bitcoin varint."""
    if n < 0xFD:
        return bytes([n])
    elif n <= 0xFFFF:
        return bytes([0xFD]) + struct.pack("<H", n)
    elif n <= 0xFFFFFFFF:
        return bytes([0xFE]) + struct.pack("<I", n)
    else:
        return bytes([0xFF]) + struct.pack("<Q", n)


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    """Read varint at offset, returns (value, new_offset)."""
    first = data[offset]
    if first < 0xFD:
        return first, offset + 1
    size = {0xFD: 2, 0xFE: 4, 0xFF: 8}[first]
    chunk = data[offset + 1 : offset + 1 + size]
    if len(chunk) != size:
        raise ValueError("truncated varint")
    return int.from_bytes(chunk, "little"), offset + 1 + size


def serialize_outpoint(txid: str, vout: int) -> bytes:
    """Serialize outpoint (txid:vout)."""
    # txid is in RPC format (big-endian), need to reverse for raw tx
    return bytes.fromhex(txid)[::-1] + struct.pack("<I", vout)


def serialize_input(inp: TxIn) -> bytes:
    return (
        serialize_outpoint(inp.txid, inp.vout)
        + varint(len(inp.script_sig))
        + inp.script_sig
        + struct.pack("<I", inp.sequence)
    )


def serialize_output(out: TxOut) -> bytes:
    return struct.pack("<Q", out.value) + varint(len(out.script)) + out.script


def serialize_tx(
    inputs: list[TxIn],
    outputs: list[TxOut],
    version: int = TX_VERSION,
    locktime: int = TX_LOCKTIME,
    include_witness: bool = True,
) -> bytes:
    """
    Serialize transaction to bytes.

    The segwit marker and witness section are only written when some input
    carries a witness and ``include_witness`` is set.
    """
    segwit = include_witness and any(inp.witness for inp in inputs)

    result = struct.pack("<I", version)
    if segwit:
        result += bytes([0x00, 0x01])

    result += varint(len(inputs))
    for inp in inputs:
        result += serialize_input(inp)

    result += varint(len(outputs))
    for out in outputs:
        result += serialize_output(out)

    if segwit:
        for inp in inputs:
            result += varint(len(inp.witness))
            for item in inp.witness:
                result += varint(len(item)) + item

    result += struct.pack("<I", locktime)
    return result


def compute_txid(
    inputs: list[TxIn],
    outputs: list[TxOut],
    version: int = TX_VERSION,
    locktime: int = TX_LOCKTIME,
) -> str:
    """Calculate txid (double SHA256 of non-witness data)."""
    data = serialize_tx(inputs, outputs, version, locktime, include_witness=False)
    return hash256(data)[::-1].hex()


def compute_vsize(inputs: list[TxIn], outputs: list[TxOut]) -> int:
    base = len(serialize_tx(inputs, outputs, include_witness=False))
    total = len(serialize_tx(inputs, outputs))
    weight = base * 3 + total
    return (weight + 3) // 4


def deserialize_transaction(tx_bytes: bytes) -> ParsedTransaction:
    """
    Parse a serialized transaction.

    Raises:
        ValueError: truncated, malformed or trailing data
    """
    try:
        offset = 0
        version = int.from_bytes(tx_bytes[0:4], "little")
        offset += 4

        has_witness = False
        if tx_bytes[offset] == 0x00 and tx_bytes[offset + 1] == 0x01:
            has_witness = True
            offset += 2

        input_count, offset = read_varint(tx_bytes, offset)
        inputs: list[TxIn] = []
        for _ in range(input_count):
            txid = tx_bytes[offset : offset + 32][::-1].hex()
            offset += 32
            vout = int.from_bytes(tx_bytes[offset : offset + 4], "little")
            offset += 4
            script_len, offset = read_varint(tx_bytes, offset)
            script_sig = tx_bytes[offset : offset + script_len]
            offset += script_len
            sequence = int.from_bytes(tx_bytes[offset : offset + 4], "little")
            offset += 4
            inputs.append(TxIn(txid, vout, script_sig, sequence))

        output_count, offset = read_varint(tx_bytes, offset)
        outputs: list[TxOut] = []
        for _ in range(output_count):
            value = int.from_bytes(tx_bytes[offset : offset + 8], "little")
            offset += 8
            script_len, offset = read_varint(tx_bytes, offset)
            script = tx_bytes[offset : offset + script_len]
            offset += script_len
            outputs.append(TxOut(value, script))

        if has_witness:
            for inp in inputs:
                stack_count, offset = read_varint(tx_bytes, offset)
                for _ in range(stack_count):
                    item_len, offset = read_varint(tx_bytes, offset)
                    inp.witness.append(tx_bytes[offset : offset + item_len])
                    offset += item_len

        locktime = int.from_bytes(tx_bytes[offset : offset + 4], "little")
        offset += 4
    except (IndexError, KeyError) as e:
        raise ValueError(f"Failed to parse transaction: {e}") from e

    if offset != len(tx_bytes):
        raise ValueError("Failed to parse transaction: length mismatch")

    return ParsedTransaction(version, inputs, outputs, locktime, has_witness)


class TransactionBuilder:
    """
    Assembles the unsigned payment and applies the dust policy.

    Change strictly below ``dust_threshold`` is not created; the remainder
    stays with the fee so that inputs == outputs + fee holds exactly.
    """

    def __init__(
        self,
        network: NetworkType = NetworkType.MAINNET,
        dust_threshold: int = STANDARD_DUST_LIMIT,
    ):
        self.network = network
        self.dust_threshold = dust_threshold

    def build(
        self,
        inputs: list[Utxo],
        payment_output: TxOutput,
        input_sum: int,
        fee: int,
        change_address: str,
    ) -> UnsignedTransaction:
        if input_sum != sum(utxo.value for utxo in inputs):
            raise ValueError("input_sum does not match the selected inputs")
        if payment_output.value <= 0 or fee < 0:
            raise ValueError("Payment value must be positive and fee non-negative")

        change = input_sum - payment_output.value - fee
        if change < 0:
            raise InsufficientFundsError(payment_output.value + fee, input_sum)

        change_output: TxOutput | None = None
        if change >= self.dust_threshold:
            change_output = TxOutput(address=change_address, value=change)
        else:
            if change:
                logger.debug(f"Change of {change} sats is below dust, adding it to the fee")
            fee += change

        unsigned = UnsignedTransaction(
            inputs=list(inputs),
            payment_output=payment_output,
            change_output=change_output,
            fee=fee,
        )
        if not unsigned.is_balanced():
            raise ValueError("Inputs do not equal outputs plus fee")

        logger.debug(
            f"Built unsigned tx: {len(inputs)} inputs, {len(unsigned.outputs)} outputs, "
            f"fee {fee} sats"
        )
        return unsigned

    def skeleton(self, unsigned: UnsignedTransaction) -> tuple[list[TxIn], list[TxOut]]:
        """Unsigned inputs and encoded outputs, in transaction order."""
        tx_inputs = [TxIn(txid=utxo.txid, vout=utxo.vout) for utxo in unsigned.inputs]
        tx_outputs = [
            TxOut(value=out.value, script=address_to_scriptpubkey(out.address, self.network))
            for out in unsigned.outputs
        ]
        return tx_inputs, tx_outputs
