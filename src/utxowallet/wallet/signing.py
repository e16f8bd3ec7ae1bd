"""
Transaction signing for single-key wallet inputs.

Each input is checked against its full parent transaction before it is
signed: the parent must hash to the input's txid and its output must carry
exactly the UTXO's value and a script this key controls. The script type
of that output picks the signing scheme:

- P2WPKH: BIP143 sighash, witness ``[sig, pubkey]``
- P2PKH: legacy sighash, scriptSig ``<sig> <pubkey>``
"""

from __future__ import annotations

import struct

from loguru import logger

from utxowallet.config import NetworkType
from utxowallet.constants import SIGHASH_ALL, TX_LOCKTIME, TX_VERSION
from utxowallet.errors import SigningError
from utxowallet.wallet.address import p2pkh_script, p2wpkh_script
from utxowallet.wallet.keys import KeyWipedError, SigningKeypair
from utxowallet.wallet.models import FinalizedTransaction, UnsignedTransaction, Utxo
from utxowallet.wallet.tx_builder import (
    TransactionBuilder,
    TxIn,
    TxOut,
    compute_txid,
    compute_vsize,
    deserialize_transaction,
    hash256,
    serialize_outpoint,
    serialize_output,
    serialize_tx,
    varint,
)


def compute_sighash_segwit(
    inputs: list[TxIn],
    outputs: list[TxOut],
    input_index: int,
    script_code: bytes,
    value: int,
    sighash_type: int = SIGHASH_ALL,
    version: int = TX_VERSION,
    locktime: int = TX_LOCKTIME,
) -> bytes:
    """BIP143 signature hash"""
    if input_index >= len(inputs):
        raise ValueError("Input index out of range")

    hash_prevouts = hash256(b"".join(serialize_outpoint(i.txid, i.vout) for i in inputs))
    hash_sequence = hash256(b"".join(struct.pack("<I", i.sequence) for i in inputs))
    hash_outputs = hash256(b"".join(serialize_output(out) for out in outputs))

    target = inputs[input_index]
    preimage = (
        struct.pack("<I", version)
        + hash_prevouts
        + hash_sequence
        + serialize_outpoint(target.txid, target.vout)
        + varint(len(script_code))
        + script_code
        + struct.pack("<Q", value)
        + struct.pack("<I", target.sequence)
        + hash_outputs
        + struct.pack("<I", locktime)
        + struct.pack("<I", sighash_type)
    )
    return hash256(preimage)


def compute_sighash_legacy(
    inputs: list[TxIn],
    outputs: list[TxOut],
    input_index: int,
    script_code: bytes,
    sighash_type: int = SIGHASH_ALL,
    version: int = TX_VERSION,
    locktime: int = TX_LOCKTIME,
) -> bytes:
    """Pre-segwit SIGHASH_ALL: only the signed input carries the prevout script"""
    if input_index >= len(inputs):
        raise ValueError("Input index out of range")

    stripped = [
        TxIn(
            txid=inp.txid,
            vout=inp.vout,
            script_sig=script_code if i == input_index else b"",
            sequence=inp.sequence,
        )
        for i, inp in enumerate(inputs)
    ]
    preimage = serialize_tx(stripped, outputs, version, locktime, include_witness=False)
    return hash256(preimage + struct.pack("<I", sighash_type))


def push_data(data: bytes) -> bytes:
    if len(data) >= 0x4C:
        raise ValueError("push too large for a direct push opcode")
    return bytes([len(data)]) + data


def verify_parent(utxo: Utxo, keypair: SigningKeypair) -> bytes:
    """
    Check a hydrated UTXO against its parent transaction.

    Returns:
        The scriptPubKey being spent

    Raises:
        SigningError: missing, corrupted or foreign parent data
    """
    if utxo.raw_parent is None:
        raise SigningError(f"Input {utxo.outpoint} has no parent transaction")

    try:
        parent = deserialize_transaction(utxo.raw_parent)
    except ValueError as e:
        raise SigningError(f"Parent transaction of {utxo.outpoint} is malformed: {e}") from e

    if parent.txid != utxo.txid:
        raise SigningError(f"Parent transaction does not hash to {utxo.txid}")
    if utxo.vout < 0 or utxo.vout >= len(parent.outputs):
        raise SigningError(f"Parent of {utxo.outpoint} has no output {utxo.vout}")

    prevout = parent.outputs[utxo.vout]
    if prevout.value != utxo.value:
        raise SigningError(
            f"Value mismatch for {utxo.outpoint}: provider says {utxo.value}, "
            f"parent says {prevout.value}"
        )

    pkh = keypair.pubkey_hash
    if prevout.script not in (p2wpkh_script(pkh), p2pkh_script(pkh)):
        raise SigningError(f"Input {utxo.outpoint} is not spendable by this key")

    return prevout.script


class Signer:
    """
    Signs every input of an unsigned transaction, in order, or none at all.

    The keypair is wiped when ``sign`` returns or raises.
    """

    def __init__(self, network: NetworkType = NetworkType.MAINNET):
        self.network = network

    def sign(
        self, unsigned: UnsignedTransaction, keypair: SigningKeypair
    ) -> FinalizedTransaction:
        try:
            return self._sign(unsigned, keypair)
        except SigningError:
            raise
        except (ValueError, struct.error, KeyWipedError) as e:
            raise SigningError(f"Failed to sign transaction: {e}") from e
        finally:
            keypair.wipe()

    def _sign(self, unsigned: UnsignedTransaction, keypair: SigningKeypair) -> FinalizedTransaction:
        if not unsigned.is_balanced():
            raise SigningError("Unsigned transaction does not balance")

        prev_scripts = [verify_parent(utxo, keypair) for utxo in unsigned.inputs]

        builder = TransactionBuilder(network=self.network)
        tx_inputs, tx_outputs = builder.skeleton(unsigned)

        pkh = keypair.pubkey_hash
        script_code = p2pkh_script(pkh)
        pubkey = keypair.public_key

        # Sighashes are taken over the unsigned skeleton before any input is filled in
        signatures: list[bytes] = []
        for index, (utxo, prev_script) in enumerate(zip(unsigned.inputs, prev_scripts)):
            if prev_script == p2wpkh_script(pkh):
                digest = compute_sighash_segwit(
                    tx_inputs, tx_outputs, index, script_code, utxo.value
                )
            else:
                digest = compute_sighash_legacy(tx_inputs, tx_outputs, index, prev_script)
            signatures.append(keypair.sign_digest(digest) + bytes([SIGHASH_ALL]))

        for inp, prev_script, sig in zip(tx_inputs, prev_scripts, signatures):
            if prev_script == p2wpkh_script(pkh):
                inp.witness = [sig, pubkey]
            else:
                inp.script_sig = push_data(sig) + push_data(pubkey)

        raw = serialize_tx(tx_inputs, tx_outputs)
        txid = compute_txid(tx_inputs, tx_outputs)
        vsize = compute_vsize(tx_inputs, tx_outputs)

        logger.info(f"Signed {len(tx_inputs)} inputs, txid {txid} ({vsize} vB)")
        return FinalizedTransaction(raw=raw, txid=txid, fee=unsigned.fee, vsize=vsize)
