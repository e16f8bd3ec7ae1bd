"""
Bitcoin address and scriptPubKey utilities.
"""

from __future__ import annotations

import hashlib

import base58
import bech32

from utxowallet.config import NetworkType

# Base58 version bytes
P2PKH_VERSIONS = {0x00: NetworkType.MAINNET, 0x6F: NetworkType.TESTNET}
P2SH_VERSIONS = {0x05: NetworkType.MAINNET, 0xC4: NetworkType.TESTNET}


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def p2wpkh_script(pubkey_hash: bytes) -> bytes:
    """OP_0 <20-byte-hash>"""
    return bytes([0x00, 0x14]) + pubkey_hash


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    """OP_DUP OP_HASH160 <20-byte-hash> OP_EQUALVERIFY OP_CHECKSIG"""
    return bytes([0x76, 0xA9, 0x14]) + pubkey_hash + bytes([0x88, 0xAC])


def pubkey_to_p2wpkh_address(pubkey: bytes, network: NetworkType = NetworkType.MAINNET) -> str:
    """
    Convert compressed public key to P2WPKH (native segwit) address.
    BIP173 bech32 encoding.
    """
    if len(pubkey) != 33:
        raise ValueError(f"Invalid compressed pubkey length: {len(pubkey)}")

    address = bech32.encode(network.bech32_hrp, 0, hash160(pubkey))
    if address is None:
        raise ValueError("Failed to encode P2WPKH address")
    return address


def pubkey_to_p2pkh_address(pubkey: bytes, network: NetworkType = NetworkType.MAINNET) -> str:
    version = 0x00 if network.is_mainnet else 0x6F
    return base58.b58encode_check(bytes([version]) + hash160(pubkey)).decode("ascii")


def address_to_scriptpubkey(address: str, network: NetworkType = NetworkType.MAINNET) -> bytes:
    """
    Convert a Bitcoin address to scriptPubKey.

    Supports:
    - P2WPKH / P2WSH (witness v0, bech32)
    - P2TR (witness v1, bech32m)
    - P2PKH and P2SH (base58)

    Raises:
        ValueError: malformed address or address for another network
    """
    hrp = network.bech32_hrp
    if address.lower().startswith(hrp + "1"):
        witver, witprog = bech32.decode(hrp, address)
        if witver is None or witprog is None:
            raise ValueError(f"Invalid bech32 address: {address}")

        program = bytes(witprog)
        if witver == 0:
            if len(program) == 20:
                return bytes([0x00, 0x14]) + program
            if len(program) == 32:
                return bytes([0x00, 0x20]) + program
        elif witver == 1 and len(program) == 32:
            return bytes([0x51, 0x20]) + program

        raise ValueError(f"Unsupported witness program: v{witver}, {len(program)} bytes")

    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise ValueError(f"Invalid address: {address}") from e

    if len(decoded) != 21:
        raise ValueError(f"Invalid address payload length: {address}")

    version, payload = decoded[0], decoded[1:]
    expected = NetworkType.MAINNET if network.is_mainnet else NetworkType.TESTNET

    if P2PKH_VERSIONS.get(version) == expected:
        return p2pkh_script(payload)
    if P2SH_VERSIONS.get(version) == expected:
        return bytes([0xA9, 0x14]) + payload + bytes([0x87])

    raise ValueError(f"Address {address} is not valid for {network.value}")


def is_valid_address(address: str, network: NetworkType = NetworkType.MAINNET) -> bool:
    try:
        address_to_scriptpubkey(address, network)
    except ValueError:
        return False
    return True
