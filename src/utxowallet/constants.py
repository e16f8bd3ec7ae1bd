"""
Bitcoin protocol and wallet policy constants.

Size figures are the vbyte model used for fee estimation. They describe
P2WPKH spends, which is what this wallet's keys produce.
"""

from __future__ import annotations

# Standard P2PKH dust limit in Bitcoin Core.
# Change below this is dropped and absorbed into the fee.
STANDARD_DUST_LIMIT = 546  # satoshis

SATS_PER_BTC = 100_000_000
BTC_DECIMALS = 8

# Fixed fee rate (sat/vbyte). Not derived from the mempool.
DEFAULT_FEE_RATE = 10

# Virtual size model
P2WPKH_INPUT_VBYTES = 68
P2WPKH_OUTPUT_VBYTES = 31
TX_OVERHEAD_VBYTES = 11
# Payment + change
DEFAULT_ESTIMATED_OUTPUTS = 2

# Esplora-compatible explorers, tried in order
DEFAULT_PROVIDER_URLS: list[str] = [
    "https://blockstream.info/api",
    "https://mempool.space/api",
]

DEFAULT_REQUEST_TIMEOUT = 30.0  # seconds per backend attempt
DEFAULT_BALANCE_POLL_INTERVAL = 30.0  # seconds

# PIN envelope (PBKDF2 + AES-256-CBC, two layers)
DEFAULT_KDF_ITERATIONS = 100_000
KDF_KEY_LENGTH = 32
AES_BLOCK_SIZE = 16
DEFAULT_MASTER_KEY = "worldstreet-wallet-v1"
MIN_PIN_LENGTH = 4

# Transaction serialization
TX_VERSION = 2
TX_LOCKTIME = 0
SEQUENCE_FINAL = 0xFFFFFFFF
SIGHASH_ALL = 1

# WIF version bytes
WIF_VERSION_MAINNET = 0x80
WIF_VERSION_TESTNET = 0xEF
