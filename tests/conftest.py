"""
Shared fixtures for wallet core tests.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from tests.helpers import (
    RECIPIENT_SECRET,
    TEST_PIN,
    WALLET_SECRET,
    address_for,
    make_backend,
)
from utxowallet.backends.provider_set import ProviderSet
from utxowallet.config import NetworkType, WalletConfig
from utxowallet.wallet.keys import SigningKeypair, encode_wif, encrypt_with_pin


@pytest.fixture
def config() -> WalletConfig:
    return WalletConfig(
        network=NetworkType.TESTNET,
        provider_urls=["https://one.example/api", "https://two.example/api"],
        request_timeout=1.0,
        kdf_iterations=10,
        balance_poll_interval=0.05,
    )


@pytest.fixture
def wallet_address() -> str:
    return address_for(WALLET_SECRET)


@pytest.fixture
def recipient_address() -> str:
    return address_for(RECIPIENT_SECRET)


@pytest.fixture
def wif() -> str:
    return encode_wif(WALLET_SECRET, NetworkType.TESTNET)


@pytest.fixture
def encrypted_key(config: WalletConfig, wif: str) -> str:
    return encrypt_with_pin(wif, TEST_PIN, config.master_key, config.kdf_iterations)


@pytest.fixture
def keypair() -> SigningKeypair:
    return SigningKeypair(bytearray(WALLET_SECRET), NetworkType.TESTNET)


@pytest.fixture
def backends() -> list[MagicMock]:
    return [make_backend("one.example"), make_backend("two.example")]


@pytest.fixture
def providers(backends: list[MagicMock]) -> ProviderSet:
    return ProviderSet(backends, attempt_timeout=1.0)
