"""
Configuration for the UTXO wallet core.
"""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from utxowallet.constants import (
    DEFAULT_BALANCE_POLL_INTERVAL,
    DEFAULT_ESTIMATED_OUTPUTS,
    DEFAULT_FEE_RATE,
    DEFAULT_KDF_ITERATIONS,
    DEFAULT_MASTER_KEY,
    DEFAULT_PROVIDER_URLS,
    DEFAULT_REQUEST_TIMEOUT,
    MIN_PIN_LENGTH,
    P2WPKH_INPUT_VBYTES,
    P2WPKH_OUTPUT_VBYTES,
    STANDARD_DUST_LIMIT,
    TX_OVERHEAD_VBYTES,
)


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"

    @property
    def bech32_hrp(self) -> str:
        return {"mainnet": "bc", "testnet": "tb", "signet": "tb", "regtest": "bcrt"}[self.value]

    @property
    def is_mainnet(self) -> bool:
        return self is NetworkType.MAINNET


class WalletConfig(BaseModel):
    """Configuration for the send pipeline and balance polling."""

    network: NetworkType = NetworkType.MAINNET

    # Providers, tried in order
    provider_urls: list[str] = Field(default_factory=lambda: list(DEFAULT_PROVIDER_URLS))
    request_timeout: float = Field(
        default=DEFAULT_REQUEST_TIMEOUT, gt=0, description="Seconds per backend attempt"
    )

    # Fee model
    fee_rate: int = Field(default=DEFAULT_FEE_RATE, ge=1, description="Fixed sat/vbyte")
    input_vbytes: int = Field(default=P2WPKH_INPUT_VBYTES, ge=0)
    output_vbytes: int = Field(default=P2WPKH_OUTPUT_VBYTES, ge=0)
    overhead_vbytes: int = Field(default=TX_OVERHEAD_VBYTES, ge=0)
    estimated_outputs: int = Field(default=DEFAULT_ESTIMATED_OUTPUTS, ge=1)
    dust_threshold: int = Field(default=STANDARD_DUST_LIMIT, ge=0)

    include_unconfirmed: bool = Field(
        default=True, description="Spend UTXOs that are still in the mempool"
    )
    balance_poll_interval: float = Field(default=DEFAULT_BALANCE_POLL_INTERVAL, gt=0)

    # PIN envelope
    kdf_iterations: int = Field(default=DEFAULT_KDF_ITERATIONS, ge=1)
    kdf_hash: Literal["sha256", "sha1"] = "sha256"
    master_key: str = Field(default=DEFAULT_MASTER_KEY, min_length=1, repr=False)
    min_pin_length: int = Field(default=MIN_PIN_LENGTH, ge=1)

    @field_validator("provider_urls")
    @classmethod
    def validate_provider_urls(cls, v: list[str]) -> list[str]:
        urls = [url.strip().rstrip("/") for url in v if url.strip()]
        if not urls:
            raise ValueError("At least one provider URL is required")
        for url in urls:
            if not url.startswith(("http://", "https://")):
                raise ValueError(f"Provider URL must be http(s): {url}")
        return urls


class Settings(BaseSettings):
    """Environment-backed settings (UTXO_WALLET_* variables)."""

    model_config = SettingsConfigDict(
        env_prefix="UTXO_WALLET_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    network: Literal["mainnet", "testnet", "signet", "regtest"] = "mainnet"
    provider_urls: str = ",".join(DEFAULT_PROVIDER_URLS)
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    fee_rate: int = DEFAULT_FEE_RATE
    dust_threshold: int = STANDARD_DUST_LIMIT
    balance_poll_interval: float = DEFAULT_BALANCE_POLL_INTERVAL
    kdf_iterations: int = DEFAULT_KDF_ITERATIONS
    kdf_hash: Literal["sha256", "sha1"] = "sha256"
    master_key: str = DEFAULT_MASTER_KEY
    include_unconfirmed: bool = True

    log_level: str = "INFO"

    def get_provider_urls(self) -> list[str]:
        return [url.strip() for url in self.provider_urls.split(",") if url.strip()]

    def to_wallet_config(self) -> WalletConfig:
        return WalletConfig(
            network=NetworkType(self.network),
            provider_urls=self.get_provider_urls(),
            request_timeout=self.request_timeout,
            fee_rate=self.fee_rate,
            dust_threshold=self.dust_threshold,
            balance_poll_interval=self.balance_poll_interval,
            kdf_iterations=self.kdf_iterations,
            kdf_hash=self.kdf_hash,
            master_key=self.master_key,
            include_unconfirmed=self.include_unconfirmed,
        )


def get_settings() -> Settings:
    return Settings()
