"""
UTXO wallet CLI - check balances, manage the PIN-protected key and send payments.
"""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import typer
from loguru import logger

from utxowallet.amounts import btc_to_sats, sats_to_btc
from utxowallet.config import NetworkType, WalletConfig, get_settings
from utxowallet.errors import WalletError
from utxowallet.wallet.keys import KeyUnlocker, SigningKeypair, decode_wif, encrypt_with_pin
from utxowallet.wallet.service import WalletOrchestrator

app = typer.Typer(
    name="utxo-wallet",
    help="Self-custodial UTXO wallet",
    add_completion=False,
)


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def build_config(
    network: str | None = None,
    providers: str | None = None,
    fee_rate: int | None = None,
) -> WalletConfig:
    """Settings from the environment, overridden by explicit CLI options."""
    config = get_settings().to_wallet_config()
    values = config.model_dump()
    if network:
        values["network"] = NetworkType(network)
    if providers:
        values["provider_urls"] = [url.strip() for url in providers.split(",")]
    if fee_rate is not None:
        values["fee_rate"] = fee_rate
    return WalletConfig(**values)


def _read_key_file(key_file: Path) -> str:
    if not key_file.exists():
        logger.error(f"Key file not found: {key_file}")
        raise typer.Exit(1)
    return key_file.read_text().strip()


@app.command()
def balance(
    address: str = typer.Argument(..., help="Address to query"),
    network: str = typer.Option(None, "--network", "-n", help="Bitcoin network"),
    providers: str = typer.Option(
        None, "--providers", "-p", help="Comma-separated Esplora API URLs"
    ),
    log_level: str = typer.Option("INFO", "--log-level", "-l", envvar="UTXO_WALLET_LOG_LEVEL"),
) -> None:
    """Show the confirmed balance of an address."""
    setup_logging(log_level)
    config = build_config(network, providers)

    async def _balance() -> int:
        wallet = WalletOrchestrator(config)
        try:
            return await wallet.get_spendable_balance(address)
        finally:
            await wallet.close()

    try:
        sats = asyncio.run(_balance())
    except WalletError as e:
        logger.error(f"Balance lookup failed [{e.kind.value}]: {e.message}")
        raise typer.Exit(1) from None

    typer.echo(f"{address}: {sats} sats ({sats_to_btc(sats)} BTC)")


@app.command()
def address(
    key_file: Path = typer.Option(..., "--key-file", "-k", help="Encrypted key file"),
    network: str = typer.Option(None, "--network", "-n", help="Bitcoin network"),
    log_level: str = typer.Option("WARNING", "--log-level", "-l", envvar="UTXO_WALLET_LOG_LEVEL"),
) -> None:
    """Unlock the key file and print the address it controls."""
    setup_logging(log_level)
    config = build_config(network)
    encrypted_key = _read_key_file(key_file)
    pin = typer.prompt("PIN", hide_input=True)

    try:
        with KeyUnlocker(config).unlock_sync(encrypted_key, pin) as keypair:
            typer.echo(keypair.address)
    except WalletError as e:
        logger.error(f"[{e.kind.value}] {e.message}")
        raise typer.Exit(1) from None


@app.command("encrypt-key")
def encrypt_key(
    output_file: Path = typer.Option(..., "--output", "-o", help="Where to write the key file"),
    network: str = typer.Option(None, "--network", "-n", help="Bitcoin network"),
    log_level: str = typer.Option("INFO", "--log-level", "-l", envvar="UTXO_WALLET_LOG_LEVEL"),
) -> None:
    """Protect a WIF private key with a PIN."""
    setup_logging(log_level)
    config = build_config(network)

    wif = typer.prompt("WIF private key", hide_input=True).strip()
    try:
        SigningKeypair(decode_wif(wif.encode("ascii"), config.network), config.network).wipe()
    except ValueError as e:
        logger.error(f"Not a usable {config.network.value} key: {e}")
        raise typer.Exit(1) from None

    pin = typer.prompt("PIN", hide_input=True, confirmation_prompt=True)
    if len(pin) < config.min_pin_length:
        logger.error(f"PIN must be at least {config.min_pin_length} characters")
        raise typer.Exit(1)

    envelope = encrypt_with_pin(
        wif, pin, config.master_key, config.kdf_iterations, config.kdf_hash
    )
    output_file.parent.mkdir(parents=True, exist_ok=True)
    output_file.write_text(envelope)
    os.chmod(output_file, 0o600)

    logger.info(f"Encrypted key written to {output_file}")
    typer.echo(f"Key saved to: {output_file}")
    typer.echo("If you lose the PIN, the funds cannot be recovered.")


@app.command()
def send(
    key_file: Path = typer.Option(..., "--key-file", "-k", help="Encrypted key file"),
    from_address: str = typer.Option(
        ..., "--address", "-a", envvar="UTXO_WALLET_ADDRESS", help="Wallet address to spend from"
    ),
    recipient: str = typer.Option(..., "--to", "-t", help="Recipient address"),
    amount: int = typer.Option(None, "--amount", help="Amount in sats"),
    btc: str = typer.Option(None, "--btc", help="Amount in BTC, e.g. 0.0015"),
    network: str = typer.Option(None, "--network", "-n", help="Bitcoin network"),
    providers: str = typer.Option(
        None, "--providers", "-p", help="Comma-separated Esplora API URLs"
    ),
    fee_rate: int = typer.Option(None, "--fee-rate", help="Fixed fee rate in sat/vB"),
    log_level: str = typer.Option("INFO", "--log-level", "-l", envvar="UTXO_WALLET_LOG_LEVEL"),
) -> None:
    """Send a payment from the wallet address."""
    setup_logging(log_level)

    if (amount is None) == (btc is None):
        logger.error("Give exactly one of --amount or --btc")
        raise typer.Exit(1)
    if btc is not None:
        try:
            amount = btc_to_sats(btc)
        except ValueError as e:
            logger.error(str(e))
            raise typer.Exit(1) from None

    config = build_config(network, providers, fee_rate)
    encrypted_key = _read_key_file(key_file)
    pin = typer.prompt("PIN", hide_input=True)

    async def _send():
        wallet = WalletOrchestrator(config)
        try:
            return await wallet.send_transaction(
                encrypted_key, pin, recipient, amount, address=from_address
            )
        finally:
            await wallet.close()

    result = asyncio.run(_send())

    if not result.ok:
        logger.error(f"Send failed in {result.failed_at.value} [{result.error_kind.value}]")
        typer.echo(f"Error ({result.error_kind.value}): {result.message}", err=True)
        if result.finalized is not None:
            typer.echo(f"Signed transaction (for manual broadcast): {result.finalized.hex}")
        raise typer.Exit(1)

    typer.echo(f"Transaction sent: {result.txid}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
