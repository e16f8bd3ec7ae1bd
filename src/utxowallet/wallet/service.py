"""
Wallet orchestrator: one send = one strictly sequential state machine run.

    Idle -> Unlocking -> FetchingUtxos -> SelectingCoins -> Building
         -> Signing -> Broadcasting -> Done | Failed

Sends for the same address are serialized by an address-scoped lock. A
send always takes its own UTXO snapshot; the balance poller's value is
for display only.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger

from utxowallet.backends.provider_set import ProviderSet
from utxowallet.config import WalletConfig
from utxowallet.errors import ErrorKind, InvalidRequestError, WalletError
from utxowallet.wallet.address import is_valid_address, pubkey_to_p2pkh_address
from utxowallet.wallet.balance import BalanceAggregator
from utxowallet.wallet.broadcast import Broadcaster
from utxowallet.wallet.coin_selection import CoinSelector, FeeEstimator
from utxowallet.wallet.keys import KeyUnlocker, SigningKeypair
from utxowallet.wallet.models import FinalizedTransaction, TxOutput
from utxowallet.wallet.signing import Signer
from utxowallet.wallet.tx_builder import TransactionBuilder
from utxowallet.wallet.utxos import UtxoSetFetcher

BalanceCallback = Callable[[str, int], None]


class SendState(str, Enum):
    """Send pipeline states."""

    IDLE = "idle"
    UNLOCKING = "unlocking"
    FETCHING_UTXOS = "fetching_utxos"
    SELECTING_COINS = "selecting_coins"
    BUILDING = "building"
    SIGNING = "signing"
    BROADCASTING = "broadcasting"
    DONE = "done"
    FAILED = "failed"


PIPELINE_ORDER = [
    SendState.IDLE,
    SendState.UNLOCKING,
    SendState.FETCHING_UTXOS,
    SendState.SELECTING_COINS,
    SendState.BUILDING,
    SendState.SIGNING,
    SendState.BROADCASTING,
    SendState.DONE,
]


@dataclass
class SendOperation:
    """State path of a single send."""

    address: str
    recipient: str
    amount: int
    state: SendState = SendState.IDLE
    history: list[SendState] = field(default_factory=lambda: [SendState.IDLE])
    failed_at: SendState | None = None
    error: WalletError | None = None

    def advance(self, state: SendState) -> None:
        if self.state in (SendState.DONE, SendState.FAILED):
            raise RuntimeError(f"Send already finished in state {self.state.value}")
        if PIPELINE_ORDER.index(state) != PIPELINE_ORDER.index(self.state) + 1:
            raise RuntimeError(f"Invalid transition {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def fail(self, error: WalletError) -> None:
        self.failed_at = self.state
        self.error = error
        self.state = SendState.FAILED
        self.history.append(SendState.FAILED)


@dataclass
class SendResult:
    state: SendState
    txid: str | None = None
    error_kind: ErrorKind | None = None
    message: str | None = None
    failed_at: SendState | None = None
    # Set when the transaction was signed but never accepted, for rebroadcast
    finalized: FinalizedTransaction | None = None

    @property
    def ok(self) -> bool:
        return self.state == SendState.DONE

    @classmethod
    def failure(cls, error: WalletError, failed_at: SendState | None) -> SendResult:
        return cls(
            state=SendState.FAILED,
            error_kind=error.kind,
            message=error.message,
            failed_at=failed_at,
            finalized=getattr(error, "finalized", None),
        )

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {"transaction_id": self.txid}
        if self.error_kind is None:
            raise RuntimeError("Failed send result without an error kind")
        return {"error_kind": self.error_kind.value, "message": self.message}


class WalletOrchestrator:
    """
    Public entry point of the wallet core.

    Sequences KeyUnlocker, UtxoSetFetcher, CoinSelector, FeeEstimator,
    TransactionBuilder, Signer and Broadcaster for each send, and polls the
    balance of the active address.
    """

    def __init__(
        self,
        config: WalletConfig,
        providers: ProviderSet | None = None,
        unlocker: KeyUnlocker | None = None,
        fee_estimator: FeeEstimator | None = None,
        on_balance: BalanceCallback | None = None,
    ):
        self.config = config
        self.providers = providers or ProviderSet.from_urls(
            config.provider_urls, timeout=config.request_timeout
        )
        self.unlocker = unlocker or KeyUnlocker(config)
        self.fee_estimator = fee_estimator or FeeEstimator.from_config(config)
        self.balance_aggregator = BalanceAggregator(self.providers)
        self.utxo_fetcher = UtxoSetFetcher(self.providers, config.include_unconfirmed)
        self.coin_selector = CoinSelector()
        self.tx_builder = TransactionBuilder(config.network, config.dust_threshold)
        self.signer = Signer(config.network)
        self.broadcaster = Broadcaster(self.providers)
        self.on_balance = on_balance

        self.address: str | None = None
        self.balance: int | None = None
        self.last_operation: SendOperation | None = None

        self._address_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._poll_task: asyncio.Task[None] | None = None

        logger.info(
            f"Initialized wallet core on {config.network.value} with "
            f"{len(self.providers.backends)} providers, fee rate {config.fee_rate} sat/vB"
        )

    @asynccontextmanager
    async def _address_lock(self, address: str) -> AsyncIterator[None]:
        """Send lock of ``address``, dropped once nobody holds or awaits it."""
        lock = self._address_locks.get(address)
        if lock is None:
            lock = asyncio.Lock()
            self._address_locks[address] = lock
        self._lock_users[address] = self._lock_users.get(address, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[address] -= 1
            if not self._lock_users[address]:
                del self._lock_users[address]
                del self._address_locks[address]

    def _validate_request(self, address: str | None, recipient: str, amount: int) -> str:
        if not address:
            raise InvalidRequestError("No active wallet address")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidRequestError("Amount must be a positive integer number of sats")
        if amount < self.config.dust_threshold:
            raise InvalidRequestError(
                f"Amount {amount} sats is below the dust threshold of "
                f"{self.config.dust_threshold} sats"
            )
        if not is_valid_address(recipient, self.config.network):
            raise InvalidRequestError(
                f"Recipient is not a valid {self.config.network.value} address"
            )
        return address

    def _check_key_controls(self, keypair: SigningKeypair, address: str) -> None:
        owned = (keypair.address, pubkey_to_p2pkh_address(keypair.public_key, keypair.network))
        if address not in owned:
            raise InvalidRequestError(f"Encrypted key does not control {address}")

    async def send_transaction(
        self,
        encrypted_key: str,
        pin: str,
        recipient: str,
        amount: int,
        address: str | None = None,
    ) -> SendResult:
        """
        Send ``amount`` sats from the active address (or ``address``) to ``recipient``.

        Never raises WalletError: failures come back as a SendResult with the
        error kind and the state the pipeline failed in. Cancellation before
        Signing has no side effects; once broadcasting started the broadcast
        is not aborted.
        """
        source = address or self.address
        operation = SendOperation(address=source or "", recipient=recipient, amount=amount)
        self.last_operation = operation

        try:
            source = self._validate_request(source, recipient, amount)
            async with self._address_lock(source):
                txid = await self._run(operation, encrypted_key, pin)
        except WalletError as e:
            operation.fail(e)
            logger.warning(
                f"Send from {operation.address or '?'} failed in {operation.failed_at.value} "
                f"[{e.kind.value}]: {e.message}"
            )
            return SendResult.failure(e, operation.failed_at)

        await self.refresh_balance(source)
        return SendResult(state=SendState.DONE, txid=txid)

    async def _run(self, operation: SendOperation, encrypted_key: str, pin: str) -> str:
        address = operation.address
        logger.info(f"Sending {operation.amount} sats from {address} to {operation.recipient}")

        operation.advance(SendState.UNLOCKING)
        keypair = await self.unlocker.unlock(encrypted_key, pin)
        try:
            self._check_key_controls(keypair, address)

            operation.advance(SendState.FETCHING_UTXOS)
            utxos = await self.utxo_fetcher.get_utxos(address)

            operation.advance(SendState.SELECTING_COINS)
            selection = self.coin_selector.select(
                utxos, operation.amount, self.fee_estimator.estimate
            )

            operation.advance(SendState.BUILDING)
            inputs = await self.utxo_fetcher.hydrate_all(selection.inputs)
            unsigned = self.tx_builder.build(
                inputs,
                TxOutput(address=operation.recipient, value=operation.amount),
                selection.input_sum,
                selection.fee,
                change_address=address,
            )

            operation.advance(SendState.SIGNING)
            finalized = self.signer.sign(unsigned, keypair)
        finally:
            keypair.wipe()

        operation.advance(SendState.BROADCASTING)
        txid = await self._broadcast_shielded(finalized)

        operation.advance(SendState.DONE)
        logger.info(f"Send complete: {txid} (fee {finalized.fee} sats)")
        return txid

    async def _broadcast_shielded(self, finalized: FinalizedTransaction) -> str:
        task = asyncio.ensure_future(self.broadcaster.broadcast(finalized))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            logger.warning(
                f"Send cancelled while broadcasting {finalized.txid}; the broadcast continues "
                "and the transaction may still confirm"
            )
            task.add_done_callback(_log_detached_broadcast)
            raise

    async def rebroadcast(self, finalized: FinalizedTransaction) -> SendResult:
        """Retry the broadcast of an already signed transaction."""
        try:
            txid = await self.broadcaster.broadcast(finalized)
        except WalletError as e:
            logger.warning(f"Rebroadcast of {finalized.txid} failed [{e.kind.value}]")
            return SendResult.failure(e, SendState.BROADCASTING)
        return SendResult(state=SendState.DONE, txid=txid)

    async def get_spendable_balance(self, address: str) -> int:
        return await self.balance_aggregator.get_spendable_balance(address)

    async def refresh_balance(self, address: str | None = None) -> int | None:
        """Best-effort balance refresh. Failures are logged, not raised."""
        target = address or self.address
        if not target:
            return None
        try:
            balance = await self.balance_aggregator.get_spendable_balance(target)
        except WalletError as e:
            logger.warning(f"Balance refresh for {target} failed: {e.message}")
            return None

        if target == self.address:
            self.balance = balance
        if self.on_balance is not None:
            try:
                self.on_balance(target, balance)
            except Exception:
                logger.exception(f"Balance callback failed for {target}")
        return balance

    def set_address(self, address: str | None) -> None:
        """Switch the active address, restarting balance polling for it."""
        if address == self.address:
            return
        self.stop_balance_polling()
        self.address = address
        self.balance = None
        if address is not None:
            self.start_balance_polling()

    def start_balance_polling(self) -> None:
        if self.address is None:
            raise InvalidRequestError("No active wallet address")
        self.stop_balance_polling()
        self._poll_task = asyncio.create_task(self._poll_balance(self.address))

    def stop_balance_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def _poll_balance(self, address: str) -> None:
        interval = self.config.balance_poll_interval
        logger.debug(f"Polling balance of {address} every {interval}s")
        while True:
            lock = self._address_locks.get(address)
            if lock is not None and lock.locked():
                logger.debug(f"Send in progress for {address}, skipping balance poll")
            else:
                await self.refresh_balance(address)
            await asyncio.sleep(interval)

    async def close(self) -> None:
        task = self._poll_task
        self.stop_balance_polling()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.providers.close()


def _log_detached_broadcast(task: asyncio.Future[str]) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Detached broadcast failed: {error}")
    else:
        logger.info(f"Detached broadcast accepted: {task.result()}")
