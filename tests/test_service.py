"""
Tests for the WalletOrchestrator send pipeline and balance polling.
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from tests.helpers import TEST_PIN, make_utxo, serve_chain
from utxowallet.backends.provider_set import ProviderSet
from utxowallet.config import WalletConfig
from utxowallet.errors import ErrorKind, InsufficientFundsError, ProviderError
from utxowallet.wallet.coin_selection import FeeEstimator
from utxowallet.wallet.keys import KeyUnlocker, SigningKeypair
from utxowallet.wallet.models import Utxo
from utxowallet.wallet.service import (
    PIPELINE_ORDER,
    SendOperation,
    SendResult,
    SendState,
    WalletOrchestrator,
)
from utxowallet.wallet.tx_builder import deserialize_transaction


async def echo_txid(tx_hex: str) -> str:
    return deserialize_transaction(bytes.fromhex(tx_hex)).txid


@pytest.fixture
def chain(backends: list[MagicMock]) -> list:
    utxos = [make_utxo(5000, nonce=1), make_utxo(3000, nonce=2), make_utxo(2000, nonce=3)]
    serve_chain(backends[0], utxos, balance=10000)
    backends[0].broadcast_transaction.side_effect = echo_txid
    return utxos


@pytest.fixture
def wallet(config: WalletConfig, providers: ProviderSet) -> WalletOrchestrator:
    # Flat 200 sats per input
    fee_estimator = FeeEstimator(fee_rate=1, input_vbytes=200, output_vbytes=0, overhead_vbytes=0)
    return WalletOrchestrator(config, providers=providers, fee_estimator=fee_estimator)


class TestSendTransaction:
    """Tests for WalletOrchestrator.send_transaction."""

    @pytest.mark.asyncio
    async def test_send(
        self,
        wallet: WalletOrchestrator,
        backends: list[MagicMock],
        chain: list,
        encrypted_key: str,
        wallet_address: str,
        recipient_address: str,
    ) -> None:
        result = await wallet.send_transaction(
            encrypted_key, TEST_PIN, recipient_address, 6000, address=wallet_address
        )

        assert result.ok
        assert result.state == SendState.DONE
        assert wallet.last_operation.history == PIPELINE_ORDER
        assert result.to_dict() == {"transaction_id": result.txid}
        assert wallet._address_locks == {}

        sent = deserialize_transaction(
            bytes.fromhex(backends[0].broadcast_transaction.await_args.args[0])
        )
        assert sent.txid == result.txid
        assert [o.value for o in sent.outputs] == [6000, 1600]
        assert [i.txid for i in sent.inputs] == [chain[0].txid, chain[1].txid]
        # Only the selected inputs were hydrated
        assert backends[0].get_raw_transaction.await_count == 2

    @pytest.mark.asyncio
    async def test_send_uses_active_address(
        self,
        wallet: WalletOrchestrator,
        chain: list,
        encrypted_key: str,
        wallet_address: str,
        recipient_address: str,
    ) -> None:
        wallet.address = wallet_address
        result = await wallet.send_transaction(encrypted_key, TEST_PIN, recipient_address, 7900)

        assert result.ok
        assert wallet.balance == 10000

    @pytest.mark.asyncio
    async def test_wrong_pin_fails_before_network(
        self,
        wallet: WalletOrchestrator,
        backends: list[MagicMock],
        chain: list,
        encrypted_key: str,
        wallet_address: str,
        recipient_address: str,
    ) -> None:
        result = await wallet.send_transaction(
            encrypted_key, "0000", recipient_address, 6000, address=wallet_address
        )

        assert result.error_kind == ErrorKind.INVALID_PIN
        assert result.failed_at == SendState.UNLOCKING
        for backend in backends:
            backend.get_utxos.assert_not_awaited()
            backend.broadcast_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_all_providers_down(
        self,
        wallet: WalletOrchestrator,
        backends: list[MagicMock],
        encrypted_key: str,
        wallet_address: str,
        recipient_address: str,
    ) -> None:
        for backend in backends:
            backend.get_utxos.side_effect = ProviderError(backend.name, "HTTP 503", 503)

        result = await wallet.send_transaction(
            encrypted_key, TEST_PIN, recipient_address, 6000, address=wallet_address
        )

        assert result.error_kind == ErrorKind.ALL_PROVIDERS_UNAVAILABLE
        assert result.failed_at == SendState.FETCHING_UTXOS
        assert wallet.last_operation.history == [
            SendState.IDLE,
            SendState.UNLOCKING,
            SendState.FETCHING_UTXOS,
            SendState.FAILED,
        ]
        assert result.to_dict()["error_kind"] == "all_providers_unavailable"

    @pytest.mark.asyncio
    async def test_no_utxos(
        self,
        wallet: WalletOrchestrator,
        backends: list[MagicMock],
        encrypted_key: str,
        wallet_address: str,
        recipient_address: str,
    ) -> None:
        backends[0].get_utxos.return_value = []

        result = await wallet.send_transaction(
            encrypted_key, TEST_PIN, recipient_address, 6000, address=wallet_address
        )

        assert result.error_kind == ErrorKind.NO_UTXOS_AVAILABLE
        assert result.failed_at == SendState.FETCHING_UTXOS

    @pytest.mark.asyncio
    async def test_insufficient_funds(
        self,
        wallet: WalletOrchestrator,
        backends: list[MagicMock],
        chain: list,
        encrypted_key: str,
        wallet_address: str,
        recipient_address: str,
    ) -> None:
        result = await wallet.send_transaction(
            encrypted_key, TEST_PIN, recipient_address, 50000, address=wallet_address
        )

        assert result.error_kind == ErrorKind.INSUFFICIENT_FUNDS
        assert result.failed_at == SendState.SELECTING_COINS
        backends[0].get_raw_transaction.assert_not_awaited()
        backends[0].broadcast_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_signing_error(
        self,
        wallet: WalletOrchestrator,
        backends: list[MagicMock],
        chain: list,
        encrypted_key: str,
        wallet_address: str,
        recipient_address: str,
    ) -> None:
        # Provider serves a parent that does not match the listed UTXO
        backends[0].get_raw_transaction.side_effect = None
        backends[0].get_raw_transaction.return_value = chain[2].raw_parent

        result = await wallet.send_transaction(
            encrypted_key, TEST_PIN, recipient_address, 6000, address=wallet_address
        )

        assert result.error_kind == ErrorKind.SIGNING_ERROR
        assert result.failed_at == SendState.SIGNING
        backends[0].broadcast_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, 545, True])
    async def test_invalid_amount(
        self,
        wallet: WalletOrchestrator,
        encrypted_key: str,
        wallet_address: str,
        recipient_address: str,
        amount: int,
    ) -> None:
        result = await wallet.send_transaction(
            encrypted_key, TEST_PIN, recipient_address, amount, address=wallet_address
        )

        assert result.error_kind == ErrorKind.INVALID_REQUEST
        assert result.failed_at == SendState.IDLE

    @pytest.mark.asyncio
    async def test_invalid_recipient(
        self, wallet: WalletOrchestrator, encrypted_key: str, wallet_address: str
    ) -> None:
        result = await wallet.send_transaction(
            encrypted_key, TEST_PIN, "bc1qnotanaddress", 6000, address=wallet_address
        )
        assert result.error_kind == ErrorKind.INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_no_active_address(
        self, wallet: WalletOrchestrator, encrypted_key: str, recipient_address: str
    ) -> None:
        result = await wallet.send_transaction(encrypted_key, TEST_PIN, recipient_address, 6000)
        assert result.error_kind == ErrorKind.INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_key_must_control_address(
        self,
        wallet: WalletOrchestrator,
        backends: list[MagicMock],
        encrypted_key: str,
        recipient_address: str,
        wallet_address: str,
    ) -> None:
        result = await wallet.send_transaction(
            encrypted_key, TEST_PIN, wallet_address, 6000, address=recipient_address
        )

        assert result.error_kind == ErrorKind.INVALID_REQUEST
        assert result.failed_at == SendState.UNLOCKING
        backends[0].get_utxos.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_broadcast_failure_then_rebroadcast(
        self,
        wallet: WalletOrchestrator,
        backends: list[MagicMock],
        chain: list,
        encrypted_key: str,
        wallet_address: str,
        recipient_address: str,
    ) -> None:
        for backend in backends:
            backend.broadcast_transaction.side_effect = ProviderError(backend.name, "HTTP 503")

        result = await wallet.send_transaction(
            encrypted_key, TEST_PIN, recipient_address, 6000, address=wallet_address
        )

        assert result.error_kind == ErrorKind.BROADCAST_FAILED
        assert result.failed_at == SendState.BROADCASTING
        assert result.finalized is not None

        backends[1].broadcast_transaction.side_effect = echo_txid
        retried = await wallet.rebroadcast(result.finalized)

        assert retried.ok
        assert retried.txid == result.finalized.txid


    @pytest.mark.asyncio
    async def test_negative_vout_is_signing_error(
        self,
        wallet: WalletOrchestrator,
        backends: list[MagicMock],
        encrypted_key: str,
        wallet_address: str,
        recipient_address: str,
    ) -> None:
        utxo = make_utxo(9000, nonce=7)
        backends[0].get_utxos.return_value = [Utxo(txid=utxo.txid, vout=-1, value=9000)]
        backends[0].get_raw_transaction.return_value = utxo.raw_parent

        result = await wallet.send_transaction(
            encrypted_key, TEST_PIN, recipient_address, 6000, address=wallet_address
        )

        assert result.error_kind == ErrorKind.SIGNING_ERROR
        assert result.failed_at == SendState.SIGNING
        backends[0].broadcast_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failing_balance_callback_keeps_txid(
        self,
        wallet: WalletOrchestrator,
        backends: list[MagicMock],
        chain: list,
        encrypted_key: str,
        wallet_address: str,
        recipient_address: str,
    ) -> None:
        def broken(address: str, sats: int) -> None:
            raise RuntimeError("display went away")

        wallet.on_balance = broken

        result = await wallet.send_transaction(
            encrypted_key, TEST_PIN, recipient_address, 6000, address=wallet_address
        )

        assert result.ok
        assert result.txid is not None
        backends[0].broadcast_transaction.assert_awaited_once()


class TestKeyHygiene:
    """The unlocked keypair is wiped on every exit path."""

    @pytest.fixture
    def captured(self, wallet: WalletOrchestrator) -> list[SigningKeypair]:
        keypairs: list[SigningKeypair] = []
        unlocker: KeyUnlocker = wallet.unlocker
        real_unlock = unlocker.unlock

        async def spy(encrypted_key: str, pin: str) -> SigningKeypair:
            keypair = await real_unlock(encrypted_key, pin)
            keypairs.append(keypair)
            return keypair

        unlocker.unlock = spy
        return keypairs

    @pytest.mark.asyncio
    async def test_wiped_after_success(
        self,
        wallet: WalletOrchestrator,
        captured: list[SigningKeypair],
        chain: list,
        encrypted_key: str,
        wallet_address: str,
        recipient_address: str,
    ) -> None:
        result = await wallet.send_transaction(
            encrypted_key, TEST_PIN, recipient_address, 6000, address=wallet_address
        )
        assert result.ok
        assert captured and captured[0].wiped

    @pytest.mark.asyncio
    async def test_wiped_after_failure(
        self,
        wallet: WalletOrchestrator,
        captured: list[SigningKeypair],
        chain: list,
        encrypted_key: str,
        wallet_address: str,
        recipient_address: str,
    ) -> None:
        result = await wallet.send_transaction(
            encrypted_key, TEST_PIN, recipient_address, 50000, address=wallet_address
        )
        assert result.error_kind == ErrorKind.INSUFFICIENT_FUNDS
        assert captured[0].wiped


class TestConcurrency:
    """Tests for per-address serialization and cancellation."""

    @pytest.mark.asyncio
    async def test_sends_for_same_address_are_serialized(
        self,
        wallet: WalletOrchestrator,
        backends: list[MagicMock],
        chain: list,
        encrypted_key: str,
        wallet_address: str,
        recipient_address: str,
    ) -> None:
        events: list[str] = []
        listed = backends[0].get_utxos.return_value

        async def fetch(address: str) -> list:
            events.append("fetch")
            await asyncio.sleep(0.02)
            return listed

        async def broadcast(tx_hex: str) -> str:
            events.append("broadcast")
            return await echo_txid(tx_hex)

        backends[0].get_utxos.side_effect = fetch
        backends[0].broadcast_transaction.side_effect = broadcast

        results = await asyncio.gather(
            wallet.send_transaction(
                encrypted_key, TEST_PIN, recipient_address, 6000, address=wallet_address
            ),
            wallet.send_transaction(
                encrypted_key, TEST_PIN, recipient_address, 6000, address=wallet_address
            ),
        )

        assert all(result.ok for result in results)
        assert events == ["fetch", "broadcast", "fetch", "broadcast"]
        assert wallet._address_locks == {}

    @pytest.mark.asyncio
    async def test_cancel_before_signing(
        self,
        wallet: WalletOrchestrator,
        backends: list[MagicMock],
        encrypted_key: str,
        wallet_address: str,
        recipient_address: str,
    ) -> None:
        fetching = asyncio.Event()

        async def hang(address: str) -> list:
            fetching.set()
            await asyncio.sleep(10)
            return []

        backends[0].get_utxos.side_effect = hang

        task = asyncio.create_task(
            wallet.send_transaction(
                encrypted_key, TEST_PIN, recipient_address, 6000, address=wallet_address
            )
        )
        await asyncio.wait_for(fetching.wait(), timeout=2)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert wallet_address not in wallet._address_locks
        backends[0].broadcast_transaction.assert_not_awaited()
        assert wallet.last_operation.state == SendState.FETCHING_UTXOS

    @pytest.mark.asyncio
    async def test_cancel_does_not_abort_broadcast(
        self,
        wallet: WalletOrchestrator,
        backends: list[MagicMock],
        chain: list,
        encrypted_key: str,
        wallet_address: str,
        recipient_address: str,
    ) -> None:
        started = asyncio.Event()
        finished: list[str] = []

        async def slow_broadcast(tx_hex: str) -> str:
            started.set()
            await asyncio.sleep(0.05)
            txid = await echo_txid(tx_hex)
            finished.append(txid)
            return txid

        backends[0].broadcast_transaction.side_effect = slow_broadcast

        task = asyncio.create_task(
            wallet.send_transaction(
                encrypted_key, TEST_PIN, recipient_address, 6000, address=wallet_address
            )
        )
        await asyncio.wait_for(started.wait(), timeout=2)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        await asyncio.sleep(0.2)
        assert len(finished) == 1


class TestBalancePolling:
    """Tests for the periodic balance refresh."""

    @pytest.mark.asyncio
    async def test_polls_active_address(
        self,
        wallet: WalletOrchestrator,
        backends: list[MagicMock],
        chain: list,
        wallet_address: str,
    ) -> None:
        seen: list[tuple[str, int]] = []
        wallet.on_balance = lambda address, sats: seen.append((address, sats))

        wallet.set_address(wallet_address)
        assert wallet.is_polling
        await asyncio.sleep(0.12)
        await wallet.close()

        assert not wallet.is_polling
        assert wallet.balance == 10000
        assert len(seen) >= 2
        assert seen[0] == (wallet_address, 10000)

    @pytest.mark.asyncio
    async def test_skips_while_send_in_progress(
        self,
        wallet: WalletOrchestrator,
        backends: list[MagicMock],
        chain: list,
        wallet_address: str,
    ) -> None:
        async with wallet._address_lock(wallet_address):
            wallet.set_address(wallet_address)
            await asyncio.sleep(0.12)
            backends[0].get_address_stats.assert_not_awaited()

        await asyncio.sleep(0.1)
        await wallet.close()
        backends[0].get_address_stats.assert_awaited()

    @pytest.mark.asyncio
    async def test_refresh_failure_keeps_polling(
        self,
        wallet: WalletOrchestrator,
        backends: list[MagicMock],
        wallet_address: str,
    ) -> None:
        for backend in backends:
            backend.get_address_stats.side_effect = ProviderError(backend.name, "down")

        wallet.set_address(wallet_address)
        await asyncio.sleep(0.12)

        assert wallet.is_polling
        assert wallet.balance is None
        await wallet.close()

    @pytest.mark.asyncio
    async def test_switching_address_restarts_polling(
        self,
        wallet: WalletOrchestrator,
        chain: list,
        wallet_address: str,
        recipient_address: str,
    ) -> None:
        wallet.set_address(wallet_address)
        first = wallet._poll_task
        wallet.set_address(recipient_address)

        assert wallet._poll_task is not first
        assert wallet.address == recipient_address
        wallet.set_address(None)
        assert not wallet.is_polling
        await wallet.close()

    @pytest.mark.asyncio
    async def test_get_spendable_balance(
        self, wallet: WalletOrchestrator, chain: list, wallet_address: str
    ) -> None:
        assert await wallet.get_spendable_balance(wallet_address) == 10000


    @pytest.mark.asyncio
    async def test_failing_callback_keeps_polling(
        self,
        wallet: WalletOrchestrator,
        chain: list,
        wallet_address: str,
    ) -> None:
        calls: list[int] = []

        def broken(address: str, sats: int) -> None:
            calls.append(sats)
            raise RuntimeError("display went away")

        wallet.on_balance = broken
        wallet.set_address(wallet_address)
        await asyncio.sleep(0.12)

        assert wallet.is_polling
        assert len(calls) >= 2
        assert wallet.balance == 10000
        await wallet.close()


class TestSendOperation:
    def test_rejects_skipped_state(self) -> None:
        operation = SendOperation(address="a", recipient="b", amount=1000)
        operation.advance(SendState.UNLOCKING)
        with pytest.raises(RuntimeError):
            operation.advance(SendState.SIGNING)

    def test_no_transition_after_failure(self) -> None:
        operation = SendOperation(address="a", recipient="b", amount=1000)
        operation.advance(SendState.UNLOCKING)
        operation.fail(InsufficientFundsError(2000, 1000))
        assert operation.failed_at == SendState.UNLOCKING
        with pytest.raises(RuntimeError):
            operation.advance(SendState.FETCHING_UTXOS)

    def test_failure_result(self) -> None:
        result = SendResult.failure(InsufficientFundsError(2000, 1000), SendState.SELECTING_COINS)
        assert not result.ok
        assert result.to_dict() == {
            "error_kind": "insufficient_funds",
            "message": "Insufficient funds: need 2000 sats, have 1000 sats",
        }

    def test_failed_result_needs_error_kind(self) -> None:
        with pytest.raises(RuntimeError):
            SendResult(state=SendState.FAILED).to_dict()
