"""
Stars P2P Service Tests
Order matching, price-time priority and exactly-once swap settlement
"""

from decimal import Decimal

import pytest

from conftest import ALICE_WALLET, failed_state
from models import OrderStatus, OrderType, SwapStatus
from utils.exception_handler import NotFoundError, OrderAlreadyMatched, ValidationError


class TestOrderMatching:

    @pytest.mark.asyncio
    async def test_buy_matches_resting_sell(self, p2p_service, task_runner, users, blockchain):
        sell = await p2p_service.create_sell_order(users["alice"].id, "1000", "0.001")
        assert sell.status == OrderStatus.OPEN.value

        buy = await p2p_service.create_buy_order(users["bob"].id, "1", "0.0012")
        assert buy.status == OrderStatus.MATCHED.value

        await task_runner.wait_all(timeout=5)

        assert p2p_service.get_order(sell.id).status == OrderStatus.COMPLETED.value
        assert p2p_service.get_order(buy.id).status == OrderStatus.COMPLETED.value
        to_address, amount, memo = blockchain.send_transfer.await_args.args
        assert to_address == ALICE_WALLET
        # Seller is paid at their own ask
        assert amount == Decimal("1")
        assert memo.startswith("P2P swap ")

    @pytest.mark.asyncio
    async def test_sell_matches_resting_buy(self, p2p_service, task_runner, users):
        buy = await p2p_service.create_buy_order(users["bob"].id, "2", "0.002")
        sell = await p2p_service.create_sell_order(users["alice"].id, "1000", "0.0015")

        assert sell.status == OrderStatus.MATCHED.value
        await task_runner.wait_all(timeout=5)

        swap = p2p_service._swap_for_sell_order(sell.id)
        assert swap.buy_order_id == buy.id
        assert swap.status == SwapStatus.COMPLETED.value
        assert swap.ton_transfer_tx == "tx_0001"
        assert swap.completed_at is not None

    @pytest.mark.asyncio
    async def test_no_match_when_prices_do_not_cross(self, p2p_service, task_runner, users, blockchain):
        sell = await p2p_service.create_sell_order(users["alice"].id, "1000", "0.002")
        buy = await p2p_service.create_buy_order(users["bob"].id, "1", "0.001")
        await task_runner.wait_all(timeout=5)

        assert p2p_service.get_order(sell.id).status == OrderStatus.OPEN.value
        assert p2p_service.get_order(buy.id).status == OrderStatus.OPEN.value
        blockchain.send_transfer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_own_orders_never_match(self, p2p_service, users):
        alice = users["alice"].id
        sell = await p2p_service.create_sell_order(alice, "1000", "0.001")
        buy = await p2p_service.create_buy_order(alice, "1", "0.002")

        assert p2p_service.get_order(sell.id).status == OrderStatus.OPEN.value
        assert p2p_service.get_order(buy.id).status == OrderStatus.OPEN.value

    @pytest.mark.asyncio
    async def test_best_price_wins(self, p2p_service, task_runner, users):
        low = await p2p_service.create_buy_order(users["bob"].id, "1", "0.0011")
        high = await p2p_service.create_buy_order(users["carol"].id, "1", "0.0013")

        sell = await p2p_service.create_sell_order(users["alice"].id, "1000", "0.001")
        await task_runner.wait_all(timeout=5)

        assert p2p_service._swap_for_sell_order(sell.id).buy_order_id == high.id
        assert p2p_service.get_order(low.id).status == OrderStatus.OPEN.value

    @pytest.mark.asyncio
    async def test_equal_prices_go_to_oldest_order(self, p2p_service, task_runner, users):
        first = await p2p_service.create_buy_order(users["bob"].id, "1", "0.0012")
        second = await p2p_service.create_buy_order(users["carol"].id, "1", "0.0012")

        sell = await p2p_service.create_sell_order(users["alice"].id, "1000", "0.001")
        await task_runner.wait_all(timeout=5)

        assert p2p_service._swap_for_sell_order(sell.id).buy_order_id == first.id
        assert p2p_service.get_order(second.id).status == OrderStatus.OPEN.value

    @pytest.mark.asyncio
    async def test_cheapest_sell_wins_for_incoming_buy(self, p2p_service, task_runner, users):
        pricey = await p2p_service.create_sell_order(users["alice"].id, "1000", "0.0011")
        cheap = await p2p_service.create_sell_order(users["carol"].id, "1000", "0.0009")

        await p2p_service.create_buy_order(users["bob"].id, "1", "0.0012")

        assert p2p_service.get_order(cheap.id).status == OrderStatus.MATCHED.value
        assert p2p_service.get_order(pricey.id).status == OrderStatus.OPEN.value
        await task_runner.wait_all(timeout=5)


class TestSwapLocking:

    @pytest.mark.asyncio
    async def test_pair_can_only_be_swapped_once(self, p2p_service, users):
        sell = await p2p_service.create_sell_order(users["alice"].id, "1000", "0.002")
        buy = await p2p_service.create_buy_order(users["bob"].id, "1", "0.001")

        swap = p2p_service.create_swap_and_lock(sell.id, buy.id)
        assert swap.status == SwapStatus.INITIATED.value

        with pytest.raises(OrderAlreadyMatched):
            p2p_service.create_swap_and_lock(sell.id, buy.id)

        assert p2p_service.get_order(sell.id).status == OrderStatus.MATCHED.value
        assert p2p_service.get_order(buy.id).status == OrderStatus.MATCHED.value

    @pytest.mark.asyncio
    async def test_reversed_order_types_are_rejected(self, p2p_service, users):
        sell = await p2p_service.create_sell_order(users["alice"].id, "1000", "0.002")
        buy = await p2p_service.create_buy_order(users["bob"].id, "1", "0.001")

        with pytest.raises(OrderAlreadyMatched):
            p2p_service.create_swap_and_lock(buy.id, sell.id)

        assert p2p_service.get_order(sell.id).status == OrderStatus.OPEN.value
        assert p2p_service.get_order(buy.id).status == OrderStatus.OPEN.value

    @pytest.mark.asyncio
    async def test_cancelled_order_cannot_be_swapped(self, p2p_service, users):
        sell = await p2p_service.create_sell_order(users["alice"].id, "1000", "0.002")
        buy = await p2p_service.create_buy_order(users["bob"].id, "1", "0.001")
        assert p2p_service.cancel_order(buy.id, users["bob"].id) is True

        with pytest.raises(OrderAlreadyMatched):
            p2p_service.create_swap_and_lock(sell.id, buy.id)
        assert p2p_service.get_order(sell.id).status == OrderStatus.OPEN.value

    @pytest.mark.asyncio
    async def test_matching_cycle_is_idempotent(self, p2p_service, task_runner, users):
        sell = await p2p_service.create_sell_order(users["alice"].id, "1000", "0.001")
        # Inserted without a match attempt, as if written by another process
        p2p_service._insert_order(users["bob"].id, OrderType.BUY, "0.002", ton_amount=Decimal("1"))

        assert await p2p_service.run_matching_cycle() == 1
        assert await p2p_service.run_matching_cycle() == 0
        await task_runner.wait_all(timeout=5)

        assert p2p_service.get_order(sell.id).status == OrderStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_matching_loop_start_stop(self, p2p_service):
        assert not p2p_service.is_loop_running()
        task = p2p_service.start_loop(interval_seconds=0.01)
        assert p2p_service.start_loop(interval_seconds=0.01) is task
        assert p2p_service.is_loop_running()

        await p2p_service.stop_loop()
        assert not p2p_service.is_loop_running()


class TestSwapExecution:

    @pytest.mark.asyncio
    async def test_on_chain_failure_cancels_both_orders(self, p2p_service, task_runner, users, blockchain):
        blockchain.get_transaction_state.return_value = failed_state()
        sell = await p2p_service.create_sell_order(users["alice"].id, "1000", "0.001")
        buy = await p2p_service.create_buy_order(users["bob"].id, "1", "0.001")
        await task_runner.wait_all(timeout=5)

        swap = p2p_service._swap_for_sell_order(sell.id)
        assert swap.status == SwapStatus.FAILED.value
        assert swap.error_message.startswith("OnChainFailure:")
        assert p2p_service.get_order(sell.id).status == OrderStatus.CANCELLED.value
        assert p2p_service.get_order(buy.id).status == OrderStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_seller_without_wallet_fails_swap(self, p2p_service, task_runner, users, blockchain):
        sell = await p2p_service.create_sell_order(users["carol"].id, "1000", "0.001")
        await p2p_service.create_buy_order(users["bob"].id, "1", "0.001")
        await task_runner.wait_all(timeout=5)

        swap = p2p_service._swap_for_sell_order(sell.id)
        assert swap.status == SwapStatus.FAILED.value
        assert swap.error_message == "Seller has no TON wallet address"
        blockchain.send_transfer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transfer_error_fails_swap(self, p2p_service, task_runner, users, blockchain):
        blockchain.send_transfer.side_effect = RuntimeError("signer unreachable")
        sell = await p2p_service.create_sell_order(users["alice"].id, "1000", "0.001")
        await p2p_service.create_buy_order(users["bob"].id, "1", "0.001")
        await task_runner.wait_all(timeout=5)

        swap = p2p_service._swap_for_sell_order(sell.id)
        assert swap.status == SwapStatus.FAILED.value
        assert "signer unreachable" in swap.error_message

    @pytest.mark.asyncio
    async def test_swap_executes_once(self, p2p_service, task_runner, users, blockchain):
        sell = await p2p_service.create_sell_order(users["alice"].id, "1000", "0.001")
        await p2p_service.create_buy_order(users["bob"].id, "1", "0.001")
        await task_runner.wait_all(timeout=5)

        swap_id = p2p_service._swap_for_sell_order(sell.id).id
        assert await p2p_service.execute_atomic_swap(swap_id) is None
        blockchain.send_transfer.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_terminal_swap_cannot_change(self, p2p_service, task_runner, users):
        sell = await p2p_service.create_sell_order(users["alice"].id, "1000", "0.001")
        await p2p_service.create_buy_order(users["bob"].id, "1", "0.001")
        await task_runner.wait_all(timeout=5)

        swap_id = p2p_service._swap_for_sell_order(sell.id).id
        assert p2p_service.fail_swap(swap_id, "late failure") is False
        assert p2p_service.complete_swap(swap_id) is False
        assert p2p_service.get_swap(swap_id).status == SwapStatus.COMPLETED.value


class TestOrderManagement:

    @pytest.mark.asyncio
    async def test_cancel_order(self, p2p_service, users):
        order = await p2p_service.create_sell_order(users["alice"].id, "1000", "0.001")

        assert p2p_service.cancel_order(order.id, users["alice"].id) is True
        assert p2p_service.cancel_order(order.id, users["alice"].id) is False
        assert p2p_service.get_order(order.id).status == OrderStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_cannot_cancel_someone_elses_order(self, p2p_service, users):
        order = await p2p_service.create_sell_order(users["alice"].id, "1000", "0.001")
        with pytest.raises(NotFoundError):
            p2p_service.cancel_order(order.id, users["bob"].id)
        assert p2p_service.get_order(order.id).status == OrderStatus.OPEN.value

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount, rate", [("0", "0.001"), ("1000", "0"), ("1000", "-0.001"), (1000.5, "0.001")])
    async def test_invalid_orders_rejected(self, p2p_service, users, amount, rate):
        with pytest.raises(ValidationError):
            await p2p_service.create_sell_order(users["alice"].id, amount, rate)
        assert p2p_service.list_open_orders() == []

    @pytest.mark.asyncio
    async def test_unknown_user_rejected(self, p2p_service, users):
        with pytest.raises(NotFoundError):
            await p2p_service.create_buy_order(9999, "1", "0.001")

    @pytest.mark.asyncio
    async def test_list_open_orders(self, p2p_service, users):
        await p2p_service.create_sell_order(users["alice"].id, "1000", "0.002")
        await p2p_service.create_buy_order(users["bob"].id, "1", "0.001")

        assert len(p2p_service.list_open_orders()) == 2
        sells = p2p_service.list_open_orders(order_type="sell")
        assert [order.order_type for order in sells] == ["sell"]
