"""End-to-end tests for CartSession."""

import asyncio
from decimal import Decimal

import pytest
import pytest_asyncio

from cart import CartError
from checkout_state import CheckoutPhase
from payment import PaymentPhase, PaymentSimulator
from session import CartSession
from tests.conftest import GRACE


@pytest_asyncio.fixture
async def session(catalog, history, fast_config):
    cart_session = CartSession("u1", catalog, history, config=fast_config)
    yield cart_session
    await cart_session.close()


@pytest.mark.asyncio
async def test_session_uses_configured_timers(session):
    assert session.scheduler.grace_period_seconds == GRACE
    assert session.store.scheduler is session.scheduler
    assert session.scheduler.cart_id == session.cart_id
    assert session.currency == "UGX"


@pytest.mark.asyncio
async def test_unknown_product(session):
    assert session.add_product("nope") == CartError.UNKNOWN_PRODUCT
    assert session.decrement_product("nope") == CartError.UNKNOWN_PRODUCT
    assert session.state().is_empty


@pytest.mark.asyncio
async def test_add_and_checkout(session, history):
    session.add_product("A")
    session.add_product("A")
    session.add_product("B")

    assert session.total_price() == Decimal("3200")

    result = await session.checkout()

    assert result.success
    assert session.checkout_status().phase == CheckoutPhase.SUCCEEDED
    assert session.state().is_empty
    assert session.state().last_checkout_message == result.message
    assert len(history.orders_for_user("u1")) == 1


@pytest.mark.asyncio
async def test_zero_line_expires_through_session(session):
    session.add_product("A")
    line = session.line_for_product("A")

    session.set_quantity(line.line_id, 0)
    assert session.line_for_product("A") is not None

    await asyncio.sleep(GRACE * 3)

    assert session.line_for_product("A") is None
    assert session.lines() == []


@pytest.mark.asyncio
async def test_clear_cart_resets_checkout_status(session, history):
    session.add_product("A")
    history.reject_with = "Out of delivery range"
    await session.checkout()
    assert session.checkout_status().phase == CheckoutPhase.FAILED

    assert session.clear_cart() == 1

    assert session.checkout_status().phase == CheckoutPhase.IDLE
    assert session.state().last_checkout_message is None


@pytest.mark.asyncio
async def test_remove_helpers(session):
    session.add_product("A")
    session.add_product("B")

    assert session.remove_all_of_product("A") is True
    line = session.line_for_product("B")
    assert session.remove_line(line.line_id) is True
    assert session.state().is_empty


@pytest.mark.asyncio
async def test_pay_and_checkout_success(session, history):
    session.add_product("A")

    result = await session.pay_and_checkout("0772123456")

    assert result.success
    assert session.payment_status().phase == PaymentPhase.SUCCESS
    assert len(history) == 1


@pytest.mark.asyncio
async def test_failed_payment_keeps_cart(catalog, history, fast_config):
    payment = PaymentSimulator(delay_seconds=0.01, success_rate=0.0)

    async with CartSession("u1", catalog, history, config=fast_config, payment=payment) as session:
        session.add_product("A")

        result = await session.pay_and_checkout("0772123456")

        assert not result.success
        assert result.message == session.payment_status().message
        assert session.checkout_status().phase == CheckoutPhase.FAILED
        assert session.checkout_status().message == result.message
        assert len(session.lines()) == 1
        assert len(history) == 0


@pytest.mark.asyncio
async def test_cart_changes_during_payment_are_not_charged_or_ordered(session, history):
    session.add_product("A")

    task = asyncio.create_task(session.pay_and_checkout("0772123456"))
    await asyncio.sleep(0)
    assert session.checkout_status().phase == CheckoutPhase.PROCESSING
    assert session.payment_status().phase == PaymentPhase.PROCESSING

    session.add_product("A")
    session.add_product("B")

    result = await task

    assert result.success
    assert result.draft.total_amount == Decimal("1200")
    order = history.get_order(result.order_id)
    assert order.total_amount == Decimal("1200")
    assert [(item.product_id, item.quantity) for item in order.items] == [("A", 1)]
    assert session.payment.last_transaction_id in session.payment_status().message


@pytest.mark.asyncio
async def test_zeroed_line_during_payment_still_places_paid_order(session, history):
    session.add_product("A")
    line = session.line_for_product("A")

    task = asyncio.create_task(session.pay_and_checkout("0772123456"))
    await asyncio.sleep(0)
    session.set_quantity(line.line_id, 0)

    result = await task

    assert result.success
    assert session.payment_status().phase == PaymentPhase.SUCCESS
    assert len(history.orders_for_user("u1")) == 1
    assert session.state().is_empty
    assert session.scheduler.pending_count() == 0


@pytest.mark.asyncio
async def test_second_pay_and_checkout_rejected_while_paying(session, history):
    session.add_product("A")

    task = asyncio.create_task(session.pay_and_checkout("0772123456"))
    await asyncio.sleep(0)

    second = await session.pay_and_checkout("0772123456")
    first = await task

    assert second.error == CartError.CHECKOUT_ALREADY_IN_PROGRESS
    assert first.success
    assert len(history) == 1


@pytest.mark.asyncio
async def test_pay_and_checkout_checks_cart_first(session):
    result = await session.pay_and_checkout("0772123456")

    assert result.error == CartError.EMPTY_CART
    assert session.payment_status().phase == PaymentPhase.IDLE


@pytest.mark.asyncio
async def test_sessions_are_isolated(catalog, history, fast_config):
    async with CartSession("u1", catalog, history, config=fast_config) as first, \
            CartSession("u2", catalog, history, config=fast_config) as second:
        first.add_product("A")
        second.add_product("B")

        await asyncio.gather(first.checkout(), second.checkout())

    assert [o.items[0].product_id for o in history.orders_for_user("u1")] == ["A"]
    assert [o.items[0].product_id for o in history.orders_for_user("u2")] == ["B"]


@pytest.mark.asyncio
async def test_close_stops_timers_and_is_idempotent(session):
    session.add_product("A")
    line = session.line_for_product("A")
    session.set_quantity(line.line_id, 0)

    await session.close()
    await session.close()

    assert session.scheduler.pending_count() == 0
    await asyncio.sleep(GRACE * 3)
    # Contents are kept after close
    assert session.line_for_product("A") is not None


@pytest.mark.asyncio
async def test_stats(session):
    session.add_product("A")

    stats = session.get_stats()

    assert stats["user_id"] == "u1"
    assert stats["cart"]["total_price"] == "1200"
    assert stats["checkout"]["phase"] == "idle"
    assert stats["payment"]["phase"] == "idle"
