"""Tests for bot handlers that render reconcile outcomes."""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from aiogram.enums import ChatMemberStatus

from channel_gate.bot.main import (
    ALREADY_MEMBER_TEXT,
    ASK_EMAIL_TEXT,
    BAD_EMAIL_TEXT,
    NOT_STARTED_TEXT,
    PAY_TEXT,
    BotStates,
    buy,
    cmd_checkpayment,
    email_entered,
    member_status,
    render_outcome,
)
from channel_gate.reconciliation import OutcomeStatus, ReconcileOutcome
from channel_gate.services.checkout.service import CheckoutStatus
from channel_gate.services.credentials.models import Credential


def _credential():
    now = datetime.now(timezone.utc)
    return Credential(link="https://t.me/+abc", issued_at=now, expires_at=now + timedelta(hours=1))


def _notifier():
    notifier = MagicMock()
    for name in ("deliver_credential", "payment_pending", "issuance_failed", "issuance_in_progress"):
        setattr(notifier, name, AsyncMock())
    return notifier


def _message(user_id=111, text="/checkpayment"):
    message = MagicMock()
    message.from_user.id = user_id
    message.from_user.first_name = "Ann"
    message.from_user.username = "ann"
    message.chat.id = user_id
    message.text = text
    message.answer = AsyncMock()
    return message


class TestMemberStatus:
    def test_plain_status(self):
        assert member_status(MagicMock(status=ChatMemberStatus.MEMBER)) == "member"

    def test_restricted_outside_chat_counts_as_left(self):
        assert member_status(MagicMock(status=ChatMemberStatus.RESTRICTED, is_member=False)) == "left"

    def test_restricted_member(self):
        assert member_status(MagicMock(status=ChatMemberStatus.RESTRICTED, is_member=True)) == "restricted"


class TestRenderOutcome:
    def test_fulfilled_redelivers_unused_link(self):
        store = MagicMock()
        store.get_by_user_id.return_value = MagicMock(credential_consumed=False)
        notifier, bot = _notifier(), MagicMock(send_message=AsyncMock())
        outcome = ReconcileOutcome(
            status=OutcomeStatus.ALREADY_FULFILLED, reference="p1", user_id="111", credential=_credential()
        )

        asyncio.run(render_outcome("111", outcome, store, notifier, bot))

        notifier.deliver_credential.assert_awaited_once_with("111", outcome.credential)

    def test_fulfilled_and_used(self):
        store = MagicMock()
        store.get_by_user_id.return_value = MagicMock(credential_consumed=True)
        notifier, bot = _notifier(), MagicMock(send_message=AsyncMock())
        outcome = ReconcileOutcome(
            status=OutcomeStatus.ALREADY_FULFILLED, reference="p1", user_id="111", credential=_credential()
        )

        asyncio.run(render_outcome("111", outcome, store, notifier, bot))

        notifier.deliver_credential.assert_not_awaited()
        bot.send_message.assert_awaited_once_with(chat_id="111", text=ALREADY_MEMBER_TEXT)

    def test_pending(self):
        notifier, bot = _notifier(), MagicMock(send_message=AsyncMock())
        outcome = ReconcileOutcome(status=OutcomeStatus.NOT_YET_SETTLED, reference="p1", gateway_status="pending")

        asyncio.run(render_outcome("111", outcome, MagicMock(), notifier, bot))

        notifier.payment_pending.assert_awaited_once_with("111", "pending")

    def test_claimed_with_error(self):
        notifier, bot = _notifier(), MagicMock(send_message=AsyncMock())
        outcome = ReconcileOutcome(status=OutcomeStatus.ALREADY_CLAIMED, reference="p1", error="boom")

        asyncio.run(render_outcome("111", outcome, MagicMock(), notifier, bot))

        notifier.issuance_failed.assert_awaited_once_with("111")


class TestCheckPayment:
    def test_without_payment(self, store):
        message = _message()
        engine = MagicMock(reconcile=AsyncMock())

        asyncio.run(cmd_checkpayment(message, MagicMock(), engine, store, _notifier()))

        message.answer.assert_awaited_once_with(NOT_STARTED_TEXT)
        engine.reconcile.assert_not_awaited()
        assert store.get_by_user_id("111").chat_id == "111"

    def test_polls_linked_payment(self, store):
        store.get_or_create("111", chat_id="111")
        store.link_payment("111", "p1", "corr-1")
        engine = MagicMock(
            reconcile=AsyncMock(
                return_value=ReconcileOutcome(status=OutcomeStatus.NOT_YET_SETTLED, reference="p1", gateway_status="pending")
            )
        )
        notifier = _notifier()

        asyncio.run(cmd_checkpayment(_message(), MagicMock(), engine, store, notifier))

        engine.reconcile.assert_awaited_once_with("p1", trigger="poll")
        notifier.payment_pending.assert_awaited_once_with("111", "pending")


class TestEmailEntered:
    def test_invalid_email_keeps_state(self):
        message = _message(text="not-an-email")
        state = MagicMock(clear=AsyncMock())
        checkout = MagicMock(start_checkout=AsyncMock())

        asyncio.run(email_entered(message, state, checkout, _notifier()))

        message.answer.assert_awaited_once_with(BAD_EMAIL_TEXT)
        state.clear.assert_not_awaited()
        checkout.start_checkout.assert_not_awaited()


def _callback(user_id=111):
    callback = MagicMock()
    callback.from_user.id = user_id
    callback.message = _message(user_id)
    callback.message.message_id = 5
    callback.answer = AsyncMock()
    return callback


class TestBuy:
    def test_repeated_tap_is_dropped(self, store):
        callback = _callback()
        idempotency = MagicMock()
        idempotency.first_tap.return_value = False
        checkout = MagicMock(start_checkout=AsyncMock())

        asyncio.run(buy(callback, MagicMock(set_state=AsyncMock()), store, checkout, _notifier(), idempotency))

        idempotency.first_tap.assert_called_once_with("buy", "111", 5)
        callback.message.answer.assert_not_awaited()
        checkout.start_checkout.assert_not_awaited()

    def test_asks_for_email_first(self, store):
        callback = _callback()
        state = MagicMock(set_state=AsyncMock())
        idempotency = MagicMock()
        idempotency.first_tap.return_value = True
        checkout = MagicMock(start_checkout=AsyncMock())

        asyncio.run(buy(callback, state, store, checkout, _notifier(), idempotency))

        state.set_state.assert_awaited_once_with(BotStates.waiting_for_email)
        callback.message.answer.assert_awaited_once_with(ASK_EMAIL_TEXT)
        checkout.start_checkout.assert_not_awaited()

    def test_known_email_goes_to_checkout(self, store):
        store.get_or_create("111", chat_id="111")
        store.link_payment("111", "p0", "corr-0", email="ann@example.com")
        callback = _callback()
        idempotency = MagicMock()
        idempotency.first_tap.return_value = True
        checkout = MagicMock(
            start_checkout=AsyncMock(
                return_value=MagicMock(status=CheckoutStatus.CREATED, checkout_url="https://pay.example/1")
            )
        )

        asyncio.run(buy(callback, MagicMock(set_state=AsyncMock()), store, checkout, _notifier(), idempotency))

        assert checkout.start_checkout.await_args.kwargs["email"] == "ann@example.com"
        assert callback.message.answer.await_args.args[0] == PAY_TEXT

    def test_open_payment_page_is_shown_again(self, store):
        store.get_or_create("111", chat_id="111")
        callback = _callback()
        idempotency = MagicMock()
        idempotency.first_tap.return_value = True
        store.link_payment("111", "gw-1", "corr-1", email="ann@example.com")
        checkout = MagicMock(
            start_checkout=AsyncMock(
                return_value=MagicMock(status=CheckoutStatus.AWAITING_PAYMENT, checkout_url="https://pay.example/1")
            )
        )

        asyncio.run(buy(callback, MagicMock(set_state=AsyncMock()), store, checkout, _notifier(), idempotency))

        text = callback.message.answer.await_args.args[0]
        markup = callback.message.answer.await_args.kwargs["reply_markup"]
        assert text == PAY_TEXT
        assert markup.inline_keyboard[0][0].url == "https://pay.example/1"
