"""
Telegram bot using aiogram 3.x (polling).

Триггеры сверки со стороны пользователя: /checkpayment, /renew_link, /start (для отложенной выдачи).
chat_member закрытого канала уходит в MembershipWatcher.
Компоненты передаются в хендлеры через workflow data диспетчера.
"""
import asyncio
import logging
import re

from aiogram import Bot, Dispatcher, F, Router
from aiogram.filters import Command, CommandStart
from aiogram.fsm.context import FSMContext
from aiogram.fsm.state import State, StatesGroup
from aiogram.fsm.storage.redis import RedisStorage
from aiogram.types import (
    BotCommand,
    CallbackQuery,
    ChatMemberUpdated,
    ErrorEvent,
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    Message,
)

from channel_gate.core.config import settings
from channel_gate.core.logging import configure_logging
from channel_gate.reconciliation import OutcomeStatus, ReconcileOutcome, ReconciliationEngine
from channel_gate.reconciliation.factory import build_engine
from channel_gate.services.checkout.service import CheckoutService, CheckoutStatus
from channel_gate.services.club_settings.provider import ClubSettingsProvider
from channel_gate.services.credentials.issuer import CredentialIssuer
from channel_gate.services.credentials.models import Credential
from channel_gate.services.idempotency import IdempotencyStore
from channel_gate.services.membership.watcher import MembershipWatcher
from channel_gate.services.notifications.notifier import Notifier
from channel_gate.services.payments.gateway import PaymentGatewayError
from channel_gate.services.subscribers.store import SubscriberStore

logger = logging.getLogger("bot")

router = Router()

BUY_CALLBACK = "buy"
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

TRY_LATER_TEXT = "Произошла ошибка. Попробуйте позже или свяжитесь с поддержкой."
GATEWAY_UNAVAILABLE_TEXT = "Платёжный сервис сейчас недоступен. Попробуйте через пару минут."
NOT_STARTED_TEXT = "Вы ещё не начинали оплату. Нажмите /start, чтобы оформить доступ."
ALREADY_MEMBER_TEXT = "Вы уже вступили в канал — ссылка использована. Если вы вышли из канала, напишите в поддержку."
RATE_LIMITED_TEXT = "Слишком много попыток оплаты. Попробуйте через минуту."
ASK_EMAIL_TEXT = "Пожалуйста, введите ваш email для чека:"
BAD_EMAIL_TEXT = "Пожалуйста, введите действительный email (например, user@example.com):"
PAY_TEXT = "Перейдите по ссылке для оплаты. После оплаты ссылка на канал придёт в этот чат."
UNKNOWN_PAYMENT_TEXT = "Платёж не найден. Оформите оплату заново через /start."
DEFERRED_TEXT = "Оплата найдена, доступ оформляется. Повторите /checkpayment через минуту."


class BotStates(StatesGroup):
    waiting_for_email = State()


def buy_keyboard(amount: int, support_link: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [InlineKeyboardButton(text=f"🔥 Купить за {amount}р.", callback_data=BUY_CALLBACK)],
            [InlineKeyboardButton(text="💬 Техподдержка", url=support_link)],
        ]
    )


def member_status(member) -> str | None:
    """ChatMember → status string; a restricted user who is not in the chat counts as left."""
    status = getattr(member, "status", None)
    value = getattr(status, "value", status)
    if value == "restricted" and not getattr(member, "is_member", False):
        return "left"
    return value


async def render_outcome(
    chat_id: str,
    outcome: ReconcileOutcome,
    store: SubscriberStore,
    notifier: Notifier,
    bot: Bot,
) -> None:
    """User-facing answer for a poll-style reconcile. ISSUED and FAILED were already messaged by the engine."""
    status = outcome.status
    if status == OutcomeStatus.ALREADY_FULFILLED:
        sub = store.get_by_user_id(outcome.user_id) if outcome.user_id else None
        if sub is not None and not sub.credential_consumed and outcome.credential is not None:
            await notifier.deliver_credential(chat_id, outcome.credential)
        else:
            await bot.send_message(chat_id=chat_id, text=ALREADY_MEMBER_TEXT)
    elif status == OutcomeStatus.NOT_YET_SETTLED:
        await notifier.payment_pending(chat_id, outcome.gateway_status)
    elif status == OutcomeStatus.ALREADY_CLAIMED:
        if outcome.error:
            await notifier.issuance_failed(chat_id)
        else:
            await notifier.issuance_in_progress(chat_id)
    elif status == OutcomeStatus.DEFERRED:
        await bot.send_message(chat_id=chat_id, text=DEFERRED_TEXT)
    elif status == OutcomeStatus.UNKNOWN_REFERENCE:
        await bot.send_message(chat_id=chat_id, text=UNKNOWN_PAYMENT_TEXT)


async def _poll(message: Message, trigger: str, engine: ReconciliationEngine, store: SubscriberStore, notifier: Notifier, bot: Bot) -> None:
    u = message.from_user
    user_id = str(u.id)
    chat_id = str(message.chat.id)
    try:
        # first contact fills chat_id of a webhook-created placeholder
        sub = store.get_or_create(user_id, chat_id, first_name=u.first_name, username=u.username)
        if not sub.payment_id:
            await message.answer(NOT_STARTED_TEXT)
            return
        outcome = await engine.reconcile(sub.payment_id, trigger=trigger)
        await render_outcome(chat_id, outcome, store, notifier, bot)
    except PaymentGatewayError as e:
        logger.warning("poll_gateway_error", extra={"user_id": user_id, "trigger": trigger, "error": str(e)})
        await message.answer(GATEWAY_UNAVAILABLE_TEXT)
    except Exception:
        logger.exception("Error in poll", extra={"user_id": user_id, "trigger": trigger})
        await message.answer(TRY_LATER_TEXT)


@router.message(CommandStart())
async def cmd_start(
    message: Message,
    state: FSMContext,
    bot: Bot,
    engine: ReconciliationEngine,
    store: SubscriberStore,
    notifier: Notifier,
    settings_provider: ClubSettingsProvider,
):
    u = message.from_user
    user_id = str(u.id)
    chat_id = str(message.chat.id)
    try:
        await state.clear()
        sub = store.get_or_create(user_id, chat_id, first_name=u.first_name, username=u.username)
        club = settings_provider.get()
        if sub.is_paid:
            await message.answer(
                club.paid_welcome_message,
                reply_markup=InlineKeyboardMarkup(
                    inline_keyboard=[[InlineKeyboardButton(text="💬 Техподдержка", url=club.support_link)]]
                ),
            )
            logger.info("start", extra={"user_id": user_id, "event": "paid"})
            return

        await message.answer(club.welcome_message, reply_markup=buy_keyboard(club.payment_amount, club.support_link))
        logger.info("start", extra={"user_id": user_id})

        if sub.payment_id and not sub.issuance_claimed:
            # payment may have settled before we knew where to deliver
            outcome = await engine.reconcile(sub.payment_id, trigger="start")
            if outcome.status not in (OutcomeStatus.NOT_YET_SETTLED, OutcomeStatus.UNKNOWN_REFERENCE):
                await render_outcome(chat_id, outcome, store, notifier, bot)
    except PaymentGatewayError as e:
        logger.warning("start_gateway_error", extra={"user_id": user_id, "error": str(e)})
    except Exception:
        logger.exception("Error in cmd_start", extra={"user_id": user_id})
        await message.answer(TRY_LATER_TEXT)


async def _checkout(
    message: Message,
    user_id: str,
    chat_id: str,
    email: str | None,
    checkout: CheckoutService,
    notifier: Notifier,
) -> None:
    try:
        result = await checkout.start_checkout(
            user_id,
            chat_id,
            email=email,
            first_name=message.chat.first_name,
            username=message.chat.username,
        )
    except PaymentGatewayError as e:
        logger.warning("checkout_gateway_error", extra={"user_id": user_id, "error": str(e)})
        await message.answer(GATEWAY_UNAVAILABLE_TEXT)
        return

    if result.status in (CheckoutStatus.CREATED, CheckoutStatus.AWAITING_PAYMENT):
        await message.answer(
            PAY_TEXT,
            reply_markup=InlineKeyboardMarkup(
                inline_keyboard=[[InlineKeyboardButton(text="Оплатить", url=result.checkout_url)]]
            ),
        )
    elif result.status == CheckoutStatus.ALREADY_PAID:
        credential: Credential | None = result.credential
        if credential is not None and not credential.is_expired():
            await notifier.deliver_credential(chat_id, credential)
        else:
            await message.answer("Вы уже оплатили доступ. Используйте /renew_link или /checkpayment.")
    elif result.status == CheckoutStatus.IN_PROGRESS:
        await notifier.issuance_in_progress(chat_id)
    elif result.status == CheckoutStatus.RATE_LIMITED:
        await message.answer(RATE_LIMITED_TEXT)


@router.callback_query(F.data == BUY_CALLBACK)
async def buy(
    callback: CallbackQuery,
    state: FSMContext,
    store: SubscriberStore,
    checkout: CheckoutService,
    notifier: Notifier,
    idempotency: IdempotencyStore,
):
    user_id = str(callback.from_user.id)
    chat_id = str(callback.message.chat.id)
    try:
        await callback.answer()
        if not idempotency.first_tap(BUY_CALLBACK, chat_id, callback.message.message_id):
            return
        sub = store.get_by_user_id(user_id)
        if sub is None or not sub.email:
            await state.set_state(BotStates.waiting_for_email)
            await callback.message.answer(ASK_EMAIL_TEXT)
            return
        await _checkout(callback.message, user_id, chat_id, sub.email, checkout, notifier)
    except Exception:
        logger.exception("Error in buy", extra={"user_id": user_id})
        await callback.message.answer(TRY_LATER_TEXT)


@router.message(BotStates.waiting_for_email, F.text)
async def email_entered(
    message: Message,
    state: FSMContext,
    checkout: CheckoutService,
    notifier: Notifier,
):
    user_id = str(message.from_user.id)
    email = (message.text or "").strip()
    if not EMAIL_RE.match(email):
        await message.answer(BAD_EMAIL_TEXT)
        return
    await state.clear()
    try:
        await _checkout(message, user_id, str(message.chat.id), email, checkout, notifier)
    except Exception:
        logger.exception("Error in email_entered", extra={"user_id": user_id})
        await message.answer(TRY_LATER_TEXT)


@router.message(Command("checkpayment"))
async def cmd_checkpayment(message: Message, bot: Bot, engine: ReconciliationEngine, store: SubscriberStore, notifier: Notifier):
    await _poll(message, "poll", engine, store, notifier, bot)


@router.message(Command("renew_link"))
async def cmd_renew_link(message: Message, bot: Bot, engine: ReconciliationEngine, store: SubscriberStore, notifier: Notifier):
    await _poll(message, "renew", engine, store, notifier, bot)


@router.chat_member()
async def on_chat_member(event: ChatMemberUpdated, watcher: MembershipWatcher):
    try:
        await watcher.handle_update(
            chat_id=event.chat.id,
            user_id=event.new_chat_member.user.id,
            old_status=member_status(event.old_chat_member),
            new_status=member_status(event.new_chat_member),
            invite_link=event.invite_link.invite_link if event.invite_link else None,
        )
    except Exception:
        logger.exception("Error in chat_member", extra={"chat_id": str(event.chat.id)})


async def on_error(event: ErrorEvent, *args, **kwargs):
    """Global error handler."""
    logger.exception(
        "Error in handler",
        extra={"error": str(event.exception)},
    )


async def main():
    """Start the bot."""
    configure_logging()
    logger.info("Starting bot...")

    bot = Bot(token=settings.telegram_bot_token)
    settings_provider = ClubSettingsProvider()
    store = SubscriberStore()
    engine = build_engine(bot, store=store, settings_provider=settings_provider)

    # Redis FSM storage: the email prompt survives restarts
    storage = RedisStorage.from_url(settings.redis_url)
    dp = Dispatcher(
        storage=storage,
        engine=engine,
        store=store,
        notifier=engine.notifier,
        settings_provider=settings_provider,
        checkout=CheckoutService(engine.gateway, store, settings_provider),
        watcher=MembershipWatcher(store, CredentialIssuer(bot)),
        idempotency=IdempotencyStore(),
    )
    dp.errors.register(on_error)
    dp.include_router(router)

    await bot.set_my_commands(
        [
            BotCommand(command="start", description="Начать"),
            BotCommand(command="checkpayment", description="Проверить оплату"),
            BotCommand(command="renew_link", description="Обновить ссылку на канал"),
        ]
    )
    # Delete webhook if exists (we use polling)
    await bot.delete_webhook(drop_pending_updates=False)
    logger.info("Bot started successfully!")

    try:
        # chat_member is not delivered unless requested explicitly
        await dp.start_polling(
            bot,
            allowed_updates=["message", "callback_query", "chat_member"],
        )
    finally:
        await engine.gateway.close()
        await bot.session.close()


if __name__ == "__main__":
    asyncio.run(main())
