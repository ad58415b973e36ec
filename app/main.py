from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from aiogram import Bot, Dispatcher
from aiogram.types import BotCommand, Update
from fastapi import FastAPI, HTTPException, Request
from sqlalchemy import text

from app.adapters.balances import EvmBalanceAdapter
from app.adapters.trade_api import TradeApiExecutor
from app.bot.handlers import init_handlers, router
from app.bot.messenger import AiogramMessenger
from app.bot.presenter import FlowPresenter
from app.core.cache import RedisCache
from app.core.config import Settings, get_settings
from app.core.container import ServiceHub
from app.core.http import ResilientHTTPClient
from app.core.logging import setup_logging
from app.db.session import AsyncSessionLocal
from app.services.conversations import ConversationStore, ProfileCache
from app.services.operations import OperationMachine
from app.services.orders import OrderService
from app.services.profiles import ProfileService
from app.services.transactions import TransactionJournal
from app.services.users import UserService
from app.services.vault import KeyVaultService, SqlVaultBackend
from app.services.wallets import WalletService
from app.workers.scheduler import WorkerScheduler

logger = logging.getLogger(__name__)


async def _sync_bot_commands(bot: Bot) -> None:
    command_specs = [
        ("buy", "Buy a token with ETH"),
        ("cancel", "Cancel the current operation"),
        ("dca", "Set up a recurring buy"),
        ("deposit", "Your deposit address"),
        ("help", "List commands"),
        ("limit", "Place a limit sell order"),
        ("orders", "View and cancel open orders"),
        ("sell", "Sell a token for ETH"),
        ("settings", "Slippage and gas priority"),
        ("start", "Start the bot"),
        ("transactions", "Recent transaction history"),
        ("wallet", "Your wallet and balance"),
        ("withdraw", "Send ETH to another address"),
    ]
    commands = [BotCommand(command=command, description=description) for command, description in command_specs]
    await bot.set_my_commands(commands)


def build_hub(settings: Settings, bot: Bot, cache: RedisCache, http: ResilientHTTPClient) -> ServiceHub:
    conversations = ConversationStore()
    profile_cache = ProfileCache(conversations, ttl_sec=settings.profile_cache_ttl_sec)
    user_service = UserService(AsyncSessionLocal)
    profile_service = ProfileService(user_service, profile_cache)
    vault = KeyVaultService(SqlVaultBackend(AsyncSessionLocal), settings.vault_master_password)

    balances = EvmBalanceAdapter(http=http, rpc_url=settings.base_rpc_url, native_token_address=settings.native_token_address)
    trade_api = TradeApiExecutor(
        http=http,
        base_url=settings.trade_api_base_url,
        api_key=settings.trade_api_key,
        chain=settings.trade_chain,
        referrer=settings.referrer_address,
        # The state machine enforces the hard deadline; this only stops a hung socket outliving it.
        submit_timeout=settings.executor_timeout_sec + 5,
    )
    journal = TransactionJournal(AsyncSessionLocal, native_token_address=settings.native_token_address)
    messenger = AiogramMessenger(bot)

    return ServiceHub(
        bot=bot,
        bot_username=None,
        http=http,
        cache=cache,
        conversations=conversations,
        profile_cache=profile_cache,
        user_service=user_service,
        profile_service=profile_service,
        vault=vault,
        wallet_service=WalletService(profile_service, vault, chain=settings.trade_chain),
        balances=balances,
        trade_api=trade_api,
        journal=journal,
        operations=OperationMachine(
            conversations=conversations,
            profiles=profile_service,
            vault=vault,
            balances=balances,
            executor=trade_api,
            journal=journal,
            executor_timeout=settings.executor_timeout_sec,
        ),
        order_service=OrderService(trade_api, vault, profile_service),
        messenger=messenger,
        presenter=FlowPresenter(messenger, hint_delete_delay=settings.message_delete_delay_sec),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings.log_level)

    if not settings.telegram_bot_token:
        raise RuntimeError("TELEGRAM_BOT_TOKEN is required")
    if not settings.vault_master_password:
        raise RuntimeError("VAULT_MASTER_PASSWORD is required")

    cache = RedisCache(settings.redis_url)
    http = ResilientHTTPClient(timeout=settings.rpc_timeout_sec)

    bot = Bot(token=settings.telegram_bot_token)
    dp = Dispatcher()

    hub = build_hub(settings, bot, cache, http)
    try:
        me = await bot.get_me()
        hub.bot_username = me.username.lower() if me.username else None
    except Exception:  # noqa: BLE001
        hub.bot_username = None

    try:
        await _sync_bot_commands(bot)
    except Exception as exc:  # noqa: BLE001
        logger.warning("set_bot_commands_failed", extra={"event": "set_bot_commands_failed", "reason": str(exc)})
    init_handlers(hub)
    dp.include_router(router)

    scheduler = None
    if not settings.serverless_mode:
        scheduler = WorkerScheduler(hub.conversations)
        scheduler.start()

    polling_task = None
    if settings.telegram_use_webhook and settings.telegram_auto_set_webhook:
        webhook_url = settings.telegram_webhook_url.rstrip("/") + settings.telegram_webhook_path
        try:
            await bot.set_webhook(webhook_url, secret_token=settings.telegram_webhook_secret or None)
            logger.info("webhook_configured", extra={"event": "webhook_configured"})
        except Exception as exc:  # noqa: BLE001
            logger.exception("webhook_configure_failed", extra={"event": "webhook_configure_failed", "reason": str(exc)})
    elif not settings.telegram_use_webhook and not settings.serverless_mode:
        polling_task = asyncio.create_task(dp.start_polling(bot, allowed_updates=dp.resolve_used_update_types()))

    app.state.settings = settings
    app.state.hub = hub
    app.state.dp = dp
    app.state.bot = bot
    app.state.cache = cache
    app.state.scheduler = scheduler

    try:
        yield
    finally:
        if scheduler:
            scheduler.stop()
        if polling_task:
            polling_task.cancel()
            with contextlib.suppress(Exception):
                await polling_task
        await hub.messenger.close()
        await bot.session.close()
        await http.close()
        await cache.close()


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Custody Trade Bot", version="1.0.0", lifespan=lifespan)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/ready")
    async def ready() -> dict:
        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
            if not await app.state.cache.ping():
                raise RuntimeError("Redis ping failed")
            return {"status": "ready"}
        except Exception as exc:  # noqa: BLE001
            raise HTTPException(status_code=503, detail=str(exc)) from exc

    @app.post(settings.telegram_webhook_path)
    async def telegram_webhook(req: Request) -> dict:
        app_settings = app.state.settings
        if not app_settings.telegram_use_webhook:
            raise HTTPException(status_code=400, detail="Webhook mode disabled")

        if app_settings.telegram_webhook_secret:
            secret = req.headers.get("X-Telegram-Bot-Api-Secret-Token", "")
            if secret != app_settings.telegram_webhook_secret:
                raise HTTPException(status_code=403, detail="Invalid secret")

        payload = await req.json()
        update = Update.model_validate(payload)
        await app.state.dp.feed_update(app.state.bot, update)
        return {"ok": True}

    @app.api_route("/tasks/conversations/sweep", methods=["GET", "POST"])
    async def task_sweep(req: Request) -> dict:
        if settings.cron_secret and req.headers.get("authorization", "") != f"Bearer {settings.cron_secret}":
            raise HTTPException(status_code=401, detail="Unauthorized")
        removed = app.state.hub.conversations.evict_idle(app.state.settings.conversation_idle_minutes * 60)
        return {"ok": True, "removed": removed, "task": "sweep", "ts": datetime.now(timezone.utc).isoformat()}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run("app.main:app", host=settings.host, port=settings.port, reload=False)
