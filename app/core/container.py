from __future__ import annotations

from dataclasses import dataclass

from aiogram import Bot

from app.adapters.balances import EvmBalanceAdapter
from app.adapters.trade_api import TradeApiExecutor
from app.bot.messenger import AiogramMessenger
from app.bot.presenter import FlowPresenter
from app.core.cache import RedisCache
from app.core.http import ResilientHTTPClient
from app.services.conversations import ConversationStore, ProfileCache
from app.services.operations import OperationMachine
from app.services.orders import OrderService
from app.services.profiles import ProfileService
from app.services.transactions import TransactionJournal
from app.services.users import UserService
from app.services.vault import KeyVaultService
from app.services.wallets import WalletService


@dataclass
class ServiceHub:
    bot: Bot
    bot_username: str | None
    http: ResilientHTTPClient
    cache: RedisCache
    conversations: ConversationStore
    profile_cache: ProfileCache
    user_service: UserService
    profile_service: ProfileService
    vault: KeyVaultService
    wallet_service: WalletService
    balances: EvmBalanceAdapter
    trade_api: TradeApiExecutor
    journal: TransactionJournal
    operations: OperationMachine
    order_service: OrderService
    messenger: AiogramMessenger
    presenter: FlowPresenter
