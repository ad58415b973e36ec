from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from app.core.errors import ValidationError
from app.db.models import User, Wallet

DEFAULT_SETTINGS = {
    "language": "en",
    "slippage": "0.5",
    "gas_priority": "standard",
    "auto_trade": False,
    "pro_mode": False,
}
SLIPPAGE_CHOICES = ("0.1", "0.5", "1", "2", "3")
GAS_PRIORITIES = ("standard", "fast", "instant")
_BOOL_SETTINGS = ("auto_trade", "pro_mode")


@dataclass(frozen=True)
class WalletInfo:
    address: str
    chain: str
    created_at: datetime | None = None


@dataclass(frozen=True)
class UserProfile:
    chat_id: int
    terms_accepted: bool = False
    wallets: tuple[WalletInfo, ...] = ()
    settings: dict | None = None
    user_id: int | None = None

    @property
    def is_trade_eligible(self) -> bool:
        return self.terms_accepted and len(self.wallets) > 0

    @property
    def primary_wallet(self) -> WalletInfo | None:
        return self.wallets[0] if self.wallets else None

    def effective_settings(self) -> dict:
        out = DEFAULT_SETTINGS.copy()
        out.update(self.settings or {})
        return out


class ProfileStore(Protocol):
    async def get_profile(self, chat_id: int) -> UserProfile | None: ...

    async def accept_terms(self, chat_id: int) -> None: ...

    async def add_wallet(self, chat_id: int, address: str, chain: str) -> WalletInfo: ...

    async def update_settings(self, chat_id: int, updates: dict) -> dict: ...


def validate_settings_update(updates: dict) -> dict:
    """Reject unknown keys and values outside the menu choices."""
    clean: dict = {}
    for key, value in updates.items():
        if key == "slippage":
            text = str(value).strip()
            if text not in SLIPPAGE_CHOICES:
                raise ValidationError("slippage", f"Slippage must be one of {', '.join(SLIPPAGE_CHOICES)}")
            clean[key] = text
        elif key == "gas_priority":
            text = str(value).strip().lower()
            if text not in GAS_PRIORITIES:
                raise ValidationError("gas_priority", f"Gas priority must be one of {', '.join(GAS_PRIORITIES)}")
            clean[key] = text
        elif key in _BOOL_SETTINGS:
            clean[key] = bool(value)
        elif key == "language":
            clean[key] = str(value).strip().lower()[:8] or "en"
        else:
            raise ValidationError(key, "Unknown setting")
    return clean


def _to_profile(user: User) -> UserProfile:
    wallets = tuple(WalletInfo(address=w.address, chain=w.chain, created_at=w.created_at) for w in user.wallets)
    return UserProfile(
        chat_id=user.telegram_chat_id,
        terms_accepted=bool(user.terms_accepted),
        wallets=wallets,
        settings=dict(user.settings_json or {}),
        user_id=user.id,
    )


class UserService:
    def __init__(self, db_factory) -> None:
        self.db_factory = db_factory

    async def _load(self, session, chat_id: int) -> User | None:
        q = await session.execute(
            select(User).options(selectinload(User.wallets)).where(User.telegram_chat_id == chat_id)
        )
        return q.scalar_one_or_none()

    async def ensure_user(self, chat_id: int, username: str | None = None) -> User:
        async with self.db_factory() as session:
            user = await self._load(session, chat_id)
            if user:
                user.last_seen_at = datetime.utcnow()
                if username:
                    user.username = username[:64]
                if not user.settings_json:
                    user.settings_json = DEFAULT_SETTINGS.copy()
                await session.commit()
                return user

            user = User(
                telegram_chat_id=chat_id,
                username=username[:64] if username else None,
                settings_json=DEFAULT_SETTINGS.copy(),
                wallets=[],
            )
            session.add(user)
            await session.commit()
            return user

    async def get_profile(self, chat_id: int) -> UserProfile | None:
        async with self.db_factory() as session:
            user = await self._load(session, chat_id)
            return _to_profile(user) if user else None

    async def accept_terms(self, chat_id: int) -> None:
        async with self.db_factory() as session:
            user = await self._load(session, chat_id)
            if not user:
                user = User(telegram_chat_id=chat_id, settings_json=DEFAULT_SETTINGS.copy())
                session.add(user)
            user.terms_accepted = True
            user.terms_accepted_at = datetime.utcnow()
            await session.commit()

    async def add_wallet(self, chat_id: int, address: str, chain: str) -> WalletInfo:
        async with self.db_factory() as session:
            user = await self._load(session, chat_id)
            if not user:
                user = User(telegram_chat_id=chat_id, settings_json=DEFAULT_SETTINGS.copy())
                session.add(user)
                await session.flush()
            row = Wallet(user_id=user.id, chain=chain, address=address, created_at=datetime.utcnow())
            session.add(row)
            await session.commit()
            return WalletInfo(address=row.address, chain=row.chain, created_at=row.created_at)

    async def update_settings(self, chat_id: int, updates: dict) -> dict:
        clean = validate_settings_update(updates)
        async with self.db_factory() as session:
            user = await self._load(session, chat_id)
            if not user:
                user = User(telegram_chat_id=chat_id, settings_json=DEFAULT_SETTINGS.copy())
                session.add(user)
                await session.flush()

            merged = DEFAULT_SETTINGS.copy()
            merged.update(user.settings_json or {})
            merged.update(clean)
            user.settings_json = merged
            user.last_seen_at = datetime.utcnow()
            await session.commit()
            return merged
