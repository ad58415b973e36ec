from __future__ import annotations

import logging

from app.core.errors import NotEligibleError
from app.services.conversations import ProfileCache
from app.services.users import ProfileStore, UserProfile, WalletInfo

logger = logging.getLogger(__name__)


class ProfileService:
    """Cached read path over the profile store.

    Every write made through here invalidates or merges the cache entry before it returns,
    so an eligibility check after wallet creation always sees the new wallet.
    """

    def __init__(self, store: ProfileStore, cache: ProfileCache) -> None:
        self.store = store
        self.cache = cache

    async def load(
        self,
        chat_id: int,
        allow_stale: bool = True,
        force_refresh: bool = False,
        cache_only: bool = False,
    ) -> UserProfile | None:
        if cache_only:
            cached = self.cache.get(chat_id)
            return cached if cached and cached.is_trade_eligible else None

        # Only an eligible snapshot is worth trusting; anything else is re-read.
        if allow_stale and not force_refresh:
            cached = self.cache.get(chat_id)
            if cached is not None and cached.is_trade_eligible:
                return cached

        try:
            profile = await self.store.get_profile(chat_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "profile_load_failed",
                extra={"event": "profile_load_failed", "chat_id": chat_id, "reason": exc.__class__.__name__},
            )
            self.cache.invalidate(chat_id)
            return None
        if profile is None:
            self.cache.invalidate(chat_id)
            return None
        self.cache.set(chat_id, profile)
        return profile

    async def require_eligible(self, chat_id: int, allow_stale: bool = True, force_refresh: bool = False) -> UserProfile:
        profile = await self.load(chat_id, allow_stale=allow_stale, force_refresh=force_refresh)
        if profile is None:
            raise NotEligibleError("not_registered")
        if not profile.terms_accepted:
            raise NotEligibleError("terms_not_accepted")
        if not profile.wallets:
            raise NotEligibleError("no_wallet")
        return profile

    async def accept_terms(self, chat_id: int) -> None:
        await self.store.accept_terms(chat_id)
        if self.cache.merge_update(chat_id, terms_accepted=True) is None:
            self.cache.invalidate(chat_id)

    async def add_wallet(self, chat_id: int, address: str, chain: str) -> WalletInfo:
        try:
            return await self.store.add_wallet(chat_id, address, chain)
        finally:
            self.cache.invalidate(chat_id)

    async def update_settings(self, chat_id: int, updates: dict) -> dict:
        try:
            merged = await self.store.update_settings(chat_id, updates)
        except Exception:
            self.cache.invalidate(chat_id)
            raise
        if self.cache.merge_update(chat_id, settings=merged) is None:
            self.cache.invalidate(chat_id)
        return merged
