from __future__ import annotations

import logging
from dataclasses import dataclass

from eth_account import Account

from app.core.errors import NotEligibleError, WalletExistsError
from app.core.fmt import short_address
from app.services.profiles import ProfileService
from app.services.vault import KeyVaultService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WalletCreation:
    address: str
    # Only set when the key made it into the vault.
    private_key: str | None
    secured: bool


def generate_keypair() -> tuple[str, str]:
    acct = Account.create()
    return acct.address, "0x" + bytes(acct.key).hex()


class WalletService:
    def __init__(self, profiles: ProfileService, vault: KeyVaultService, chain: str = "base", keygen=generate_keypair) -> None:
        self.profiles = profiles
        self.vault = vault
        self.chain = chain
        self.keygen = keygen

    async def create_wallet(self, chat_id: int) -> WalletCreation:
        """Generate a key pair, vault the key, then link the wallet to the user.

        A wallet whose key could not be stored is never linked: the bot could not sign for it.
        """
        profile = await self.profiles.load(chat_id, force_refresh=True)
        if profile is None:
            raise NotEligibleError("not_registered")
        if not profile.terms_accepted:
            raise NotEligibleError("terms_not_accepted")
        if profile.wallets:
            raise WalletExistsError(profile.wallets[0].address)

        address, private_key = self.keygen()
        secured = await self.vault.store(address, private_key)
        if not secured:
            logger.error("wallet_key_not_secured", extra={"event": "wallet_key_not_secured", "chat_id": chat_id})
            return WalletCreation(address=address, private_key=None, secured=False)

        try:
            await self.profiles.add_wallet(chat_id, address, self.chain)
        except Exception:
            await self.vault.delete(address)
            raise
        logger.info(
            "wallet_created",
            extra={"event": "wallet_created", "chat_id": chat_id, "wallet": short_address(address)},
        )
        return WalletCreation(address=address, private_key=private_key, secured=True)
