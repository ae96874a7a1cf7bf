"""Explicit session context for the active account.

A :class:`Session` names which account an operation acts on and whether it
is an admin session.  It is created by logging in and passed to whatever
needs it; nothing looks the active user up from ambient storage.

Admin sessions have unlimited credits for generation but no favorites or
profile of their own, so profile and favorites operations report failure
for them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from . import favorites as favorites_tree
from .account_store import NOT_FOUND, PROTECTED, AccountStore, StoreResult
from .schema import ROOT, Account, PaymentMethod

logger = logging.getLogger(__name__)

ADMIN_DISPLAY_NAME = "Admin"
ADMIN_SESSION_CREDITS = 99999


@dataclass
class Session:
    """The account a request acts on.

    Attributes:
        store: Backing account store.
        username: Username of the active account.
        is_admin: True for admin sessions.
    """

    store: AccountStore
    username: str
    is_admin: bool = False

    @classmethod
    def login(cls, store: AccountStore, username: str, password: str) -> Session | None:
        account = store.authenticate(username, password)
        if account is None:
            logger.info(f"Failed login for {username}")
            return None
        logger.info(f"User logged in: {account.username}")
        return cls(store=store, username=account.username)

    @classmethod
    def admin(cls, store: AccountStore, username: str, password: str) -> Session | None:
        if not store.check_admin_credentials(username, password):
            logger.info("Failed admin login")
            return None
        logger.info("Admin logged in")
        return cls(store=store, username=ADMIN_DISPLAY_NAME, is_admin=True)

    @property
    def account(self) -> Account | None:
        """Fresh copy of the active account, or a synthetic one for admins."""
        if self.is_admin:
            return Account(
                username=ADMIN_DISPLAY_NAME,
                password="",
                credits=ADMIN_SESSION_CREDITS,
            )
        return self.store.get_account(self.username)

    def _admin_refusal(self) -> StoreResult:
        return StoreResult.failure(PROTECTED, "Not available in an admin session.")

    # ------------------------------------------------------------------
    # Credits and payment.
    # ------------------------------------------------------------------

    def decrement_credits(self, amount: int) -> bool:
        if self.is_admin:
            return True
        return self.store.spend_credits(self.username, amount).ok

    def redeem_promo(self, code: str) -> StoreResult:
        if self.is_admin:
            return StoreResult.failure(NOT_FOUND, "User not found.")
        return self.store.redeem_promo(self.username, code)

    def update_api_key(self, api_key: str) -> bool:
        if self.is_admin:
            return False
        return self.store.set_api_key(self.username, api_key).ok

    def update_payment_method(self, method: PaymentMethod | str) -> bool:
        if self.is_admin:
            return False
        return self.store.set_payment_method(self.username, method).ok

    def effective_api_key(self) -> str | None:
        """The user's own key when they pay with it, otherwise None."""
        account = self.account
        if account and account.payment_method == PaymentMethod.API_KEY:
            return account.api_key
        return None

    # ------------------------------------------------------------------
    # Favorites.
    # ------------------------------------------------------------------

    def add_favorite(self, image: str, category: str, folder_id: str = ROOT) -> StoreResult:
        if self.is_admin:
            return self._admin_refusal()
        return self.store.add_favorite(self.username, image, category, folder_id)

    def remove_favorite(self, image: str) -> StoreResult:
        if self.is_admin:
            return self._admin_refusal()
        return self.store.remove_favorite(self.username, image)

    def is_favorite(self, image: str) -> bool:
        account = self.account
        if account is None:
            return False
        return favorites_tree.is_favorite(account.favorites, image)

    def create_folder(self, category: str, name: str) -> StoreResult:
        if self.is_admin:
            return self._admin_refusal()
        return self.store.create_folder(self.username, category, name)

    def rename_folder(self, category: str, folder_id: str, name: str) -> StoreResult:
        if self.is_admin:
            return self._admin_refusal()
        return self.store.rename_folder(self.username, category, folder_id, name)

    def delete_folder(self, category: str, folder_id: str) -> StoreResult:
        if self.is_admin:
            return self._admin_refusal()
        return self.store.delete_folder(self.username, category, folder_id)
