"""SQLite-backed store for accounts, credits, favorites and promo codes.

Each account is one row keyed by its lower-cased username, holding the
record as JSON together with the schema version it was written under.
Promo codes and their redemptions live in their own tables so that
redeeming a code touches exactly one account row, one promo row and one
redemption row inside a single transaction.

Every mutating operation follows the same cycle:

1. open an immediate (write-locked) transaction
2. load the single account row
3. apply the change in memory
4. write that row back and commit

Operations report user-facing outcomes through :class:`StoreResult` rather
than raising, so callers can show the message directly.  Programmer errors
(negative amounts, unknown categories) raise ``ValueError``.
"""

from __future__ import annotations

import json
import logging
import secrets
import sqlite3
import string
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from . import favorites as favorites_tree
from .schema import (
    CURRENT_SCHEMA_VERSION,
    ROOT,
    Account,
    FavoritesFolder,
    PaymentMethod,
    PromoCode,
    UserFavorites,
    normalize_username,
    upgrade_account,
    upgrade_promo,
)

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
PROMO_CODE_LENGTH = 16
GENERATED_PASSWORD_LENGTH = 12

# StoreResult reasons
INSUFFICIENT_CREDITS = "insufficient_credits"
NOT_FOUND = "not_found"
ALREADY_USED = "already_used"
ALREADY_EXISTS = "already_exists"
PROTECTED = "protected"


@dataclass
class StoreResult:
    """Outcome of a store operation.

    Attributes:
        ok: Whether the operation succeeded.
        reason: Machine-readable failure reason (None on success).
        message: Human-readable description for display.
        account: The account after the operation, when one was involved.
        folder: Folder created by ``create_folder``.
    """

    ok: bool
    reason: str | None = None
    message: str = ""
    account: Account | None = None
    folder: FavoritesFolder | None = None

    @classmethod
    def success(cls, account: Account | None = None, message: str = "", **kwargs) -> StoreResult:
        return cls(ok=True, account=account, message=message, **kwargs)

    @classmethod
    def failure(cls, reason: str, message: str, account: Account | None = None) -> StoreResult:
        return cls(ok=False, reason=reason, message=message, account=account)


def generate_code(length: int) -> str:
    """Random string over ``A-Z0-9``."""
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


class AccountStore:
    """Keyed record store for accounts and promo codes.

    The admin account named by *admin_username* is provisioned on open and
    can never be deleted.
    """

    def __init__(
        self,
        db_path: Path,
        admin_username: str,
        admin_password: str | None,
        admin_credits: int = 999999,
    ):
        """Open (and if needed create and upgrade) the account database.

        Args:
            db_path: Path to SQLite database file
            admin_username: Username of the protected admin account
            admin_password: Password of the admin account.  When None the admin
                account is neither provisioned nor accepted at login.
            admin_credits: Balance given to the admin account when created
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.admin_username = admin_username
        self.admin_password = admin_password
        self.admin_credits = admin_credits

        self._initialize_db()
        self.upgrade_stored_records()
        self.ensure_admin()
        logger.info(f"Initialized account store at {self.db_path}")

    @classmethod
    def from_config(cls, config) -> AccountStore:
        return cls(
            config.db_path,
            admin_username=config.admin_username,
            admin_password=config.admin_password,
            admin_credits=config.admin_credits,
        )

    # ------------------------------------------------------------------
    # Connection and schema helpers.
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Open a write-locked transaction, committing on success."""
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_db(self) -> None:
        """Create database schema if it doesn't exist."""
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS accounts (
                    username_key TEXT PRIMARY KEY,
                    schema_version INTEGER NOT NULL,
                    record TEXT NOT NULL,
                    updated_at TIMESTAMP
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS promo_codes (
                    code TEXT PRIMARY KEY,
                    name TEXT NOT NULL DEFAULT '',
                    total_credits INTEGER NOT NULL,
                    created_at TIMESTAMP
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS promo_redemptions (
                    code TEXT NOT NULL,
                    username_key TEXT NOT NULL,
                    username TEXT NOT NULL,
                    redeemed_at TIMESTAMP,
                    PRIMARY KEY (code, username_key)
                )
                """)

    @staticmethod
    def _fetch_account(conn: sqlite3.Connection, key: str) -> Account | None:
        row = conn.execute(
            "SELECT record FROM accounts WHERE username_key = ?",
            (key,),
        ).fetchone()
        if row is None:
            return None
        return Account.model_validate(json.loads(row[0]))

    @staticmethod
    def _write_account(conn: sqlite3.Connection, account: Account) -> None:
        conn.execute(
            """
            INSERT OR REPLACE INTO accounts (username_key, schema_version, record, updated_at)
            VALUES (?, ?, ?, ?)
            """,
            (
                account.key,
                CURRENT_SCHEMA_VERSION,
                account.model_dump_json(),
                datetime.now().isoformat(),
            ),
        )

    def _update_account(
        self, username: str, mutate: Callable[[Account], StoreResult]
    ) -> StoreResult:
        """Load one account, apply *mutate*, and write it back if it succeeded."""
        key = normalize_username(username)
        with self._transaction() as conn:
            account = self._fetch_account(conn, key)
            if account is None:
                return StoreResult.failure(NOT_FOUND, f"User not found: {username}")

            result = mutate(account)
            if result.ok:
                self._write_account(conn, account)
                result.account = account
            return result

    # ------------------------------------------------------------------
    # Schema upgrade and legacy import.
    # ------------------------------------------------------------------

    def upgrade_stored_records(self) -> int:
        """Rewrite every account row stored under an older schema version.

        Returns:
            Number of rows upgraded.
        """
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT record FROM accounts WHERE schema_version < ?",
                (CURRENT_SCHEMA_VERSION,),
            ).fetchall()
            for (record,) in rows:
                self._write_account(conn, upgrade_account(json.loads(record)))

        if rows:
            logger.info(f"Upgraded {len(rows)} account records to schema v{CURRENT_SCHEMA_VERSION}")
        return len(rows)

    def import_legacy_dump(self, dump_path: Path) -> tuple[int, int]:
        """Import accounts and promo codes from a whole-store JSON dump.

        The dump uses the browser storage layout: a ``setka_users`` array of
        account records (any favorites shape) and a ``setka_promo_codes``
        array.  Existing accounts and codes are left untouched.

        Args:
            dump_path: Path to the JSON dump.

        Returns:
            Tuple of (accounts imported, promo codes imported).
        """
        with open(dump_path, encoding="utf-8") as handle:
            dump = json.load(handle)

        imported_accounts = 0
        imported_promos = 0
        now = datetime.now().isoformat()

        with self._transaction() as conn:
            for raw in dump.get("setka_users") or []:
                account = upgrade_account(raw)
                if self._fetch_account(conn, account.key) is not None:
                    logger.debug(f"Skipping existing account: {account.username}")
                    continue
                self._write_account(conn, account)
                imported_accounts += 1

            for raw in dump.get("setka_promo_codes") or []:
                promo = upgrade_promo(raw)
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO promo_codes (code, name, total_credits, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (promo.code.upper(), promo.name, promo.total_credits, now),
                )
                if cursor.rowcount == 0:
                    continue
                imported_promos += 1
                for username in promo.used_by:
                    conn.execute(
                        """
                        INSERT OR IGNORE INTO promo_redemptions
                            (code, username_key, username, redeemed_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (promo.code.upper(), normalize_username(username), username, now),
                    )

        logger.info(
            f"Imported {imported_accounts} accounts and {imported_promos} promo codes "
            f"from {dump_path}"
        )
        return imported_accounts, imported_promos

    # ------------------------------------------------------------------
    # Account management.
    # ------------------------------------------------------------------

    def is_admin_username(self, username: str) -> bool:
        return normalize_username(username) == normalize_username(self.admin_username)

    def ensure_admin(self) -> None:
        """Provision the admin account if it doesn't exist."""
        if self.admin_password is None:
            logger.warning(
                "No admin password configured (SETKA_ADMIN_PASSWORD); "
                "admin account not provisioned"
            )
            return
        with self._transaction() as conn:
            if self._fetch_account(conn, normalize_username(self.admin_username)) is None:
                self._write_account(
                    conn,
                    Account(
                        username=self.admin_username,
                        password=self.admin_password,
                        credits=self.admin_credits,
                    ),
                )
                logger.info(f"Provisioned admin account: {self.admin_username}")

    def get_account(self, username: str) -> Account | None:
        with self._transaction() as conn:
            return self._fetch_account(conn, normalize_username(username))

    def authenticate(self, username: str, password: str) -> Account | None:
        """Return the account if *password* matches, otherwise None."""
        account = self.get_account(username)
        if account is not None and account.password == password:
            return account
        return None

    def check_admin_credentials(self, username: str | None, password: str | None) -> bool:
        if self.admin_password is None:
            return False
        return username == self.admin_username and password == self.admin_password

    def list_users(self) -> list[Account]:
        """All accounts except the admin, in username order."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT record FROM accounts ORDER BY username_key"
            ).fetchall()
        accounts = [Account.model_validate(json.loads(row[0])) for row in rows]
        return [account for account in accounts if not self.is_admin_username(account.username)]

    def _insert_new_account(self, account: Account) -> StoreResult:
        with self._transaction() as conn:
            if self._fetch_account(conn, account.key) is not None:
                return StoreResult.failure(
                    ALREADY_EXISTS, f"User already exists: {account.username}"
                )
            self._write_account(conn, account)

        logger.info(f"Created account: {account.username}")
        return StoreResult.success(account, "User created.")

    def register(self, username: str, password: str) -> StoreResult:
        if not username.strip():
            raise ValueError("Username must not be empty")
        return self._insert_new_account(Account(username=username.strip(), password=password))

    def admin_create_user(self, username: str) -> tuple[Account, str] | None:
        """Create a user with a generated password.

        Returns:
            ``(account, password)``, or None if the name is empty or taken.
        """
        if not username or not username.strip():
            return None
        password = generate_code(GENERATED_PASSWORD_LENGTH)
        result = self._insert_new_account(Account(username=username.strip(), password=password))
        if not result.ok:
            return None
        return result.account, password

    def admin_update_user(self, original_username: str, **updates: Any) -> StoreResult:
        """Apply admin edits to an account, including renaming it.

        Args:
            original_username: Current username of the account.
            **updates: Any of ``username``, ``password``, ``credits``,
                ``api_key``, ``payment_method``.  A ``credits`` value that
                does not parse as an integer is ignored.

        Returns:
            StoreResult carrying the updated account.
        """
        old_key = normalize_username(original_username)
        with self._transaction() as conn:
            account = self._fetch_account(conn, old_key)
            if account is None:
                return StoreResult.failure(NOT_FOUND, f"User not found: {original_username}")

            new_username = updates.get("username")
            if new_username and normalize_username(new_username) != old_key:
                if self.is_admin_username(original_username):
                    return StoreResult.failure(
                        PROTECTED, "The admin account cannot be renamed."
                    )
                if self._fetch_account(conn, normalize_username(new_username)) is not None:
                    return StoreResult.failure(
                        ALREADY_EXISTS, f"User already exists: {new_username}"
                    )

            if "credits" in updates:
                try:
                    credits = int(str(updates["credits"]))
                except ValueError:
                    credits = account.credits
                updates["credits"] = max(credits, 0)

            data = account.model_dump()
            data.update({k: v for k, v in updates.items() if v is not None})
            updated = Account.model_validate(data)

            if updated.key != old_key:
                conn.execute("DELETE FROM accounts WHERE username_key = ?", (old_key,))
                conn.execute(
                    "UPDATE promo_redemptions SET username_key = ?, username = ? "
                    "WHERE username_key = ?",
                    (updated.key, updated.username, old_key),
                )
            self._write_account(conn, updated)

        logger.info(f"Updated account: {original_username}")
        return StoreResult.success(updated, "User updated.")

    def delete_user(self, username: str) -> StoreResult:
        if self.is_admin_username(username):
            return StoreResult.failure(PROTECTED, "The admin account cannot be deleted.")

        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM accounts WHERE username_key = ?",
                (normalize_username(username),),
            )
            deleted = cursor.rowcount > 0

        if not deleted:
            return StoreResult.failure(NOT_FOUND, f"User not found: {username}")
        logger.info(f"Deleted account: {username}")
        return StoreResult.success(message="User deleted.")

    def set_api_key(self, username: str, api_key: str | None) -> StoreResult:
        def mutate(account: Account) -> StoreResult:
            account.api_key = api_key or None
            return StoreResult.success()

        return self._update_account(username, mutate)

    def set_payment_method(self, username: str, method: PaymentMethod | str) -> StoreResult:
        method = PaymentMethod(method)

        def mutate(account: Account) -> StoreResult:
            account.payment_method = method
            return StoreResult.success()

        return self._update_account(username, mutate)

    # ------------------------------------------------------------------
    # Credits.
    # ------------------------------------------------------------------

    def spend_credits(self, username: str, amount: int) -> StoreResult:
        """Deduct *amount* credits, failing if the balance is too low."""
        if amount < 0:
            raise ValueError(f"amount must be non-negative, got {amount}")

        def mutate(account: Account) -> StoreResult:
            if amount > account.credits:
                return StoreResult.failure(
                    INSUFFICIENT_CREDITS,
                    f"Not enough credits. Required: {amount}, available: {account.credits}",
                    account=account,
                )
            account.credits -= amount
            return StoreResult.success()

        result = self._update_account(username, mutate)
        if result.ok:
            logger.info(f"Spent {amount} credits for {username}, {result.account.credits} left")
        return result

    # ------------------------------------------------------------------
    # Promo codes.
    # ------------------------------------------------------------------

    def create_promo(self, credits: int, name: str = "") -> PromoCode | None:
        """Create a promo code worth *credits*; returns None if credits <= 0."""
        if credits <= 0:
            return None

        with self._transaction() as conn:
            while True:
                code = generate_code(PROMO_CODE_LENGTH)
                exists = conn.execute(
                    "SELECT 1 FROM promo_codes WHERE code = ?", (code,)
                ).fetchone()
                if exists is None:
                    break
            conn.execute(
                """
                INSERT INTO promo_codes (code, name, total_credits, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (code, name, credits, datetime.now().isoformat()),
            )

        logger.info(f"Created promo code worth {credits} credits")
        return PromoCode(code=code, name=name, total_credits=credits)

    def list_promos(self) -> list[PromoCode]:
        with self._transaction() as conn:
            promo_rows = conn.execute(
                "SELECT code, name, total_credits FROM promo_codes ORDER BY created_at, code"
            ).fetchall()
            redemption_rows = conn.execute(
                "SELECT code, username FROM promo_redemptions ORDER BY redeemed_at"
            ).fetchall()

        used_by: dict[str, list[str]] = {}
        for code, username in redemption_rows:
            used_by.setdefault(code, []).append(username)

        return [
            PromoCode(code=code, name=name, total_credits=total, used_by=used_by.get(code, []))
            for code, name, total in promo_rows
        ]

    def delete_promo(self, code: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM promo_codes WHERE code = ?", (code.upper(),))
            deleted = cursor.rowcount > 0
            conn.execute("DELETE FROM promo_redemptions WHERE code = ?", (code.upper(),))

        if deleted:
            logger.info(f"Deleted promo code {code.upper()}")
        return deleted

    def redeem_promo(self, username: str, code: str) -> StoreResult:
        """Credit the promo's value to *username*, once per user per code."""
        key = normalize_username(username)
        code = code.strip().upper()

        with self._transaction() as conn:
            promo_row = conn.execute(
                "SELECT total_credits FROM promo_codes WHERE code = ?", (code,)
            ).fetchone()
            if promo_row is None:
                return StoreResult.failure(NOT_FOUND, "Promo code not found.")

            account = self._fetch_account(conn, key)
            if account is None:
                return StoreResult.failure(NOT_FOUND, f"User not found: {username}")

            used = conn.execute(
                "SELECT 1 FROM promo_redemptions WHERE code = ? AND username_key = ?",
                (code, key),
            ).fetchone()
            if used is not None:
                return StoreResult.failure(
                    ALREADY_USED, "You have already used this promo code.", account=account
                )

            total_credits = promo_row[0]
            conn.execute(
                """
                INSERT INTO promo_redemptions (code, username_key, username, redeemed_at)
                VALUES (?, ?, ?, ?)
                """,
                (code, key, account.username, datetime.now().isoformat()),
            )
            account.credits += total_credits
            self._write_account(conn, account)

        logger.info(f"{account.username} redeemed a promo code for {total_credits} credits")
        return StoreResult.success(account, f"Credits added: {total_credits}")

    # ------------------------------------------------------------------
    # Favorites.
    # ------------------------------------------------------------------

    def add_favorite(
        self, username: str, image: str, category: str, folder_id: str = ROOT
    ) -> StoreResult:
        """Add *image* to a category's root or folder.

        Already-favorited images (in any category or folder) are a
        successful no-op.
        """

        def mutate(account: Account) -> StoreResult:
            try:
                added = favorites_tree.add(account.favorites, image, category, folder_id)
            except favorites_tree.FolderNotFoundError:
                return StoreResult.failure(NOT_FOUND, f"Folder not found: {folder_id}")

            if added:
                logger.info(f"Added favorite for {account.username} in {category}/{folder_id}")
            else:
                logger.debug(f"Already in favorites for {account.username}")
            return StoreResult.success()

        return self._update_account(username, mutate)

    def remove_favorite(self, username: str, image: str) -> StoreResult:
        def mutate(account: Account) -> StoreResult:
            removed = favorites_tree.remove(account.favorites, image)
            if removed:
                logger.info(f"Removed favorite for {account.username}")
            else:
                logger.debug(f"Not in favorites for {account.username}")
            return StoreResult.success()

        return self._update_account(username, mutate)

    def create_folder(self, username: str, category: str, name: str) -> StoreResult:
        created: list[FavoritesFolder] = []

        def mutate(account: Account) -> StoreResult:
            created.append(favorites_tree.create_folder(account.favorites, category, name))
            return StoreResult.success()

        result = self._update_account(username, mutate)
        if result.ok:
            result.folder = created[0]
        return result

    def rename_folder(self, username: str, category: str, folder_id: str, name: str) -> StoreResult:
        def mutate(account: Account) -> StoreResult:
            try:
                favorites_tree.rename_folder(account.favorites, category, folder_id, name)
            except favorites_tree.FolderNotFoundError:
                return StoreResult.failure(NOT_FOUND, f"Folder not found: {folder_id}")
            return StoreResult.success()

        return self._update_account(username, mutate)

    def delete_folder(self, username: str, category: str, folder_id: str) -> StoreResult:
        def mutate(account: Account) -> StoreResult:
            if not favorites_tree.delete_folder(account.favorites, category, folder_id):
                return StoreResult.failure(NOT_FOUND, f"Folder not found: {folder_id}")
            return StoreResult.success()

        return self._update_account(username, mutate)

    def get_favorites(self, username: str) -> UserFavorites | None:
        account = self.get_account(username)
        return account.favorites if account else None
