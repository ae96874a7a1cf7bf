"""Pydantic models for accounts, promo codes, favorites and generated images.

Persisted records
-----------------
Account
    A registered user with a credit balance, payment preferences and a
    favorites tree.
PromoCode
    A credit grant that each user may redeem at most once.

Favorites shape
---------------
Favorites are split by category (``photos`` / ``avatars``).  Each category
holds a flat ``root`` list plus named folders::

    {
        "photos":  {"root": [...], "folders": [{"id", "name", "images"}]},
        "avatars": {"root": [...], "folders": [...]},
    }

Schema versions
---------------
Older records stored favorites differently.  Every shape that can still be
found on disk is modelled as a tagged variant:

========  ========================  ==========================================
Version   Model                     Favorites shape
========  ========================  ==========================================
0         ``LegacyFlatFavorites``   flat list of images (or missing entirely)
1         ``PartialFavorites``      dict, but categories or keys may be absent
2         ``UserFavorites``         current shape, all keys present
========  ========================  ==========================================

:func:`upgrade_account` walks a raw record up to
:data:`CURRENT_SCHEMA_VERSION`.  Current-shape records pass through untouched.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 2

Category = Literal["photos", "avatars"]
CATEGORIES: tuple[str, ...] = ("photos", "avatars")
ROOT = "root"


class PaymentMethod(str, Enum):
    """How an account pays for generations."""

    CREDITS = "credits"
    API_KEY = "apiKey"


# ---------------------------------------------------------------------------
# Favorites.
# ---------------------------------------------------------------------------


class FavoritesFolder(BaseModel):
    """A named folder of favorited image references."""

    id: str
    name: str
    images: list[str] = Field(default_factory=list)


class FavoritesCategory(BaseModel):
    """Root list plus folders for one favorites category."""

    root: list[str] = Field(default_factory=list)
    folders: list[FavoritesFolder] = Field(default_factory=list)

    def find_folder(self, folder_id: str) -> FavoritesFolder | None:
        return next((f for f in self.folders if f.id == folder_id), None)


class UserFavorites(BaseModel):
    """Current (version 2) favorites shape."""

    schema_version: Literal[2] = 2
    photos: FavoritesCategory = Field(default_factory=FavoritesCategory)
    avatars: FavoritesCategory = Field(default_factory=FavoritesCategory)

    def category(self, name: str) -> FavoritesCategory:
        if name not in CATEGORIES:
            raise ValueError(f"Unknown favorites category: {name!r}")
        return getattr(self, name)


class LegacyFlatFavorites(BaseModel):
    """Version 0: favorites were a flat list of photo references."""

    schema_version: Literal[0] = 0
    images: list[str] = Field(default_factory=list)

    def upgrade(self) -> PartialFavorites:
        return PartialFavorites(photos={"root": list(self.images), "folders": []})


class PartialFavorites(BaseModel):
    """Version 1: dict-shaped favorites with possibly missing pieces."""

    schema_version: Literal[1] = 1
    photos: dict[str, Any] | None = None
    avatars: dict[str, Any] | None = None

    def upgrade(self) -> UserFavorites:
        categories = {}
        for name in CATEGORIES:
            raw = getattr(self, name) or {}
            categories[name] = FavoritesCategory(
                root=list(raw.get("root") or []),
                folders=list(raw.get("folders") or []),
            )
        return UserFavorites(**categories)


def detect_schema_version(raw_favorites: Any) -> int:
    """Return the schema version a raw favorites value was written under."""
    if raw_favorites is None or isinstance(raw_favorites, list):
        return 0

    if not isinstance(raw_favorites, dict):
        return 0

    for name in CATEGORIES:
        category = raw_favorites.get(name)
        if not isinstance(category, dict):
            return 1
        if category.get("root") is None or category.get("folders") is None:
            return 1

    return CURRENT_SCHEMA_VERSION


def parse_favorites(
    raw_favorites: Any,
) -> LegacyFlatFavorites | PartialFavorites | UserFavorites:
    """Parse a raw favorites value into its tagged schema variant."""
    version = detect_schema_version(raw_favorites)
    if version == 0:
        return LegacyFlatFavorites(images=list(raw_favorites or []))
    if version == 1:
        return PartialFavorites(
            photos=raw_favorites.get("photos") or None,
            avatars=raw_favorites.get("avatars") or None,
        )
    return UserFavorites(
        photos=raw_favorites["photos"],
        avatars=raw_favorites["avatars"],
    )


def upgrade_favorites(raw_favorites: Any) -> UserFavorites:
    """Upgrade a raw favorites value to the current shape."""
    variant = parse_favorites(raw_favorites)
    while not isinstance(variant, UserFavorites):
        logger.debug(f"Upgrading favorites from schema v{variant.schema_version}")
        variant = variant.upgrade()
    return variant


# ---------------------------------------------------------------------------
# Accounts and promo codes.
# ---------------------------------------------------------------------------


class Account(BaseModel):
    """A registered user record."""

    username: str
    password: str
    credits: int = Field(default=0, ge=0)
    api_key: str | None = None
    payment_method: PaymentMethod = PaymentMethod.CREDITS
    favorites: UserFavorites = Field(default_factory=UserFavorites)

    @property
    def key(self) -> str:
        """Case-insensitive lookup key."""
        return normalize_username(self.username)


class PromoCode(BaseModel):
    """A one-time-per-user credit grant."""

    code: str
    name: str = ""
    total_credits: int = Field(..., gt=0)
    used_by: list[str] = Field(default_factory=list)

    @property
    def used_count(self) -> int:
        return len(self.used_by)


def normalize_username(username: str) -> str:
    return username.strip().lower()


def upgrade_account(raw: dict[str, Any]) -> Account:
    """Build a current-shape :class:`Account` from a raw stored record.

    Accepts both the current field names and the camelCase names used by
    the original browser store (``apiKey``, ``paymentMethod``).

    Args:
        raw: Decoded JSON record.

    Returns:
        The account with favorites upgraded to the current schema.
    """
    payment_method = raw.get("payment_method", raw.get("paymentMethod", "credits"))
    return Account(
        username=raw["username"],
        password=raw.get("password", ""),
        credits=int(raw.get("credits", 0)),
        api_key=raw.get("api_key", raw.get("apiKey")),
        payment_method=payment_method,
        favorites=upgrade_favorites(raw.get("favorites")),
    )


def upgrade_promo(raw: dict[str, Any]) -> PromoCode:
    """Build a :class:`PromoCode` from a raw stored record."""
    return PromoCode(
        code=raw["code"],
        name=raw.get("name") or "",
        total_credits=int(raw.get("total_credits", raw.get("totalCredits", 0))),
        used_by=list(raw.get("used_by", raw.get("usedBy")) or []),
    )


# ---------------------------------------------------------------------------
# Transient generation results.
# ---------------------------------------------------------------------------


class GenerationStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class GeneratedImage(BaseModel):
    """One slot of a generation batch; never persisted."""

    id: str
    prompt: str
    status: GenerationStatus = GenerationStatus.PENDING
    src: str | None = None
    error: str | None = None
