"""Setka Image Studio - accounts, credits, favorites and hosted image generation."""

__version__ = "0.3.0"

from setka.core.account_store import AccountStore, StoreResult
from setka.core.config import SetkaConfig, config
from setka.core.session import Session

__all__ = [
    "AccountStore",
    "StoreResult",
    "SetkaConfig",
    "config",
    "Session",
]
