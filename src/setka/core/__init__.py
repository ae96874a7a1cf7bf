"""Core functionality for Setka Image Studio.

- **SetkaConfig / config**: Configuration management using Pydantic Settings
- **AccountStore**: SQLite-backed accounts, credits, favorites and promo codes
- **Session**: Explicit context naming the active account
- **call_with_retry**: Bounded exponential-backoff retry for remote calls
- **GeminiImageClient / BatchGenerator**: Hosted image generation

Architecture Overview
---------------------
1. **Configuration Layer** (config.py): SETKA_* environment variables and .env
2. **Storage Layer** (schema.py, favorites.py, account_store.py):
   - Pydantic record models and versioned schema upgrade
   - Pure favorites-tree operations
   - Keyed SQLite store with single-record transactions
3. **Session Layer** (session.py): per-request account context
4. **Generation Layer** (errors.py, retry.py, prompt_builder.py, generation.py):
   - Error taxonomy and classification
   - Retry with backoff
   - Prompt templates and presets
   - Google GenAI client and serial batch runner

Usage Example
-------------
    from setka.core import AccountStore, Session, config

    store = AccountStore.from_config(config)
    session = Session.login(store, "alice", "secret")
    session.add_favorite("https://example.com/a.png", "photos")
"""

from setka.core.account_store import AccountStore, StoreResult
from setka.core.config import SetkaConfig, config
from setka.core.generation import BatchGenerator, BatchRequest, CancelToken, GeminiImageClient
from setka.core.retry import call_with_retry
from setka.core.session import Session

__all__ = [
    "AccountStore",
    "StoreResult",
    "SetkaConfig",
    "config",
    "BatchGenerator",
    "BatchRequest",
    "CancelToken",
    "GeminiImageClient",
    "call_with_retry",
    "Session",
]
