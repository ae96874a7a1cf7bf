"""Shared pytest fixtures for Setka tests."""

import shutil
import tempfile
from pathlib import Path
from types import SimpleNamespace
from typing import Generator

import pytest

from setka.core.account_store import AccountStore
from setka.core.config import SetkaConfig
from setka.core.session import Session

ADMIN_USERNAME = "SeTkaProject"
ADMIN_PASSWORD = "admin-secret"


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> SetkaConfig:
    """Create a test configuration with a temporary data directory.

    Retry and batch delays are zero so nothing in the tests waits.
    """
    return SetkaConfig(
        _env_file=None,
        data_dir=str(temp_dir / "data"),
        admin_username=ADMIN_USERNAME,
        admin_password=ADMIN_PASSWORD,
        gemini_api_key="test-key",
        initial_retry_delay=0.0,
        batch_request_delay=0.0,
    )


@pytest.fixture
def store(test_config: SetkaConfig) -> AccountStore:
    """Account store backed by a fresh SQLite file."""
    return AccountStore.from_config(test_config)


@pytest.fixture
def alice(store: AccountStore):
    """A registered user with 10 credits."""
    store.register("alice", "wonderland")
    store.admin_update_user("alice", credits=10)
    return store.get_account("alice")


@pytest.fixture
def session(store: AccountStore, alice) -> Session:
    """Logged-in session for alice."""
    return Session.login(store, "alice", "wonderland")


@pytest.fixture
def admin_session(store: AccountStore) -> Session:
    return Session.admin(store, ADMIN_USERNAME, ADMIN_PASSWORD)


class RecordingSleep:
    """Async stand-in for ``asyncio.sleep`` that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


def image_response(data: bytes = b"\x89PNG-fake", mime_type: str = "image/png"):
    """Build an object shaped like a successful GenerateContentResponse."""
    part = SimpleNamespace(inline_data=SimpleNamespace(data=data, mime_type=mime_type))
    candidate = SimpleNamespace(
        content=SimpleNamespace(parts=[part]),
        finish_reason="STOP",
        safety_ratings=None,
    )
    return SimpleNamespace(candidates=[candidate], prompt_feedback=None)


def empty_response(finish_reason: str | None = None):
    """Build a response whose candidate carries no content."""
    candidate = SimpleNamespace(content=None, finish_reason=finish_reason, safety_ratings=None)
    return SimpleNamespace(candidates=[candidate], prompt_feedback=None)


class FakeModels:
    """Fake ``client.aio.models`` returning queued responses or raising queued errors."""

    def __init__(self, outcomes=None, images=None):
        self.outcomes = list(outcomes or [])
        self.images = images
        self.calls: list[dict] = []

    async def generate_content(self, **kwargs):
        self.calls.append(kwargs)
        outcome = self.outcomes.pop(0) if self.outcomes else image_response()
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def generate_images(self, **kwargs):
        self.calls.append(kwargs)
        if isinstance(self.images, BaseException):
            raise self.images
        # Raw bytes become a plain image; anything else is passed through as is.
        generated = [
            SimpleNamespace(image=SimpleNamespace(image_bytes=item), rai_filtered_reason=None)
            if isinstance(item, bytes)
            else item
            for item in (self.images or [])
        ]
        return SimpleNamespace(generated_images=generated)


def fake_genai_client(models: FakeModels):
    return SimpleNamespace(aio=SimpleNamespace(models=models))
