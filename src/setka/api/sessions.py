"""In-memory registries for session tokens and running generation batches.

Tokens live only as long as the server process.  The browser sends its
token in the ``X-Session-Token`` header.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field

from setka.core.generation import CancelToken
from setka.core.session import Session

logger = logging.getLogger(__name__)


class SessionRegistry:
    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def open(self, session: Session) -> str:
        token = secrets.token_urlsafe(32)
        self._sessions[token] = session
        logger.debug(f"Opened session for {session.username}")
        return token

    def get(self, token: str | None) -> Session | None:
        if not token:
            return None
        return self._sessions.get(token)

    def close(self, token: str) -> bool:
        return self._sessions.pop(token, None) is not None


@dataclass
class RunningBatch:
    owner: str
    token: CancelToken = field(default_factory=CancelToken)


class BatchRegistry:
    """Running batches by client-chosen id, each owned by one session user."""

    def __init__(self) -> None:
        self._batches: dict[str, RunningBatch] = {}

    def start(self, batch_id: str, owner: str) -> RunningBatch | None:
        """Register a batch; returns None if *batch_id* is already running."""
        if batch_id in self._batches:
            return None
        batch = RunningBatch(owner=owner)
        self._batches[batch_id] = batch
        return batch

    def cancel(self, batch_id: str, owner: str) -> bool:
        """Cancel *batch_id* if it is running and belongs to *owner*."""
        batch = self._batches.get(batch_id)
        if batch is None or batch.owner != owner:
            return False
        batch.token.cancel()
        return True

    def finish(self, batch_id: str, batch: RunningBatch) -> None:
        if self._batches.get(batch_id) is batch:
            del self._batches[batch_id]

    def clear(self) -> None:
        self._batches.clear()
