"""Exception hierarchy for remote image generation.

Generation failures fall into three buckets:

- **RateLimitedError**: the remote API reported 429 / ``RESOURCE_EXHAUSTED``.
  Retriable.
- **TransientResponseError**: the call returned, but without image payload
  (empty candidate, ``IMAGE_OTHER`` finish reason).  Retriable.
- **SafetyRejectionError**: the prompt or output was blocked by a policy
  filter.  Terminal; retrying would produce the same result.

Any other exception raised by the remote call is treated as terminal.
"""

from __future__ import annotations

RATE_LIMIT_MARKERS = ("429", "RESOURCE_EXHAUSTED")
SAFETY_FINISH_REASONS = ("SAFETY", "PROHIBITED_CONTENT", "IMAGE_SAFETY")
TRANSIENT_FINISH_REASONS = ("IMAGE_OTHER",)


class SetkaError(Exception):
    """Base class for all Setka errors."""


class InsufficientCreditsError(SetkaError):
    """The account cannot pay for the requested generation."""

    def __init__(self, required: int, available: int) -> None:
        super().__init__(f"Not enough credits. Required: {required}, available: {available}")
        self.required = required
        self.available = available


class MissingApiKeyError(SetkaError):
    """No API key is available for the remote call."""


class GenerationError(SetkaError):
    """A remote image generation call failed.

    Attributes:
        retriable: Whether the request retrier may try the call again.
        finish_reason: Finish reason reported by the remote model, if any.
    """

    retriable = False

    def __init__(self, message: str, finish_reason: str | None = None) -> None:
        super().__init__(message)
        self.finish_reason = finish_reason


class RateLimitedError(GenerationError):
    """The remote API refused the call because of rate or quota limits."""

    retriable = True


class TransientResponseError(GenerationError):
    """The remote API answered without usable image data."""

    retriable = True


class SafetyRejectionError(GenerationError):
    """The remote API blocked the request on policy grounds."""


def classify_exception(exc: BaseException) -> BaseException:
    """Map a raw remote-call exception onto the generation error taxonomy.

    Exceptions that already belong to the taxonomy are returned unchanged.
    Anything whose text carries a rate-limit marker becomes a
    :class:`RateLimitedError`; everything else is returned as-is and is
    treated as terminal by the retrier.

    Args:
        exc: Exception raised by the remote call.

    Returns:
        The exception to raise in its place.
    """
    if isinstance(exc, GenerationError):
        return exc

    text = str(exc)
    code = getattr(exc, "code", None)
    if code == 429 or any(marker in text for marker in RATE_LIMIT_MARKERS):
        return RateLimitedError(text)

    return exc


def is_retriable(exc: BaseException) -> bool:
    """Return True if *exc* should be retried by the request retrier."""
    return isinstance(exc, GenerationError) and exc.retriable
