"""Remote image generation through the Google GenAI SDK.

This module owns every call to the hosted image API.

GeminiImageClient
    Wraps ``google.genai.Client`` (async ``aio`` surface).  Each public
    method builds the request, runs it through
    :func:`~setka.core.retry.call_with_retry`, and turns the response into
    ``data:`` URLs.  Responses without image data are classified into the
    error taxonomy by :func:`extract_image`.

BatchGenerator
    Runs a batch of placeholder slots serially against a client, pausing
    between requests to stay under rate limits and stopping early when the
    batch's :class:`CancelToken` is set.  Each slot succeeds or fails on its
    own.

charge_for_batch
    Checks and charges the session before a batch starts.

Usage Example
-------------
    client = GeminiImageClient.from_config(config, api_key=session.effective_api_key())
    generator = BatchGenerator(client, request_delay=config.batch_request_delay)

    request = BatchRequest(prompt="a lighthouse at dusk", aspect_ratio="16:9", count=2)
    charge_for_batch(session, request.count)
    images = await generator.run(request)
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Any

from google import genai
from google.genai import types
from PIL import Image

from . import prompt_builder
from .errors import (
    SAFETY_FINISH_REASONS,
    TRANSIENT_FINISH_REASONS,
    InsufficientCreditsError,
    MissingApiKeyError,
    SafetyRejectionError,
    TransientResponseError,
)
from .retry import INITIAL_DELAY, MAX_RETRIES, call_with_retry
from .schema import GeneratedImage, GenerationStatus, PaymentMethod

logger = logging.getLogger(__name__)

FORMAT_TEMPLATE_WIDTH = 256
FORMAT_TEMPLATE_COLOR = "#111111"
BATCH_REQUEST_DELAY = 2.5


@dataclass(frozen=True)
class ReferenceImage:
    """Raw image bytes sent alongside a prompt."""

    data: bytes
    mime_type: str = "image/png"

    @classmethod
    def from_data_url(cls, data_url: str) -> ReferenceImage:
        """Parse a ``data:<mime>;base64,<payload>`` URL."""
        header, _, payload = data_url.partition(",")
        if not header.startswith("data:") or ";base64" not in header:
            raise ValueError("Expected a base64 data URL")
        mime_type = header[len("data:") : header.index(";")]
        return cls(data=base64.b64decode(payload), mime_type=mime_type)


def to_data_url(data: bytes | str, mime_type: str) -> str:
    if isinstance(data, bytes):
        data = base64.b64encode(data).decode("ascii")
    return f"data:{mime_type};base64,{data}"


def make_format_template(aspect_ratio: str) -> ReferenceImage:
    """Render the solid dark PNG whose shape tells the model the aspect ratio."""
    width = FORMAT_TEMPLATE_WIDTH
    height = max(1, round(width / prompt_builder.aspect_ratio_value(aspect_ratio)))

    image = Image.new("RGB", (width, height), FORMAT_TEMPLATE_COLOR)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return ReferenceImage(data=buffer.getvalue(), mime_type="image/png")


def _enum_name(value: Any) -> str | None:
    if value is None:
        return None
    return getattr(value, "name", None) or str(value)


def _finish_reason_name(candidate: Any) -> str | None:
    return _enum_name(getattr(candidate, "finish_reason", None))


def _block_reason_name(response: Any) -> str | None:
    """Reason the prompt itself was blocked, if the response reports one."""
    prompt_feedback = getattr(response, "prompt_feedback", None)
    return _enum_name(getattr(prompt_feedback, "block_reason", None))


def _describe_response(response: Any, candidate: Any, finish_reason: str | None) -> str:
    message = "Invalid or empty response from Gemini API."
    if finish_reason:
        message += f" Finish reason: {finish_reason}."
    safety_ratings = getattr(candidate, "safety_ratings", None)
    if safety_ratings:
        message += f" Safety ratings: {safety_ratings}."
    prompt_feedback = getattr(response, "prompt_feedback", None)
    if prompt_feedback:
        message += f" Prompt feedback: {prompt_feedback}."
    return message


def extract_image(response: Any) -> str:
    """Return the first inline image of a ``generate_content`` response.

    Args:
        response: A ``GenerateContentResponse`` (or anything shaped like one).

    Returns:
        The image as a ``data:`` URL.

    Raises:
        SafetyRejectionError: No image and either the prompt was blocked or
            the finish reason is a policy block.
        TransientResponseError: No image for any other reason.
    """
    candidates = getattr(response, "candidates", None) or []
    candidate = candidates[0] if candidates else None
    content = getattr(candidate, "content", None)
    parts = getattr(content, "parts", None) or []

    for part in parts:
        inline_data = getattr(part, "inline_data", None)
        if inline_data is not None and inline_data.data:
            return to_data_url(inline_data.data, inline_data.mime_type or "image/png")

    finish_reason = _finish_reason_name(candidate)
    message = _describe_response(response, candidate, finish_reason)
    if not parts:
        logger.error(f"Invalid response structure from Gemini API: {message}")
    else:
        message = f"No image data found in the response parts. {message}"

    block_reason = _block_reason_name(response)
    if block_reason:
        raise SafetyRejectionError(
            f"{message} Prompt blocked: {block_reason}.", finish_reason=block_reason
        )
    if finish_reason in SAFETY_FINISH_REASONS:
        raise SafetyRejectionError(message, finish_reason=finish_reason)
    if finish_reason in TRANSIENT_FINISH_REASONS:
        message += " This may indicate an issue with the input image or a temporary model error."
    raise TransientResponseError(message, finish_reason=finish_reason)


def extract_imagen_images(response: Any) -> list[str]:
    """Return every image of a ``generate_images`` response as ``data:`` URLs.

    Raises:
        SafetyRejectionError: Every returned item was removed by the
            responsible-AI filter.
        TransientResponseError: The response carried no images otherwise.
    """
    generated = getattr(response, "generated_images", None) or []
    images = [
        to_data_url(item.image.image_bytes, "image/png")
        for item in generated
        if getattr(item, "image", None) is not None and item.image.image_bytes
    ]
    if images:
        return images

    filtered = [getattr(item, "rai_filtered_reason", None) for item in generated]
    if filtered and all(filtered):
        raise SafetyRejectionError(
            f"Imagen API filtered every image: {filtered[0]}", finish_reason="RAI_FILTERED"
        )
    logger.error("No images were generated by Imagen API")
    raise TransientResponseError("No images were generated by Imagen API.")


class GeminiImageClient:
    """Async client for Gemini and Imagen image generation.

    Attributes:
        model: Gemini model for text-to-image and variations.
        imagen_model: Imagen model for multi-image requests.
        max_retries: Retries after the first attempt per request.
        initial_delay: Seconds before the first retry.
    """

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gemini-2.5-flash-image",
        imagen_model: str = "imagen-4.0-generate-001",
        max_retries: int = MAX_RETRIES,
        initial_delay: float = INITIAL_DELAY,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        client: Any = None,
    ) -> None:
        if not api_key and client is None:
            raise MissingApiKeyError("API key is not set.")
        self.model = model
        self.imagen_model = imagen_model
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self._sleep = sleep
        self._client = client if client is not None else genai.Client(api_key=api_key)

    @classmethod
    def from_config(cls, config, api_key: str | None = None, **kwargs) -> GeminiImageClient:
        """Build a client, preferring *api_key* over the configured fallback key."""
        effective_key = api_key or config.gemini_api_key
        if not effective_key and "client" not in kwargs:
            raise MissingApiKeyError("API key is not set in the environment.")
        return cls(
            effective_key,
            model=config.gemini_model,
            imagen_model=config.imagen_model,
            max_retries=config.max_retries,
            initial_delay=config.initial_retry_delay,
            **kwargs,
        )

    async def _retry(self, thunk: Callable[[], Awaitable[Any]], description: str) -> Any:
        return await call_with_retry(
            thunk,
            max_retries=self.max_retries,
            initial_delay=self.initial_delay,
            sleep=self._sleep,
            description=description,
        )

    async def _generate_content(self, parts: list[types.Part], description: str) -> str:
        async def attempt() -> str:
            response = await self._client.aio.models.generate_content(
                model=self.model,
                contents=parts,
                config=types.GenerateContentConfig(response_modalities=["IMAGE"]),
            )
            return extract_image(response)

        return await self._retry(attempt, description)

    async def generate_image(self, prompt: str, aspect_ratio: str, resolution: str) -> str:
        """Text-to-image with the aspect ratio fixed by a template image."""
        template = make_format_template(aspect_ratio)
        parts = [
            types.Part.from_bytes(data=template.data, mime_type=template.mime_type),
            types.Part.from_text(text=prompt_builder.build_text_to_image_prompt(prompt)),
        ]
        logger.debug(f"Text-to-image request ({aspect_ratio}, {resolution})")
        return await self._generate_content(parts, "text-to-image generation")

    async def generate_variation(self, base_image: ReferenceImage, instructions: str) -> str:
        """Image-to-image using *base_image* as the content reference."""
        parts = [
            types.Part.from_bytes(data=base_image.data, mime_type=base_image.mime_type),
            types.Part.from_text(text=prompt_builder.build_variation_prompt(instructions)),
        ]
        return await self._generate_content(parts, "variation generation")

    async def generate_portrait(
        self,
        subject: ReferenceImage,
        prompt: str,
        clothing: ReferenceImage | None = None,
        background: ReferenceImage | None = None,
    ) -> str:
        """Portrait of the person in *subject*.

        Args:
            subject: Photo of the person whose identity is kept.
            prompt: Full instruction text (see
                :func:`~setka.core.prompt_builder.build_portrait_prompt`).
            clothing: Optional clothing reference, sent after the subject.
            background: Optional background reference, sent last.
        """
        parts = [
            types.Part.from_bytes(data=image.data, mime_type=image.mime_type)
            for image in (subject, clothing, background)
            if image is not None
        ]
        parts.append(types.Part.from_text(text=prompt))
        return await self._generate_content(parts, "portrait generation")

    async def generate_face(
        self,
        prompt: str,
        model: str,
        aspect_ratio: str,
        template: ReferenceImage | None = None,
    ) -> str:
        """Single face image on Imagen, or on Gemini with an optional template."""
        if prompt_builder.get_model(model).backend == "imagen":
            images = await self._generate_imagen(prompt, aspect_ratio, 1, "face generation")
            return images[0]

        parts = []
        text = prompt
        if template is not None:
            parts.append(types.Part.from_bytes(data=template.data, mime_type=template.mime_type))
            text = prompt_builder.build_template_prompt(prompt)
        parts.append(types.Part.from_text(text=text))
        return await self._generate_content(parts, "face generation")

    async def _generate_imagen(
        self, prompt: str, aspect_ratio: str, count: int, description: str
    ) -> list[str]:
        async def attempt() -> list[str]:
            response = await self._client.aio.models.generate_images(
                model=self.imagen_model,
                prompt=prompt,
                config=types.GenerateImagesConfig(
                    number_of_images=count,
                    output_mime_type="image/png",
                    aspect_ratio=aspect_ratio,
                ),
            )
            return extract_imagen_images(response)

        return await self._retry(attempt, description)

    async def generate_images_imagen(
        self, prompt: str, aspect_ratio: str, count: int, resolution: str
    ) -> list[str]:
        """Generate *count* images in one Imagen call."""
        return await self._generate_imagen(
            prompt_builder.build_imagen_prompt(prompt, resolution),
            aspect_ratio,
            count,
            "Imagen generation",
        )


# ---------------------------------------------------------------------------
# Batches.
# ---------------------------------------------------------------------------


class CancelToken:
    """Flag checked between batch requests; never interrupts an in-flight call."""

    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


@dataclass
class BatchRequest:
    """Parameters of one generation batch.

    Attributes:
        prompt: User prompt (may be empty for variations).
        model_id: Identifier from :data:`~setka.core.prompt_builder.MODELS`.
        aspect_ratio: Key of :data:`~setka.core.prompt_builder.ASPECT_RATIOS`.
        count: Number of images requested.
        base_image: Reference image for variations.
        variation_strength: Key of ``VARIATION_STRENGTH_PROMPTS``.
    """

    prompt: str = ""
    model_id: str = "gemini-2.5-flash-image"
    aspect_ratio: str = "1:1"
    count: int = 1
    base_image: ReferenceImage | None = None
    variation_strength: str = "medium"

    def __post_init__(self) -> None:
        model = prompt_builder.get_model(self.model_id)
        if self.aspect_ratio not in prompt_builder.ASPECT_RATIOS:
            raise ValueError(f"Unknown aspect ratio: {self.aspect_ratio}")
        if not 1 <= self.count <= model.max_images:
            raise ValueError(f"count must be 1-{model.max_images}, got {self.count}")
        if not self.prompt and self.base_image is None:
            raise ValueError("Enter a text prompt or upload an image.")

    @property
    def resolution(self) -> str:
        return prompt_builder.RESOLUTIONS[self.aspect_ratio]

    @property
    def is_variation(self) -> bool:
        model = prompt_builder.get_model(self.model_id)
        return self.base_image is not None and model.supports_image_input

    @property
    def display_prompt(self) -> str:
        if self.prompt:
            return self.prompt
        return f"Variation of uploaded image (Strength: {self.variation_strength})"


def charge_for_batch(session, count: int) -> None:
    """Charge *session* for *count* images before a batch starts.

    Credit-paying accounts are charged one credit per image.  Accounts paying
    with their own API key must have one stored.

    Raises:
        InsufficientCreditsError: The balance does not cover the batch.
        MissingApiKeyError: API-key payment selected without a stored key.
    """
    account = session.account
    if account is None:
        raise InsufficientCreditsError(count, 0)

    if account.payment_method == PaymentMethod.API_KEY:
        if not account.api_key:
            raise MissingApiKeyError(
                "Payment with your own API key is selected, but no key is set in the profile."
            )
        return

    if account.credits < count or not session.decrement_credits(count):
        raise InsufficientCreditsError(count, account.credits)


@dataclass
class BatchGenerator:
    """Serial batch runner over a :class:`GeminiImageClient`.

    Attributes:
        client: Client used for every request.
        request_delay: Seconds to wait after each request when the batch has
            more than one image.
        sleep: Coroutine function used for the inter-request pause.
    """

    client: GeminiImageClient
    request_delay: float = BATCH_REQUEST_DELAY
    sleep: Callable[[float], Awaitable[object]] = field(default=asyncio.sleep)

    @staticmethod
    def make_placeholders(request: BatchRequest) -> list[GeneratedImage]:
        stamp = int(time.time() * 1000)
        return [
            GeneratedImage(id=f"gen_{stamp}_{i}", prompt=request.display_prompt)
            for i in range(request.count)
        ]

    async def run(
        self,
        request: BatchRequest,
        token: CancelToken | None = None,
        placeholders: list[GeneratedImage] | None = None,
    ) -> list[GeneratedImage]:
        """Generate every slot of *request*.

        Args:
            request: Batch parameters.
            token: Optional cancellation flag.
            placeholders: Pre-built slots to fill (created if omitted).

        Returns:
            The slots, each ``success`` or ``error``.
        """
        token = token or CancelToken()
        images = placeholders if placeholders is not None else self.make_placeholders(request)
        model = prompt_builder.get_model(request.model_id)

        if model.backend == "imagen" and not request.is_variation:
            await self._run_imagen(request, images, token)
        else:
            await self._run_serial(request, images, token)

        if token.cancelled:
            for image in images:
                if image.status == GenerationStatus.PENDING:
                    image.status = GenerationStatus.ERROR
                    image.error = "Generation cancelled."
        return images

    async def _run_imagen(
        self, request: BatchRequest, images: list[GeneratedImage], token: CancelToken
    ) -> None:
        try:
            results = await self.client.generate_images_imagen(
                request.prompt, request.aspect_ratio, request.count, request.resolution
            )
        except Exception as exc:
            logger.error(f"An error occurred during Imagen generation: {exc}")
            for image in images:
                image.status = GenerationStatus.ERROR
                image.error = str(exc)
            return

        if token.cancelled:
            return
        for i, image in enumerate(images):
            if i < len(results):
                image.src = results[i]
                image.status = GenerationStatus.SUCCESS
            else:
                image.status = GenerationStatus.ERROR
                image.error = "No image returned for this slot."

    def _request_for(self, request: BatchRequest) -> Callable[[], Awaitable[str]]:
        if request.is_variation:
            instructions = prompt_builder.build_variation_instructions(
                request.prompt, request.variation_strength
            )
            return lambda: self.client.generate_variation(request.base_image, instructions)
        return lambda: self.client.generate_image(
            request.prompt, request.aspect_ratio, request.resolution
        )

    async def _run_serial(
        self, request: BatchRequest, images: list[GeneratedImage], token: CancelToken
    ) -> None:
        call = self._request_for(request)

        for image in images:
            if token.cancelled:
                break
            try:
                src = await call()
                if token.cancelled:
                    break
                image.src = src
                image.status = GenerationStatus.SUCCESS
            except Exception as exc:
                logger.error(f"Failed to generate image for id {image.id}: {exc}")
                image.status = GenerationStatus.ERROR
                image.error = str(exc)

            if len(images) > 1:
                await self.sleep(self.request_delay)

    @staticmethod
    def _slot_request(request: BatchRequest, image: GeneratedImage) -> BatchRequest:
        """*request* re-targeted at the prompt the slot was generated from."""
        if request.is_variation and not request.prompt:
            # The slot carries the display label, not a prompt.
            return request
        return replace(request, prompt=image.prompt, count=1)

    async def regenerate(self, request: BatchRequest, image: GeneratedImage) -> GeneratedImage:
        """Re-run a single slot with the batch parameters and the slot's prompt."""
        image.status = GenerationStatus.PENDING
        image.error = None
        try:
            slot_request = self._slot_request(request, image)
            model = prompt_builder.get_model(slot_request.model_id)
            if model.backend == "imagen" and not slot_request.is_variation:
                results = await self.client.generate_images_imagen(
                    slot_request.prompt, slot_request.aspect_ratio, 1, slot_request.resolution
                )
                image.src = results[0]
            else:
                image.src = await self._request_for(slot_request)()
            image.status = GenerationStatus.SUCCESS
        except Exception as exc:
            logger.error(f"Failed to regenerate image for id {image.id}: {exc}")
            image.status = GenerationStatus.ERROR
            image.error = str(exc)
        return image
