"""Tests for setka.core.generation - GenAI client wrapper and batch runner.

No network access: the GenAI client is replaced by a fake exposing the same
``aio.models`` surface, and all sleeps are recorded instead of awaited.
"""

from __future__ import annotations

import asyncio
import base64
import io
from types import SimpleNamespace

import pytest
from PIL import Image

from setka.core.errors import (
    InsufficientCreditsError,
    MissingApiKeyError,
    RateLimitedError,
    SafetyRejectionError,
    TransientResponseError,
)
from setka.core.generation import (
    BatchGenerator,
    BatchRequest,
    CancelToken,
    GeminiImageClient,
    ReferenceImage,
    charge_for_batch,
    extract_image,
    extract_imagen_images,
    make_format_template,
    to_data_url,
)
from setka.core.schema import GeneratedImage, GenerationStatus, PaymentMethod

from conftest import FakeModels, empty_response, fake_genai_client, image_response


def make_client(models: FakeModels, sleep) -> GeminiImageClient:
    return GeminiImageClient(
        "test-key",
        client=fake_genai_client(models),
        initial_delay=1.0,
        sleep=sleep,
    )


class FakeImageClient:
    """Stand-in for GeminiImageClient used by batch tests."""

    def __init__(self, outcomes=None, token=None, cancel_after=None):
        self.outcomes = list(outcomes or [])
        self.calls = 0
        self.prompts: list[str] = []
        self.token = token
        self.cancel_after = cancel_after

    async def _next(self):
        self.calls += 1
        if self.token is not None and self.calls == self.cancel_after:
            self.token.cancel()
        outcome = self.outcomes.pop(0) if self.outcomes else f"data:image/png;base64,{self.calls}"
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def generate_image(self, prompt, aspect_ratio, resolution):
        self.prompts.append(prompt)
        return await self._next()

    async def generate_variation(self, base_image, instructions):
        return await self._next()

    async def generate_images_imagen(self, prompt, aspect_ratio, count, resolution):
        self.calls += 1
        self.prompts.append(prompt)
        return [f"data:image/png;base64,{i}" for i in range(count - 1)]


class TestHelpers:
    def test_data_url_round_trip(self):
        url = to_data_url(b"abc", "image/jpeg")
        ref = ReferenceImage.from_data_url(url)
        assert url == "data:image/jpeg;base64," + base64.b64encode(b"abc").decode()
        assert ref.data == b"abc"
        assert ref.mime_type == "image/jpeg"

    def test_from_data_url_rejects_plain_urls(self):
        with pytest.raises(ValueError):
            ReferenceImage.from_data_url("https://example.com/a.png")

    @pytest.mark.parametrize(
        "ratio,size", [("1:1", (256, 256)), ("16:9", (256, 144)), ("3:4", (256, 341))]
    )
    def test_format_template_shape(self, ratio, size):
        template = make_format_template(ratio)
        image = Image.open(io.BytesIO(template.data))
        assert image.size == size
        assert template.mime_type == "image/png"


class TestExtractImage:
    def test_returns_first_inline_image(self):
        url = extract_image(image_response(b"png-bytes"))
        assert url == to_data_url(b"png-bytes", "image/png")

    def test_empty_candidate_is_transient(self):
        with pytest.raises(TransientResponseError):
            extract_image(empty_response())

    def test_safety_finish_reason_is_terminal(self):
        with pytest.raises(SafetyRejectionError) as excinfo:
            extract_image(empty_response("SAFETY"))
        assert excinfo.value.finish_reason == "SAFETY"

    def test_image_other_is_transient(self):
        with pytest.raises(TransientResponseError, match="IMAGE_OTHER"):
            extract_image(empty_response("IMAGE_OTHER"))

    def test_no_candidates(self):
        class Response:
            candidates = None
            prompt_feedback = "blocked?"

        with pytest.raises(TransientResponseError, match="Prompt feedback"):
            extract_image(Response())

    def test_blocked_prompt_is_terminal(self):
        response = SimpleNamespace(
            candidates=None,
            prompt_feedback=SimpleNamespace(block_reason=SimpleNamespace(name="SAFETY")),
        )
        with pytest.raises(SafetyRejectionError) as excinfo:
            extract_image(response)
        assert excinfo.value.finish_reason == "SAFETY"


class TestExtractImagenImages:
    def test_empty_result_is_transient(self):
        with pytest.raises(TransientResponseError):
            extract_imagen_images(SimpleNamespace(generated_images=[]))

    def test_all_filtered_is_terminal(self):
        filtered = SimpleNamespace(image=None, rai_filtered_reason="Filtered: person")
        with pytest.raises(SafetyRejectionError, match="Filtered: person"):
            extract_imagen_images(SimpleNamespace(generated_images=[filtered, filtered]))

    def test_keeps_unfiltered_images(self):
        ok = SimpleNamespace(image=SimpleNamespace(image_bytes=b"one"), rai_filtered_reason=None)
        filtered = SimpleNamespace(image=None, rai_filtered_reason="Filtered")
        urls = extract_imagen_images(SimpleNamespace(generated_images=[filtered, ok]))
        assert urls == [to_data_url(b"one", "image/png")]


class TestGeminiImageClient:
    def test_requires_api_key(self):
        with pytest.raises(MissingApiKeyError):
            GeminiImageClient("")

    def test_from_config_falls_back_to_configured_key(self, test_config):
        models = FakeModels()
        client = GeminiImageClient.from_config(test_config, client=fake_genai_client(models))
        assert client.max_retries == test_config.max_retries
        assert client.model == "gemini-2.5-flash-image"

    def test_from_config_without_any_key(self, test_config):
        test_config.gemini_api_key = None
        with pytest.raises(MissingApiKeyError):
            GeminiImageClient.from_config(test_config)

    def test_generate_image_sends_template_and_prompt(self, recording_sleep):
        models = FakeModels([image_response(b"img")])
        client = make_client(models, recording_sleep)

        url = asyncio.run(client.generate_image("a cat", "16:9", "1344x768"))

        assert url == to_data_url(b"img", "image/png")
        call = models.calls[0]
        assert call["model"] == "gemini-2.5-flash-image"
        assert len(call["contents"]) == 2
        assert 'The user\'s prompt is: "a cat"' in call["contents"][1].text

    def test_retries_transient_then_succeeds(self, recording_sleep):
        models = FakeModels([empty_response(), RuntimeError("429 Too Many"), image_response()])
        client = make_client(models, recording_sleep)

        asyncio.run(client.generate_image("a cat", "1:1", "1024x1024"))

        assert len(models.calls) == 3
        assert recording_sleep.delays == [1.0, 2.0]

    def test_safety_rejection_not_retried(self, recording_sleep):
        models = FakeModels([empty_response("SAFETY")])
        client = make_client(models, recording_sleep)

        with pytest.raises(SafetyRejectionError):
            asyncio.run(client.generate_variation(ReferenceImage(b"x"), "make it blue"))

        assert len(models.calls) == 1

    def test_rate_limit_exhaustion(self, recording_sleep):
        models = FakeModels([RuntimeError("RESOURCE_EXHAUSTED")] * 6)
        client = make_client(models, recording_sleep)

        with pytest.raises(RateLimitedError):
            asyncio.run(client.generate_image("a cat", "1:1", "1024x1024"))

        assert len(models.calls) == 6

    def test_imagen(self, recording_sleep):
        models = FakeModels(images=[b"one", b"two"])
        client = make_client(models, recording_sleep)

        urls = asyncio.run(client.generate_images_imagen("a cat", "4:3", 2, "1184x864"))

        assert urls == [to_data_url(b"one", "image/png"), to_data_url(b"two", "image/png")]
        assert models.calls[0]["config"].number_of_images == 2

    def test_blocked_prompt_not_retried(self, recording_sleep):
        blocked = SimpleNamespace(
            candidates=None,
            prompt_feedback=SimpleNamespace(block_reason=SimpleNamespace(name="PROHIBITED_CONTENT")),
        )
        models = FakeModels([blocked] * 6)
        client = make_client(models, recording_sleep)

        with pytest.raises(SafetyRejectionError):
            asyncio.run(client.generate_image("a cat", "1:1", "1024x1024"))

        assert len(models.calls) == 1
        assert recording_sleep.delays == []

    def test_empty_imagen_result_is_retried(self, recording_sleep):
        models = FakeModels(images=[])
        client = make_client(models, recording_sleep)

        with pytest.raises(TransientResponseError):
            asyncio.run(client.generate_images_imagen("a cat", "1:1", 2, "1024x1024"))

        assert len(models.calls) == 6
        assert recording_sleep.delays == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_filtered_imagen_result_not_retried(self, recording_sleep):
        models = FakeModels(images=[SimpleNamespace(image=None, rai_filtered_reason="Filtered")])
        client = make_client(models, recording_sleep)

        with pytest.raises(SafetyRejectionError):
            asyncio.run(client.generate_images_imagen("a cat", "1:1", 1, "1024x1024"))

        assert len(models.calls) == 1

    def test_portrait_sends_references_in_order(self, recording_sleep):
        models = FakeModels([image_response(b"img")])
        client = make_client(models, recording_sleep)

        url = asyncio.run(
            client.generate_portrait(
                ReferenceImage(b"subject", "image/jpeg"),
                "compose a portrait",
                clothing=ReferenceImage(b"coat"),
                background=ReferenceImage(b"beach"),
            )
        )

        assert url == to_data_url(b"img", "image/png")
        contents = models.calls[0]["contents"]
        assert len(contents) == 4
        assert contents[0].inline_data.data == b"subject"
        assert contents[1].inline_data.data == b"coat"
        assert contents[2].inline_data.data == b"beach"
        assert contents[3].text == "compose a portrait"

    def test_portrait_retries_transient(self, recording_sleep):
        models = FakeModels([empty_response(), image_response()])
        client = make_client(models, recording_sleep)

        asyncio.run(client.generate_portrait(ReferenceImage(b"subject"), "portrait"))

        assert len(models.calls) == 2
        assert len(models.calls[1]["contents"]) == 2

    def test_face_on_imagen(self, recording_sleep):
        models = FakeModels(images=[b"face"])
        client = make_client(models, recording_sleep)

        url = asyncio.run(client.generate_face("a face", "imagen-4.0-generate-001", "3:4"))

        assert url == to_data_url(b"face", "image/png")
        call = models.calls[0]
        assert call["model"] == "imagen-4.0-generate-001"
        assert call["prompt"] == "a face"
        assert call["config"].number_of_images == 1
        assert call["config"].aspect_ratio == "3:4"

    def test_face_on_gemini_with_template(self, recording_sleep):
        models = FakeModels([image_response(b"face")])
        client = make_client(models, recording_sleep)
        template = make_format_template("1:1")

        asyncio.run(client.generate_face("a face", "gemini-2.5-flash-image", "1:1", template))

        contents = models.calls[0]["contents"]
        assert len(contents) == 2
        assert contents[0].inline_data.data == template.data
        assert 'The user\'s prompt is: "a face"' in contents[1].text

    def test_face_on_gemini_without_template(self, recording_sleep):
        models = FakeModels([image_response()])
        client = make_client(models, recording_sleep)

        asyncio.run(client.generate_face("a face", "gemini-2.5-flash-image", "1:1"))

        contents = models.calls[0]["contents"]
        assert len(contents) == 1
        assert contents[0].text == "a face"


class TestBatchRequest:
    def test_requires_prompt_or_image(self):
        with pytest.raises(ValueError):
            BatchRequest(prompt="")

    def test_rejects_unknown_aspect_ratio(self):
        with pytest.raises(ValueError):
            BatchRequest(prompt="x", aspect_ratio="2:1")

    def test_rejects_too_many_images(self):
        with pytest.raises(ValueError):
            BatchRequest(prompt="x", count=5)

    def test_variation_display_prompt(self):
        request = BatchRequest(base_image=ReferenceImage(b"x"), variation_strength="high")
        assert request.is_variation
        assert "Strength: high" in request.display_prompt


class TestBatchGenerator:
    def test_serial_batch_waits_between_requests(self, recording_sleep):
        client = FakeImageClient()
        generator = BatchGenerator(client, request_delay=2.5, sleep=recording_sleep)

        images = asyncio.run(generator.run(BatchRequest(prompt="cat", count=3)))

        assert [i.status for i in images] == [GenerationStatus.SUCCESS] * 3
        assert recording_sleep.delays == [2.5, 2.5, 2.5]

    def test_single_image_does_not_wait(self, recording_sleep):
        generator = BatchGenerator(FakeImageClient(), sleep=recording_sleep)
        asyncio.run(generator.run(BatchRequest(prompt="cat")))
        assert recording_sleep.delays == []

    def test_failure_is_per_image(self, recording_sleep):
        client = FakeImageClient(outcomes=["data:ok", SafetyRejectionError("blocked")])
        generator = BatchGenerator(client, sleep=recording_sleep)

        images = asyncio.run(generator.run(BatchRequest(prompt="cat", count=2)))

        assert images[0].status == GenerationStatus.SUCCESS
        assert images[1].status == GenerationStatus.ERROR
        assert images[1].error == "blocked"

    def test_cancel_stops_further_requests(self, recording_sleep):
        token = CancelToken()
        client = FakeImageClient(token=token, cancel_after=2)
        generator = BatchGenerator(client, sleep=recording_sleep)

        images = asyncio.run(generator.run(BatchRequest(prompt="cat", count=4), token))

        assert client.calls == 2
        assert images[0].status == GenerationStatus.SUCCESS
        # The in-flight result that finished after cancellation is discarded.
        assert all(i.status == GenerationStatus.ERROR for i in images[1:])

    def test_imagen_single_call_fills_slots(self, recording_sleep):
        client = FakeImageClient()
        generator = BatchGenerator(client, sleep=recording_sleep)
        request = BatchRequest(prompt="cat", model_id="imagen-4.0-generate-001", count=3)

        images = asyncio.run(generator.run(request))

        assert client.calls == 1
        assert [i.status for i in images] == [
            GenerationStatus.SUCCESS,
            GenerationStatus.SUCCESS,
            GenerationStatus.ERROR,
        ]

    def test_regenerate(self, recording_sleep):
        generator = BatchGenerator(FakeImageClient(), sleep=recording_sleep)
        request = BatchRequest(prompt="cat")
        image = generator.make_placeholders(request)[0]

        result = asyncio.run(generator.regenerate(request, image))

        assert result.status == GenerationStatus.SUCCESS
        assert result.src is not None

    def test_regenerate_uses_slot_prompt(self, recording_sleep):
        client = FakeImageClient()
        generator = BatchGenerator(client, sleep=recording_sleep)
        image = GeneratedImage(id="gen_1", prompt="old prompt")

        asyncio.run(generator.regenerate(BatchRequest(prompt="new prompt"), image))

        assert client.prompts == ["old prompt"]
        assert image.status == GenerationStatus.SUCCESS

    def test_regenerate_imagen_uses_slot_prompt(self, recording_sleep):
        client = FakeImageClient()
        generator = BatchGenerator(client, sleep=recording_sleep)
        request = BatchRequest(prompt="new prompt", model_id="imagen-4.0-generate-001", count=3)
        image = GeneratedImage(id="gen_1", prompt="old prompt")

        asyncio.run(generator.regenerate(request, image))

        assert client.prompts == ["old prompt"]


class TestChargeForBatch:
    def test_charges_credits(self, session):
        charge_for_batch(session, 4)
        assert session.account.credits == 6

    def test_insufficient_credits(self, session):
        with pytest.raises(InsufficientCreditsError):
            charge_for_batch(session, 11)
        assert session.account.credits == 10

    def test_api_key_payment_requires_key(self, session):
        session.update_payment_method(PaymentMethod.API_KEY)
        with pytest.raises(MissingApiKeyError):
            charge_for_batch(session, 1)

    def test_api_key_payment_does_not_spend(self, session):
        session.update_api_key("k")
        session.update_payment_method(PaymentMethod.API_KEY)
        charge_for_batch(session, 4)
        assert session.account.credits == 10

    def test_admin_is_free(self, admin_session):
        charge_for_batch(admin_session, 4)
