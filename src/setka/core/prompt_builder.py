"""Prompt templates and generation presets.

The hosted models take a single free-text prompt.  These helpers wrap the
user's text with the fixed instructions each generation mode needs:

- **Text-to-image (Gemini)**: a black template image fixes the aspect ratio,
  and the prompt tells the model to match it.
- **Image variation**: the uploaded image is the content reference and the
  variation strength selects how far the model may drift from it.
- **Imagen**: aspect ratio is a native parameter, so only the quality suffix
  and resolution hint are appended.
- **Portrait**: the subject photo (plus optional clothing and background
  references) fixes identity; the shot type sets the framing.
"""

from __future__ import annotations

from dataclasses import dataclass

QUALITY_SUFFIX = "8k, ultra high detail, photorealistic"

IMAGE_VARIATION_BASE_PROMPT = (
    "Create a new photorealistic image based on the provided reference image. "
    "Keep the overall subject recognisable."
)

VARIATION_STRENGTH_PROMPTS: dict[str, str] = {
    "low": "Make only subtle changes: keep composition, pose, colours and lighting almost identical.",
    "medium": "Make noticeable changes to details, lighting and background while keeping the composition.",
    "high": "Reinterpret the image freely: composition, setting and style may change substantially.",
}


@dataclass(frozen=True)
class ModelInfo:
    """A selectable generation model.

    Attributes:
        id: Remote model identifier.
        name: Label shown to users.
        backend: ``"gemini"`` (one image per call) or ``"imagen"`` (batch call).
        supports_image_input: Whether a reference image can be supplied.
        max_images: Largest batch the UI may request.
    """

    id: str
    name: str
    backend: str
    supports_image_input: bool
    max_images: int = 4


MODELS: tuple[ModelInfo, ...] = (
    ModelInfo(
        id="gemini-2.5-flash-image",
        name="Nano Banana (Gemini 2.5 Flash Image)",
        backend="gemini",
        supports_image_input=True,
    ),
    ModelInfo(
        id="imagen-4.0-generate-001",
        name="Imagen 4.0 (High Quality)",
        backend="imagen",
        supports_image_input=False,
    ),
)

ASPECT_RATIOS: dict[str, str] = {
    "1:1": "Square (1:1)",
    "16:9": "Widescreen (16:9)",
    "9:16": "Portrait (9:16)",
    "4:3": "Landscape (4:3)",
    "3:4": "Tall (3:4)",
}

# Resolution hints passed to the models per aspect ratio.
RESOLUTIONS: dict[str, str] = {
    "1:1": "1024x1024",
    "16:9": "1344x768",
    "9:16": "768x1344",
    "4:3": "1184x864",
    "3:4": "864x1184",
}

SHOT_TYPES: dict[str, str] = {
    "portrait": "a head-and-shoulders portrait",
    "half-body": "a waist-up shot",
    "full-body": "a full-length shot showing the whole figure",
}

IMAGE_COUNTS = (1, 2, 3, 4)


def get_model(model_id: str) -> ModelInfo:
    model = next((m for m in MODELS if m.id == model_id), None)
    if model is None:
        raise ValueError(f"Unknown model: {model_id}")
    return model


def aspect_ratio_value(aspect_ratio: str) -> float:
    """Return width / height for a ``"W:H"`` ratio string."""
    width, height = (float(part) for part in aspect_ratio.split(":"))
    if height == 0:
        return 1.0
    return width / height


def build_template_prompt(prompt: str) -> str:
    return (
        "The provided image is a black template that defines the required aspect ratio. "
        "Your output MUST match this aspect ratio. "
        f'The user\'s prompt is: "{prompt}".'
    )


def build_text_to_image_prompt(prompt: str) -> str:
    return f"{build_template_prompt(prompt)} The image should be {QUALITY_SUFFIX}."


def build_portrait_prompt(
    prompt: str,
    shot_type: str = "portrait",
    has_clothing: bool = False,
    has_background: bool = False,
) -> str:
    """Compose the instructions for a portrait of the person in the first image.

    Reference images are numbered in the order they are sent: subject,
    then clothing, then background.

    Args:
        prompt: Optional extra details from the user.
        shot_type: Key of :data:`SHOT_TYPES`.
        has_clothing: Whether a clothing reference follows the subject.
        has_background: Whether a background reference is sent last.
    """
    if shot_type not in SHOT_TYPES:
        raise ValueError(f"Unknown shot type: {shot_type}")

    sentences = [
        "Use the first image as the reference for the person's face and identity; "
        "keep their features recognisable."
    ]
    position = 2
    if has_clothing:
        sentences.append(f"Dress the person in the clothing shown in image {position}.")
        position += 1
    if has_background:
        sentences.append(f"Place the person in the setting shown in image {position}.")
    sentences.append(f"Compose {SHOT_TYPES[shot_type]}.")
    if prompt:
        sentences.append(f'Additional details: "{prompt}".')
    sentences.append(f"The image should be {QUALITY_SUFFIX}.")
    return " ".join(sentences)


def build_variation_instructions(prompt: str, strength: str) -> str:
    """Compose the user-facing variation instructions.

    Args:
        prompt: Optional user text; empty lets the model interpret the image.
        strength: Key of :data:`VARIATION_STRENGTH_PROMPTS`.
    """
    if strength not in VARIATION_STRENGTH_PROMPTS:
        raise ValueError(f"Unknown variation strength: {strength}")

    text_part = (
        f'Text prompt: "{prompt}".'
        if prompt
        else "Use your creative judgment to interpret the image."
    )
    return f"{text_part} {IMAGE_VARIATION_BASE_PROMPT} {VARIATION_STRENGTH_PROMPTS[strength]}"


def build_variation_prompt(instructions: str) -> str:
    return (
        "Use the provided image as the main content reference. "
        f'Follow these instructions to create a new, modified image: "{instructions}"'
    )


def build_imagen_prompt(prompt: str, resolution: str) -> str:
    return f"{prompt}. {QUALITY_SUFFIX}, aim for a high resolution around {resolution} pixels."
