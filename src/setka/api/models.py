"""Pydantic request and response models for the Setka API.

FastAPI uses these for request validation, serialisation and OpenAPI docs.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from setka.core.schema import ROOT, Account, PaymentMethod, UserFavorites


class LoginRequest(BaseModel):
    """Request body for ``POST /api/login`` and ``POST /api/admin/login``."""

    username: str = Field(..., min_length=1)
    password: str


class RedeemRequest(BaseModel):
    code: str = Field(..., min_length=1, description="Promo code (case-insensitive).")


class ApiKeyRequest(BaseModel):
    api_key: str = Field(default="", description="Personal Gemini API key.")


class PaymentMethodRequest(BaseModel):
    payment_method: PaymentMethod


class FavoriteRequest(BaseModel):
    """Request body for ``POST /api/favorites``.

    Attributes:
        image: Image reference (URL or data URL).
        category: ``"photos"`` or ``"avatars"``.
        folder_id: Target folder id, or ``"root"``.
    """

    image: str = Field(..., min_length=1)
    category: str = Field(default="photos", pattern="^(photos|avatars)$")
    folder_id: str = Field(default=ROOT)


class RemoveFavoriteRequest(BaseModel):
    image: str = Field(..., min_length=1)


class FolderCreateRequest(BaseModel):
    category: str = Field(..., pattern="^(photos|avatars)$")
    name: str = Field(..., min_length=1)


class FolderRenameRequest(BaseModel):
    category: str = Field(..., pattern="^(photos|avatars)$")
    folder_id: str
    name: str = Field(..., min_length=1)


class FolderDeleteRequest(BaseModel):
    category: str = Field(..., pattern="^(photos|avatars)$")
    folder_id: str


class GenerateRequest(BaseModel):
    """Request body for ``POST /api/generate``.

    Attributes:
        prompt: Free-text prompt.  May be empty when ``base_image`` is set.
        model_id: Model identifier (see ``GET /api/config``).
        aspect_ratio: Aspect ratio key such as ``"1:1"`` or ``"16:9"``.
        count: Number of images (1–4).
        base_image: Optional reference image as a base64 ``data:`` URL.
        variation_strength: ``"low"``, ``"medium"`` or ``"high"``.
    """

    prompt: str = Field(default="")
    model_id: str = Field(default="gemini-2.5-flash-image")
    aspect_ratio: str = Field(default="1:1")
    count: int = Field(default=1, ge=1, le=4)
    base_image: str | None = Field(default=None)
    variation_strength: str = Field(default="medium")
    batch_id: str | None = Field(
        default=None,
        description="Client-chosen id used to cancel the batch while it runs.",
    )


class RegenerateRequest(GenerateRequest):
    """Request body for ``POST /api/generate/regenerate``."""

    image_id: str = Field(..., min_length=1)
    image_prompt: str | None = Field(
        default=None,
        description="Prompt the slot was generated from; defaults to the request prompt.",
    )


class PortraitRequest(BaseModel):
    """Request body for ``POST /api/generate/portrait``.

    Attributes:
        subject_image: Photo of the person as a base64 ``data:`` URL.
        prompt: Optional extra details.
        shot_type: ``"portrait"``, ``"half-body"`` or ``"full-body"``.
        clothing_image: Optional clothing reference (``data:`` URL).
        background_image: Optional background reference (``data:`` URL).
    """

    subject_image: str = Field(..., min_length=1)
    prompt: str = Field(default="")
    shot_type: str = Field(default="portrait")
    clothing_image: str | None = None
    background_image: str | None = None


class FaceRequest(BaseModel):
    prompt: str = Field(..., min_length=1)
    model_id: str = Field(default="gemini-2.5-flash-image")
    aspect_ratio: str = Field(default="1:1")
    use_template: bool = Field(
        default=True,
        description="Send a black aspect-ratio template with Gemini requests.",
    )


class AccountView(BaseModel):
    """Account as returned to the browser (password omitted)."""

    username: str
    credits: int
    api_key: str | None = None
    payment_method: PaymentMethod
    favorites: UserFavorites

    @classmethod
    def from_account(cls, account: Account) -> AccountView:
        return cls(
            username=account.username,
            credits=account.credits,
            api_key=account.api_key,
            payment_method=account.payment_method,
            favorites=account.favorites,
        )


class AdminCreateUserRequest(BaseModel):
    username: str = Field(..., min_length=1)


class AdminUpdateUserRequest(BaseModel):
    username: str | None = None
    password: str | None = None
    credits: int | str | None = None
    api_key: str | None = None
    payment_method: PaymentMethod | None = None


class PromoCreateRequest(BaseModel):
    credits: int = Field(..., description="Credits granted per redemption.")
    name: str = Field(default="")
