"""Setka Image Studio - FastAPI Application.

This module defines the FastAPI application, all REST API routes, and the
``main()`` CLI function that launches the uvicorn server.

Architecture
------------
- **Accounts, credits, favorites and promo codes** live in the SQLite
  :class:`~setka.core.account_store.AccountStore`, opened on startup.
- **Sessions** are explicit :class:`~setka.core.session.Session` objects
  looked up from the ``X-Session-Token`` header; nothing reads an ambient
  "current user".
- **Image generation** goes through
  :class:`~setka.core.generation.GeminiImageClient` and
  :class:`~setka.core.generation.BatchGenerator`.  The client factory lives
  on ``app.state`` so tests can substitute a fake.

Endpoints
---------
========  ================================  ================================
Method    Path                              Purpose
========  ================================  ================================
GET       ``/api/config``                   Models, aspect ratios, presets
POST      ``/api/login``                    User login
POST      ``/api/admin/login``              Admin login
POST      ``/api/logout``                   Close the session
GET       ``/api/me``                       Active account
PUT       ``/api/me/api-key``               Store a personal API key
PUT       ``/api/me/payment-method``        Choose credits or API key
POST      ``/api/credits/redeem``           Redeem a promo code
POST      ``/api/favorites``                Add a favorite
DELETE    ``/api/favorites``                Remove a favorite
GET       ``/api/favorites/check``          Is an image a favorite?
POST      ``/api/favorites/folders``        Create a folder
PATCH     ``/api/favorites/folders``        Rename a folder
DELETE    ``/api/favorites/folders``        Delete a folder and its images
POST      ``/api/generate``                 Generate a batch of images
POST      ``/api/generate/{id}/cancel``     Stop a running batch
POST      ``/api/generate/regenerate``      Re-run one image (1 credit)
POST      ``/api/generate/portrait``        Portrait from reference photos
POST      ``/api/generate/face``            Single face image (1 credit)
GET       ``/api/admin/users``              List users
POST      ``/api/admin/users``              Create a user
PATCH     ``/api/admin/users/{username}``   Edit a user
DELETE    ``/api/admin/users/{username}``   Delete a user
GET       ``/api/admin/promos``             List promo codes
POST      ``/api/admin/promos``             Create a promo code
DELETE    ``/api/admin/promos/{code}``      Delete a promo code
========  ================================  ================================

Usage
-----
CLI (installed entry point)::

    setka

Direct invocation::

    python -m setka.api.main
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from setka import __version__
from setka.api.models import (
    AccountView,
    AdminCreateUserRequest,
    AdminUpdateUserRequest,
    ApiKeyRequest,
    FaceRequest,
    FavoriteRequest,
    FolderCreateRequest,
    FolderDeleteRequest,
    FolderRenameRequest,
    GenerateRequest,
    LoginRequest,
    PaymentMethodRequest,
    PortraitRequest,
    PromoCreateRequest,
    RedeemRequest,
    RegenerateRequest,
    RemoveFavoriteRequest,
)
from setka.api.sessions import BatchRegistry, SessionRegistry
from setka.core import account_store, prompt_builder
from setka.core.account_store import AccountStore, StoreResult
from setka.core.config import SetkaConfig, config
from setka.core.errors import GenerationError, InsufficientCreditsError, MissingApiKeyError
from setka.core.generation import (
    BatchGenerator,
    BatchRequest,
    GeminiImageClient,
    ReferenceImage,
    charge_for_batch,
    make_format_template,
)
from setka.core.schema import GeneratedImage, GenerationStatus
from setka.core.session import Session

logger = logging.getLogger(__name__)

# Map store failure reasons onto HTTP status codes.
REASON_STATUS: dict[str, int] = {
    account_store.NOT_FOUND: 404,
    account_store.ALREADY_USED: 409,
    account_store.ALREADY_EXISTS: 409,
    account_store.INSUFFICIENT_CREDITS: 402,
    account_store.PROTECTED: 403,
}


def _raise_for_result(result: StoreResult) -> StoreResult:
    """Raise an HTTPException for a failed store result, else return it."""
    if not result.ok:
        raise HTTPException(
            status_code=REASON_STATUS.get(result.reason, 400),
            detail=result.message,
        )
    return result


def _account_payload(result: StoreResult) -> dict:
    payload: dict = {"success": True, "message": result.message}
    if result.account is not None:
        payload["user"] = AccountView.from_account(result.account).model_dump(mode="json")
    return payload


def create_app(settings: SetkaConfig = config) -> FastAPI:
    """Build the FastAPI application for *settings*.

    Args:
        settings: Configuration used for the store, client and server.

    Returns:
        The configured application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Open the account store on startup."""
        app.state.settings = settings
        app.state.store = AccountStore.from_config(settings)
        app.state.sessions = SessionRegistry()
        app.state.batches = BatchRegistry()
        if not hasattr(app.state, "client_factory"):
            app.state.client_factory = GeminiImageClient.from_config
        logger.info(f"Account store ready at {settings.db_path}")

        yield

        app.state.batches.clear()

    app = FastAPI(
        title="Setka Image Studio",
        description="Accounts, credits, favorites and hosted image generation.",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ------------------------------------------------------------------
    # Dependencies.
    # ------------------------------------------------------------------

    def get_store(request: Request) -> AccountStore:
        return request.app.state.store

    def get_session(
        request: Request,
        x_session_token: str | None = Header(default=None),
    ) -> Session:
        session = request.app.state.sessions.get(x_session_token)
        if session is None:
            raise HTTPException(status_code=401, detail="Not authenticated")
        return session

    def get_admin_session(session: Session = Depends(get_session)) -> Session:
        if not session.is_admin:
            raise HTTPException(status_code=403, detail="Admin session required")
        return session

    # ------------------------------------------------------------------
    # Configuration.
    # ------------------------------------------------------------------

    @app.get("/api/config")
    async def get_config() -> dict:
        """Return models, aspect ratios and presets for the frontend."""
        return {
            "version": __version__,
            "models": [
                {
                    "id": m.id,
                    "name": m.name,
                    "supports_image_input": m.supports_image_input,
                    "max_images": m.max_images,
                }
                for m in prompt_builder.MODELS
            ],
            "aspect_ratios": [
                {"id": key, "name": name} for key, name in prompt_builder.ASPECT_RATIOS.items()
            ],
            "image_counts": list(prompt_builder.IMAGE_COUNTS),
            "variation_strengths": list(prompt_builder.VARIATION_STRENGTH_PROMPTS),
        }

    # ------------------------------------------------------------------
    # Authentication.
    # ------------------------------------------------------------------

    @app.post("/api/login")
    async def login(req: LoginRequest, request: Request) -> dict:
        session = Session.login(request.app.state.store, req.username, req.password)
        if session is None:
            raise HTTPException(status_code=401, detail="Invalid username or password")
        token = request.app.state.sessions.open(session)
        return {"token": token, "user": AccountView.from_account(session.account).model_dump(mode="json")}

    @app.post("/api/admin/login")
    async def admin_login(req: LoginRequest, request: Request) -> dict:
        session = Session.admin(request.app.state.store, req.username, req.password)
        if session is None:
            raise HTTPException(status_code=401, detail="Invalid admin credentials")
        return {"token": request.app.state.sessions.open(session), "is_admin": True}

    @app.post("/api/logout")
    async def logout(
        request: Request,
        x_session_token: str | None = Header(default=None),
    ) -> dict:
        closed = request.app.state.sessions.close(x_session_token) if x_session_token else False
        return {"success": closed}

    # ------------------------------------------------------------------
    # Profile and credits.
    # ------------------------------------------------------------------

    @app.get("/api/me")
    async def me(session: Session = Depends(get_session)) -> dict:
        account = session.account
        if account is None:
            raise HTTPException(status_code=404, detail="User not found")
        return {
            "is_admin": session.is_admin,
            "user": AccountView.from_account(account).model_dump(mode="json"),
        }

    @app.put("/api/me/api-key")
    async def update_api_key(req: ApiKeyRequest, session: Session = Depends(get_session)) -> dict:
        if not session.update_api_key(req.api_key):
            raise HTTPException(status_code=403, detail="Cannot update API key for this session")
        return {"success": True}

    @app.put("/api/me/payment-method")
    async def update_payment_method(
        req: PaymentMethodRequest, session: Session = Depends(get_session)
    ) -> dict:
        if not session.update_payment_method(req.payment_method):
            raise HTTPException(
                status_code=403, detail="Cannot update payment method for this session"
            )
        return {"success": True, "payment_method": req.payment_method.value}

    @app.post("/api/credits/redeem")
    async def redeem(req: RedeemRequest, session: Session = Depends(get_session)) -> dict:
        return _account_payload(_raise_for_result(session.redeem_promo(req.code)))

    # ------------------------------------------------------------------
    # Favorites.
    # ------------------------------------------------------------------

    @app.post("/api/favorites")
    async def add_favorite(req: FavoriteRequest, session: Session = Depends(get_session)) -> dict:
        result = session.add_favorite(req.image, req.category, req.folder_id)
        return _account_payload(_raise_for_result(result))

    @app.delete("/api/favorites")
    async def remove_favorite(
        req: RemoveFavoriteRequest, session: Session = Depends(get_session)
    ) -> dict:
        return _account_payload(_raise_for_result(session.remove_favorite(req.image)))

    @app.get("/api/favorites/check")
    async def check_favorite(image: str, session: Session = Depends(get_session)) -> dict:
        return {"image": image, "is_favorite": session.is_favorite(image)}

    @app.post("/api/favorites/folders")
    async def create_folder(
        req: FolderCreateRequest, session: Session = Depends(get_session)
    ) -> dict:
        result = _raise_for_result(session.create_folder(req.category, req.name))
        payload = _account_payload(result)
        payload["folder_id"] = result.folder.id
        return payload

    @app.patch("/api/favorites/folders")
    async def rename_folder(
        req: FolderRenameRequest, session: Session = Depends(get_session)
    ) -> dict:
        result = session.rename_folder(req.category, req.folder_id, req.name)
        return _account_payload(_raise_for_result(result))

    @app.delete("/api/favorites/folders")
    async def delete_folder(
        req: FolderDeleteRequest, session: Session = Depends(get_session)
    ) -> dict:
        result = session.delete_folder(req.category, req.folder_id)
        return _account_payload(_raise_for_result(result))

    # ------------------------------------------------------------------
    # Generation.
    # ------------------------------------------------------------------

    def _build_batch(req: GenerateRequest) -> BatchRequest:
        try:
            base_image = ReferenceImage.from_data_url(req.base_image) if req.base_image else None
            return BatchRequest(
                prompt=req.prompt,
                model_id=req.model_id,
                aspect_ratio=req.aspect_ratio,
                count=req.count,
                base_image=base_image,
                variation_strength=req.variation_strength,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    def _build_generator(request: Request, session: Session) -> BatchGenerator:
        try:
            client = request.app.state.client_factory(
                settings, api_key=session.effective_api_key()
            )
        except MissingApiKeyError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return BatchGenerator(client, request_delay=settings.batch_request_delay)

    def _charge(session: Session, count: int) -> None:
        try:
            charge_for_batch(session, count)
        except InsufficientCreditsError as exc:
            raise HTTPException(status_code=402, detail=str(exc)) from exc
        except MissingApiKeyError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.post("/api/generate")
    async def generate(
        req: GenerateRequest, request: Request, session: Session = Depends(get_session)
    ) -> dict:
        """Generate a batch of images.

        Validates the request, charges one credit per image (or checks the
        personal API key), then runs the batch serially.  Each image succeeds
        or fails on its own; a cancelled batch marks unfinished images as
        errors.
        """
        batch = _build_batch(req)
        generator = _build_generator(request, session)

        batch_id = req.batch_id or str(uuid.uuid4())
        batches = request.app.state.batches
        running = batches.start(batch_id, session.username)
        if running is None:
            raise HTTPException(status_code=409, detail=f"Batch already running: {batch_id}")

        try:
            _charge(session, batch.count)
            images = await generator.run(batch, running.token)
        finally:
            batches.finish(batch_id, running)

        return {
            "success": any(image.status == "success" for image in images),
            "batch_id": batch_id,
            "cancelled": running.token.cancelled,
            "images": [image.model_dump(mode="json") for image in images],
        }

    @app.post("/api/generate/{batch_id}/cancel")
    async def cancel_generation(
        batch_id: str, request: Request, session: Session = Depends(get_session)
    ) -> dict:
        # Batches owned by other sessions are reported as missing.
        if not request.app.state.batches.cancel(batch_id, session.username):
            raise HTTPException(status_code=404, detail="Batch not found")
        logger.info(f"Cancellation requested for batch {batch_id}")
        return {"success": True, "batch_id": batch_id}

    @app.post("/api/generate/regenerate")
    async def regenerate(
        req: RegenerateRequest, request: Request, session: Session = Depends(get_session)
    ) -> dict:
        batch = _build_batch(req.model_copy(update={"count": 1}))
        generator = _build_generator(request, session)
        _charge(session, 1)

        image = GeneratedImage(id=req.image_id, prompt=req.image_prompt or batch.display_prompt)
        image = await generator.regenerate(batch, image)
        return {"success": image.status == "success", "image": image.model_dump(mode="json")}

    async def _single_image(prompt: str, call: Callable[[], Awaitable[str]]) -> dict:
        image = GeneratedImage(id=f"gen_{uuid.uuid4().hex}", prompt=prompt)
        try:
            image.src = await call()
            image.status = GenerationStatus.SUCCESS
        except GenerationError as exc:
            logger.error(f"Failed to generate image for id {image.id}: {exc}")
            image.status = GenerationStatus.ERROR
            image.error = str(exc)
        return {"success": image.status == "success", "image": image.model_dump(mode="json")}

    @app.post("/api/generate/portrait")
    async def generate_portrait(
        req: PortraitRequest, request: Request, session: Session = Depends(get_session)
    ) -> dict:
        """Portrait of the uploaded person with optional clothing and background."""
        try:
            subject = ReferenceImage.from_data_url(req.subject_image)
            clothing = (
                ReferenceImage.from_data_url(req.clothing_image) if req.clothing_image else None
            )
            background = (
                ReferenceImage.from_data_url(req.background_image)
                if req.background_image
                else None
            )
            prompt = prompt_builder.build_portrait_prompt(
                req.prompt,
                req.shot_type,
                has_clothing=clothing is not None,
                has_background=background is not None,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        client = _build_generator(request, session).client
        _charge(session, 1)
        return await _single_image(
            req.prompt or f"Portrait ({req.shot_type})",
            lambda: client.generate_portrait(subject, prompt, clothing, background),
        )

    @app.post("/api/generate/face")
    async def generate_face(
        req: FaceRequest, request: Request, session: Session = Depends(get_session)
    ) -> dict:
        try:
            prompt_builder.get_model(req.model_id)
            if req.aspect_ratio not in prompt_builder.ASPECT_RATIOS:
                raise ValueError(f"Unknown aspect ratio: {req.aspect_ratio}")
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        template = make_format_template(req.aspect_ratio) if req.use_template else None
        client = _build_generator(request, session).client
        _charge(session, 1)
        return await _single_image(
            req.prompt,
            lambda: client.generate_face(req.prompt, req.model_id, req.aspect_ratio, template),
        )

    # ------------------------------------------------------------------
    # Admin.
    # ------------------------------------------------------------------

    @app.get("/api/admin/users")
    async def list_users(
        _: Session = Depends(get_admin_session), store: AccountStore = Depends(get_store)
    ) -> dict:
        return {"users": [AccountView.from_account(a).model_dump(mode="json") for a in store.list_users()]}

    @app.post("/api/admin/users")
    async def create_user(
        req: AdminCreateUserRequest,
        _: Session = Depends(get_admin_session),
        store: AccountStore = Depends(get_store),
    ) -> dict:
        created = store.admin_create_user(req.username)
        if created is None:
            raise HTTPException(status_code=409, detail="User already exists")
        account, password = created
        return {
            "user": AccountView.from_account(account).model_dump(mode="json"),
            "password": password,
        }

    @app.patch("/api/admin/users/{username}")
    async def update_user(
        username: str,
        req: AdminUpdateUserRequest,
        _: Session = Depends(get_admin_session),
        store: AccountStore = Depends(get_store),
    ) -> dict:
        updates = req.model_dump(exclude_none=True)
        return _account_payload(_raise_for_result(store.admin_update_user(username, **updates)))

    @app.delete("/api/admin/users/{username}")
    async def delete_user(
        username: str,
        _: Session = Depends(get_admin_session),
        store: AccountStore = Depends(get_store),
    ) -> dict:
        _raise_for_result(store.delete_user(username))
        return {"success": True, "deleted": username}

    @app.get("/api/admin/promos")
    async def list_promos(
        _: Session = Depends(get_admin_session), store: AccountStore = Depends(get_store)
    ) -> dict:
        return {
            "promos": [
                {**promo.model_dump(), "used_count": promo.used_count}
                for promo in store.list_promos()
            ]
        }

    @app.post("/api/admin/promos")
    async def create_promo(
        req: PromoCreateRequest,
        _: Session = Depends(get_admin_session),
        store: AccountStore = Depends(get_store),
    ) -> dict:
        promo = store.create_promo(req.credits, req.name)
        if promo is None:
            raise HTTPException(status_code=400, detail="credits must be positive")
        return {"promo": promo.model_dump()}

    @app.delete("/api/admin/promos/{code}")
    async def delete_promo(
        code: str,
        _: Session = Depends(get_admin_session),
        store: AccountStore = Depends(get_store),
    ) -> dict:
        if not store.delete_promo(code):
            raise HTTPException(status_code=404, detail="Promo code not found")
        return {"success": True, "deleted": code.upper()}

    return app


app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host, port and log level from :data:`~setka.core.config.config`
    (``SETKA_SERVER_HOST``, ``SETKA_SERVER_PORT``, ``SETKA_LOG_LEVEL``).

    This function is registered as the ``setka`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "setka.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
