"""FastAPI application exposing the branching narrative engine."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import secrets
import threading
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Literal

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from novel_engine.adapters.completion_providers import (
    CompletionProviderPool,
    build_completion_provider,
)
from novel_engine.adapters.observability import int_env
from novel_engine.adapters.provider_config import ProviderSettingsCache, settings_ttl_from_env
from novel_engine.adapters.sqlite_anomaly_store import SQLiteAnomalyStore
from novel_engine.adapters.sqlite_story_store import SQLiteStoryStore, StoredUser
from novel_engine.adapters.sqlite_template_store import SQLiteTemplateStore
from novel_engine.api.contracts import (
    AuthLoginRequest,
    AuthRegisterRequest,
    AuthTokenResponse,
    BranchCheckResponse,
    BranchCreateRequest,
    BranchCreateResponse,
    BranchRefResponse,
    ChoicePointBlock,
    ChoiceRequest,
    ChoiceResponse,
    DeleteResponse,
    ErrorResponse,
    PreferencesBlock,
    ProgressRequest,
    ProgressResponse,
    SceneResponse,
    StoryFavoriteRequest,
    StoryRenameRequest,
    StoryResponse,
    StoryStartRequest,
    StorySummaryResponse,
    TemplateBlueprint,
    TemplateSummaryResponse,
    UserResponse,
)
from novel_engine.application.reading import ReadingService, ScenePayload
from novel_engine.core.scene_quality import (
    DEFAULT_MAX_WORDS,
    DEFAULT_MIN_WORDS,
    SceneQualityPolicy,
)
from novel_engine.core.scene_resolver import FixedProviderSource
from novel_engine.domain.errors import (
    ChoiceConflictError,
    GenerationError,
    NarrativeError,
    NarrativeValidationError,
    SceneQualityError,
    StoryAccessError,
    StoryCompletedError,
    StoryNotFoundError,
    TemplateNotFoundError,
)
from novel_engine.domain.models import StoryInstance
from novel_engine.domain.ports import (
    CompletionProvider,
    CompletionProviderSource,
    ProviderSettings,
)

DEFAULT_DB_PATH = Path("work/local/novel_engine.db")
TOKEN_TTL_HOURS = 24
PBKDF2_ITERATIONS = 310_000

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Simple health payload for liveness checks."""

    status: Literal["ok"] = "ok"
    service: str = "novel_engine"


class ApiRootResponse(BaseModel):
    """Describes currently available API capabilities."""

    name: str = "novel_engine"
    persistence: Literal["sqlite"] = "sqlite"
    auth: Literal["bearer-token"] = "bearer-token"
    completion_provider: str = "draft"
    endpoints: list[str] = Field(
        default_factory=lambda: [
            "/healthz",
            "/api/v1",
            "/api/v1/auth/register",
            "/api/v1/auth/login",
            "/api/v1/me",
            "/api/v1/templates",
            "/api/v1/templates/{template_id}",
            "/api/v1/stories",
            "/api/v1/stories/{story_id}",
            "/api/v1/stories/{story_id}/favorite",
            "/api/v1/stories/{story_id}/scene",
            "/api/v1/stories/{story_id}/scene/stream",
            "/api/v1/stories/{story_id}/choose",
            "/api/v1/stories/{story_id}/branch",
        ]
    )


def _resolve_db_path(db_path: Path | None) -> Path:
    """Resolve DB path from explicit arg, env var, then default path."""
    if db_path is not None:
        return db_path
    env_value = os.environ.get("NOVEL_ENGINE_DB_PATH", "").strip()
    if env_value:
        return Path(env_value)
    return DEFAULT_DB_PATH


def _cors_origins() -> list[str]:
    raw = os.environ.get("NOVEL_ENGINE_CORS_ORIGINS", "").strip()
    if raw:
        return [origin.strip() for origin in raw.split(",") if origin.strip()]
    return ["http://127.0.0.1:5173", "http://localhost:5173"]


def _quality_policy_from_env() -> SceneQualityPolicy:
    min_words = int_env("NOVEL_ENGINE_SCENE_MIN_WORDS", DEFAULT_MIN_WORDS, minimum=1, maximum=20_000)
    max_words = int_env(
        "NOVEL_ENGINE_SCENE_MAX_WORDS", DEFAULT_MAX_WORDS, minimum=min_words, maximum=50_000
    )
    return SceneQualityPolicy(min_words=min_words, max_words=max_words)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _hash_password(password: str) -> str:
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt.hex()}${digest.hex()}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algorithm, iterations, salt_hex, digest_hex = password_hash.split("$", maxsplit=3)
    except ValueError:
        return False
    if algorithm != "pbkdf2_sha256":
        return False
    recomputed = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        bytes.fromhex(salt_hex),
        int(iterations),
    )
    return hmac.compare_digest(recomputed.hex(), digest_hex)


def _error_status(exc: NarrativeError) -> int:
    if isinstance(exc, NarrativeValidationError):
        return 422
    if isinstance(exc, (ChoiceConflictError, StoryCompletedError)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, (StoryNotFoundError, TemplateNotFoundError)):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, StoryAccessError):
        return status.HTTP_403_FORBIDDEN
    if isinstance(exc, GenerationError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_400_BAD_REQUEST


def _error_code(exc: NarrativeError) -> str:
    name = type(exc).__name__.removesuffix("Error")
    return "".join(f"_{char.lower()}" if char.isupper() else char for char in name).lstrip("_")


def _error_body(exc: NarrativeError) -> ErrorResponse:
    return ErrorResponse(
        detail=str(exc),
        code=_error_code(exc),
        retryable=isinstance(exc, GenerationError) and exc.retryable,
        reasons=exc.reasons if isinstance(exc, SceneQualityError) else [],
    )


def _user_response(user: StoredUser) -> UserResponse:
    return UserResponse(
        user_id=user.user_id,
        email=user.email,
        display_name=user.display_name,
        created_at_utc=user.created_at_utc,
    )


def _story_response(story: StoryInstance) -> StoryResponse:
    return StoryResponse(
        story_id=story.story_id,
        owner_id=story.owner_id,
        template_id=story.template_id,
        title=story.title,
        current_scene=story.current_scene,
        status=story.status,
        preferences=PreferencesBlock.from_domain(story.preferences),
        branched_from_story_id=story.branched_from_story_id,
        branched_at_scene=story.branched_at_scene,
        is_favorite=story.is_favorite,
        favorited_at_utc=story.favorited_at_utc,
        created_at_utc=story.created_at_utc,
        updated_at_utc=story.updated_at_utc,
    )


def _scene_response(payload: ScenePayload) -> SceneResponse:
    summary = payload.story
    return SceneResponse(
        scene_number=payload.scene_number,
        content=payload.content,
        word_count=payload.word_count,
        cached=payload.was_cached,
        story=StorySummaryResponse(
            story_id=summary.story_id,
            title=summary.title,
            template_id=summary.template_id,
            template_title=summary.template_title,
            current_scene=summary.current_scene,
            total_scenes=summary.total_scenes,
            status=summary.status,
            branched_from_story_id=summary.branched_from_story_id,
            branched_at_scene=summary.branched_at_scene,
        ),
        choice_point=(
            ChoicePointBlock.from_domain(payload.choice_point)
            if payload.choice_point is not None
            else None
        ),
        previous_choice=payload.previous_choice,
    )


def _sse(event: dict[str, object]) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


def create_app(
    db_path: Path | None = None,
    *,
    completion_provider: CompletionProvider | None = None,
    provider_factory: Callable[[ProviderSettings], CompletionProvider] | None = None,
    settings_cache: ProviderSettingsCache | None = None,
    quality_policy: SceneQualityPolicy | None = None,
) -> FastAPI:
    """Create the API application.

    ``completion_provider`` pins one client and ignores the configured
    provider; tests inject fakes here. Otherwise clients come from
    ``provider_factory`` and follow the cached provider settings.
    """
    effective_db_path = _resolve_db_path(db_path)
    store = SQLiteStoryStore(db_path=effective_db_path)
    template_store = SQLiteTemplateStore(db_path=effective_db_path)
    anomaly_store = SQLiteAnomalyStore(db_path=effective_db_path)
    settings = settings_cache or ProviderSettingsCache(ttl_seconds=settings_ttl_from_env())
    providers: CompletionProviderSource = (
        FixedProviderSource(completion_provider)
        if completion_provider is not None
        else CompletionProviderPool(provider_factory or build_completion_provider)
    )
    startup_provider = providers.provider_for(settings.get())
    service = ReadingService(
        store=store,
        templates=template_store,
        settings=settings,
        providers=providers,
        quality=quality_policy or _quality_policy_from_env(),
        anomalies=anomaly_store,
    )
    anomaly_retention_days = int_env(
        "NOVEL_ENGINE_ANOMALY_RETENTION_DAYS",
        30,
        minimum=1,
        maximum=3650,
    )
    anomaly_max_rows = int_env(
        "NOVEL_ENGINE_ANOMALY_MAX_ROWS",
        10_000,
        minimum=100,
        maximum=2_000_000,
    )
    bearer = HTTPBearer(auto_error=False)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        removed = anomaly_store.prune_anomalies(
            retention_days=anomaly_retention_days,
            max_rows=anomaly_max_rows,
        )
        logger.info("anomaly.prune removed=%s", removed)
        yield

    app = FastAPI(
        title="novel_engine API",
        version="0.1.0",
        description=(
            "Branching interactive-novel engine: cached scene generation, "
            "write-once choices, and copy-on-fork branches."
        ),
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        openapi_tags=[
            {"name": "system", "description": "Service health and runtime metadata."},
            {"name": "api", "description": "API discovery and capability listing."},
            {"name": "auth", "description": "Registration, login, and profile lookups."},
            {"name": "templates", "description": "Read-only novel templates."},
            {"name": "stories", "description": "Owner-scoped story instances."},
            {"name": "scenes", "description": "Scene resolution, streaming, and progress."},
            {"name": "choices", "description": "Choice recording and branching."},
        ],
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    logger.info(
        "api.start db_path=%s provider=%s anomaly_retention_days=%s anomaly_max_rows=%s",
        effective_db_path,
        startup_provider.name,
        anomaly_retention_days,
        anomaly_max_rows,
    )

    @app.exception_handler(NarrativeError)
    async def narrative_error_handler(request: Request, exc: NarrativeError) -> JSONResponse:
        status_code = _error_status(exc)
        if status_code >= 500:
            logger.warning(
                "api.generation_failed path=%s error=%s", request.url.path, exc
            )
        return JSONResponse(status_code=status_code, content=_error_body(exc).model_dump())

    def current_user(
        credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
    ) -> StoredUser:
        if credentials is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing bearer token",
            )
        user = store.get_user_by_token(
            token_value=credentials.credentials, now_utc=_utc_now().isoformat()
        )
        if user is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or expired token",
            )
        return user

    @app.get("/healthz", response_model=HealthResponse, tags=["system"])
    def healthz() -> HealthResponse:
        return HealthResponse()

    @app.get("/api/v1", response_model=ApiRootResponse, tags=["api"])
    def api_v1_root() -> ApiRootResponse:
        return ApiRootResponse(
            completion_provider=providers.provider_for(settings.get()).name
        )

    @app.post("/api/v1/auth/register", response_model=UserResponse, tags=["auth"], status_code=201)
    def register(payload: AuthRegisterRequest) -> UserResponse:
        created = store.create_user(
            email=payload.email,
            display_name=payload.display_name.strip(),
            password_hash=_hash_password(payload.password.get_secret_value()),
        )
        if created is None:
            raise HTTPException(status_code=409, detail="Email already registered")
        return _user_response(created)

    @app.post("/api/v1/auth/login", response_model=AuthTokenResponse, tags=["auth"])
    def login(payload: AuthLoginRequest) -> AuthTokenResponse:
        user = store.get_user_by_email(email=payload.email)
        if user is None or not _verify_password(
            payload.password.get_secret_value(), user.password_hash
        ):
            raise HTTPException(status_code=401, detail="Invalid credentials")
        expires_at = _utc_now() + timedelta(hours=TOKEN_TTL_HOURS)
        token = store.create_token(
            user_id=user.user_id,
            token_value=secrets.token_urlsafe(32),
            expires_at_utc=expires_at.isoformat(),
        )
        return AuthTokenResponse(
            access_token=token.token_value, expires_at_utc=token.expires_at_utc
        )

    @app.get("/api/v1/me", response_model=UserResponse, tags=["auth"])
    def me(user: StoredUser = Depends(current_user)) -> UserResponse:
        return _user_response(user)

    @app.get(
        "/api/v1/templates", response_model=list[TemplateSummaryResponse], tags=["templates"]
    )
    def list_templates() -> list[TemplateSummaryResponse]:
        return [
            TemplateSummaryResponse(
                template_id=template.template_id,
                title=template.title,
                description=template.description,
                total_scenes=template.total_scenes,
                choice_point_count=len(template.choice_points),
            )
            for template in template_store.list_templates()
        ]

    @app.get(
        "/api/v1/templates/{template_id}", response_model=TemplateBlueprint, tags=["templates"]
    )
    def get_template(template_id: str) -> TemplateBlueprint:
        template = template_store.get_template(template_id=template_id)
        if template is None:
            raise TemplateNotFoundError(f"Template '{template_id}' was not found.")
        return TemplateBlueprint.from_domain(template)

    @app.get("/api/v1/stories", response_model=list[StoryResponse], tags=["stories"])
    def list_stories(
        story_status: Literal["in-progress", "completed"] | None = Query(
            default=None, alias="status"
        ),
        favorites: bool = Query(default=False),
        limit: int = Query(default=100, ge=1, le=500),
        user: StoredUser = Depends(current_user),
    ) -> list[StoryResponse]:
        return [
            _story_response(story)
            for story in service.library.list_stories(
                user_id=user.user_id, status=story_status, favorites_only=favorites, limit=limit
            )
        ]

    @app.post("/api/v1/stories", response_model=StoryResponse, tags=["stories"], status_code=201)
    def start_story(
        payload: StoryStartRequest,
        user: StoredUser = Depends(current_user),
    ) -> StoryResponse:
        story = service.start_story(
            user_id=user.user_id,
            template_id=payload.template_id,
            preferences=payload.preferences.to_domain(),
            title=payload.title,
        )
        return _story_response(story)

    @app.get("/api/v1/stories/{story_id}", response_model=StoryResponse, tags=["stories"])
    def get_story(story_id: str, user: StoredUser = Depends(current_user)) -> StoryResponse:
        return _story_response(service.library.get_story(story_id=story_id, user_id=user.user_id))

    @app.patch("/api/v1/stories/{story_id}", response_model=StoryResponse, tags=["stories"])
    def rename_story(
        story_id: str,
        payload: StoryRenameRequest,
        user: StoredUser = Depends(current_user),
    ) -> StoryResponse:
        story = service.library.rename_story(
            story_id=story_id, user_id=user.user_id, title=payload.title
        )
        return _story_response(story)

    @app.put(
        "/api/v1/stories/{story_id}/favorite", response_model=StoryResponse, tags=["stories"]
    )
    def set_favorite(
        story_id: str,
        payload: StoryFavoriteRequest,
        user: StoredUser = Depends(current_user),
    ) -> StoryResponse:
        story = service.library.set_favorite(
            story_id=story_id, user_id=user.user_id, is_favorite=payload.is_favorite
        )
        return _story_response(story)

    @app.delete("/api/v1/stories/{story_id}", response_model=DeleteResponse, tags=["stories"])
    def delete_story(story_id: str, user: StoredUser = Depends(current_user)) -> DeleteResponse:
        return DeleteResponse(success=service.delete_story(user_id=user.user_id, story_id=story_id))

    @app.get("/api/v1/stories/{story_id}/scene", response_model=SceneResponse, tags=["scenes"])
    def get_scene(
        story_id: str,
        number: int | None = Query(default=None),
        user: StoredUser = Depends(current_user),
    ) -> SceneResponse:
        payload = service.get_scene(user_id=user.user_id, story_id=story_id, scene_number=number)
        return _scene_response(payload)

    @app.get("/api/v1/stories/{story_id}/scene/stream", tags=["scenes"])
    def stream_scene(
        story_id: str,
        number: int | None = Query(default=None),
        user: StoredUser = Depends(current_user),
    ) -> StreamingResponse:
        cancel = threading.Event()
        updates = service.stream_scene(
            user_id=user.user_id, story_id=story_id, scene_number=number, cancel=cancel
        )

        def event_source() -> Iterator[str]:
            try:
                for update in updates:
                    if update.kind == "content":
                        yield _sse({"type": "content", "content": update.text})
                    elif update.payload is not None:
                        body = _scene_response(update.payload).model_dump(mode="json")
                        yield _sse({"type": "done", **body})
            except NarrativeError as exc:
                logger.warning("scene.stream_failed story_id=%s error=%s", story_id, exc)
                error = _error_body(exc)
                yield _sse(
                    {
                        "type": "error",
                        "error": error.detail,
                        "code": error.code,
                        "retryable": error.retryable,
                    }
                )
            finally:
                cancel.set()

        return StreamingResponse(
            event_source(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.patch(
        "/api/v1/stories/{story_id}/scene", response_model=ProgressResponse, tags=["scenes"]
    )
    def advance_progress(
        story_id: str,
        payload: ProgressRequest,
        user: StoredUser = Depends(current_user),
    ) -> ProgressResponse:
        result = service.advance_progress(
            user_id=user.user_id, story_id=story_id, new_current_scene=payload.current_scene
        )
        return ProgressResponse(current_scene=result.current_scene, completed=result.completed)

    @app.post(
        "/api/v1/stories/{story_id}/choose", response_model=ChoiceResponse, tags=["choices"]
    )
    def make_choice(
        story_id: str,
        payload: ChoiceRequest,
        user: StoredUser = Depends(current_user),
    ) -> ChoiceResponse:
        outcome = service.make_choice(
            user_id=user.user_id,
            story_id=story_id,
            choice_point_id=payload.choice_point_id,
            selected_option=payload.selected_option,
        )
        return ChoiceResponse(
            choice_id=outcome.choice_id,
            completed=outcome.completed,
            next_scene=outcome.next_scene,
        )

    @app.get(
        "/api/v1/stories/{story_id}/branch", response_model=BranchCheckResponse, tags=["choices"]
    )
    def check_branch(
        story_id: str,
        scene_number: int = Query(ge=1),
        choice_point_id: str = Query(min_length=1, max_length=120),
        choice_option: int = Query(ge=0),
        user: StoredUser = Depends(current_user),
    ) -> BranchCheckResponse:
        existing = service.check_existing_branch(
            user_id=user.user_id,
            story_id=story_id,
            scene_number=scene_number,
            choice_point_id=choice_point_id,
            option=choice_option,
        )
        if existing is None:
            return BranchCheckResponse(exists=False)
        return BranchCheckResponse(
            exists=True,
            branch=BranchRefResponse(story_id=existing.story_id, title=existing.title),
        )

    @app.post(
        "/api/v1/stories/{story_id}/branch",
        response_model=BranchCreateResponse,
        tags=["choices"],
        status_code=201,
    )
    def create_branch(
        story_id: str,
        payload: BranchCreateRequest,
        user: StoredUser = Depends(current_user),
    ) -> BranchCreateResponse:
        branch_id = service.create_branch(
            user_id=user.user_id,
            story_id=story_id,
            scene_number=payload.scene_number,
            choice_point_id=payload.choice_point_id,
            new_option=payload.new_option,
        )
        return BranchCreateResponse(story_id=branch_id)

    return app
