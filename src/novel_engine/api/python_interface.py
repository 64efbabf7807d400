"""Python-first client for the novel engine HTTP API."""

from __future__ import annotations

import json
from collections.abc import Iterator
from dataclasses import dataclass

import httpx

from novel_engine.api.contracts import (
    BranchCheckResponse,
    BranchCreateRequest,
    BranchCreateResponse,
    ChoiceRequest,
    ChoiceResponse,
    DeleteResponse,
    PreferencesBlock,
    ProgressRequest,
    ProgressResponse,
    SceneResponse,
    StoryFavoriteRequest,
    StoryResponse,
    StoryStartRequest,
    TemplateBlueprint,
    TemplateSummaryResponse,
)

DEFAULT_TIMEOUT_SECONDS = 30.0
GENERATION_TIMEOUT_SECONDS = 120.0


@dataclass(frozen=True)
class AuthSession:
    """Authenticated client session."""

    access_token: str
    api_base_url: str

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}


class NovelApiClient:
    """Tiny typed API client for Python readers and scripts."""

    def __init__(self, api_base_url: str = "http://127.0.0.1:8000") -> None:
        self._api_base_url = api_base_url.rstrip("/")

    @property
    def api_base_url(self) -> str:
        return self._api_base_url

    def register(self, *, email: str, password: str, display_name: str) -> None:
        """Create an account for bearer-token authentication."""
        response = httpx.post(
            f"{self._api_base_url}/api/v1/auth/register",
            json={"email": email, "password": password, "display_name": display_name},
            timeout=DEFAULT_TIMEOUT_SECONDS,
        )
        response.raise_for_status()

    def login(self, *, email: str, password: str) -> AuthSession:
        response = httpx.post(
            f"{self._api_base_url}/api/v1/auth/login",
            json={"email": email, "password": password},
            timeout=DEFAULT_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        payload = response.json()
        return AuthSession(
            access_token=str(payload["access_token"]), api_base_url=self._api_base_url
        )

    def list_templates(self) -> list[TemplateSummaryResponse]:
        response = httpx.get(
            f"{self._api_base_url}/api/v1/templates", timeout=DEFAULT_TIMEOUT_SECONDS
        )
        response.raise_for_status()
        return [TemplateSummaryResponse.model_validate(item) for item in response.json()]

    def get_template(self, *, template_id: str) -> TemplateBlueprint:
        response = httpx.get(
            f"{self._api_base_url}/api/v1/templates/{template_id}",
            timeout=DEFAULT_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        return TemplateBlueprint.model_validate(response.json())

    def start_story(
        self,
        *,
        session: AuthSession,
        template_id: str,
        preferences: PreferencesBlock | None = None,
        title: str | None = None,
    ) -> StoryResponse:
        request = StoryStartRequest(
            template_id=template_id,
            title=title,
            preferences=preferences or PreferencesBlock(),
        )
        response = httpx.post(
            f"{session.api_base_url}/api/v1/stories",
            json=request.model_dump(mode="json"),
            headers=session.headers,
            timeout=DEFAULT_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        return StoryResponse.model_validate(response.json())

    def get_story(self, *, session: AuthSession, story_id: str) -> StoryResponse:
        response = httpx.get(
            f"{session.api_base_url}/api/v1/stories/{story_id}",
            headers=session.headers,
            timeout=DEFAULT_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        return StoryResponse.model_validate(response.json())

    def list_stories(
        self, *, session: AuthSession, favorites_only: bool = False
    ) -> list[StoryResponse]:
        response = httpx.get(
            f"{session.api_base_url}/api/v1/stories",
            params={"favorites": "true"} if favorites_only else None,
            headers=session.headers,
            timeout=DEFAULT_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        return [StoryResponse.model_validate(item) for item in response.json()]

    def set_favorite(
        self, *, session: AuthSession, story_id: str, is_favorite: bool
    ) -> StoryResponse:
        response = httpx.put(
            f"{session.api_base_url}/api/v1/stories/{story_id}/favorite",
            json=StoryFavoriteRequest(is_favorite=is_favorite).model_dump(mode="json"),
            headers=session.headers,
            timeout=DEFAULT_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        return StoryResponse.model_validate(response.json())

    def get_scene(
        self, *, session: AuthSession, story_id: str, scene_number: int | None = None
    ) -> SceneResponse:
        """Fetch a scene, generating it server-side when it is not cached yet."""
        params = {"number": scene_number} if scene_number is not None else None
        response = httpx.get(
            f"{session.api_base_url}/api/v1/stories/{story_id}/scene",
            params=params,
            headers=session.headers,
            timeout=GENERATION_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        return SceneResponse.model_validate(response.json())

    def stream_scene(
        self, *, session: AuthSession, story_id: str, scene_number: int | None = None
    ) -> Iterator[dict[str, object]]:
        """Yield decoded server-sent events: ``content`` fragments, then ``done`` or ``error``."""
        params = {"number": scene_number} if scene_number is not None else None
        with httpx.stream(
            "GET",
            f"{session.api_base_url}/api/v1/stories/{story_id}/scene/stream",
            params=params,
            headers=session.headers,
            timeout=GENERATION_TIMEOUT_SECONDS,
        ) as response:
            response.raise_for_status()
            for line in response.iter_lines():
                if line.startswith("data:"):
                    yield json.loads(line[len("data:") :].strip())

    def advance_progress(
        self, *, session: AuthSession, story_id: str, current_scene: int
    ) -> ProgressResponse:
        response = httpx.patch(
            f"{session.api_base_url}/api/v1/stories/{story_id}/scene",
            json=ProgressRequest(current_scene=current_scene).model_dump(mode="json"),
            headers=session.headers,
            timeout=DEFAULT_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        return ProgressResponse.model_validate(response.json())

    def make_choice(
        self,
        *,
        session: AuthSession,
        story_id: str,
        choice_point_id: str,
        selected_option: int,
    ) -> ChoiceResponse:
        request = ChoiceRequest(choice_point_id=choice_point_id, selected_option=selected_option)
        response = httpx.post(
            f"{session.api_base_url}/api/v1/stories/{story_id}/choose",
            json=request.model_dump(mode="json"),
            headers=session.headers,
            timeout=DEFAULT_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        return ChoiceResponse.model_validate(response.json())

    def check_branch(
        self,
        *,
        session: AuthSession,
        story_id: str,
        scene_number: int,
        choice_point_id: str,
        choice_option: int,
    ) -> BranchCheckResponse:
        response = httpx.get(
            f"{session.api_base_url}/api/v1/stories/{story_id}/branch",
            params={
                "scene_number": scene_number,
                "choice_point_id": choice_point_id,
                "choice_option": choice_option,
            },
            headers=session.headers,
            timeout=DEFAULT_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        return BranchCheckResponse.model_validate(response.json())

    def create_branch(
        self,
        *,
        session: AuthSession,
        story_id: str,
        scene_number: int,
        choice_point_id: str,
        new_option: int,
    ) -> BranchCreateResponse:
        request = BranchCreateRequest(
            scene_number=scene_number, choice_point_id=choice_point_id, new_option=new_option
        )
        response = httpx.post(
            f"{session.api_base_url}/api/v1/stories/{story_id}/branch",
            json=request.model_dump(mode="json"),
            headers=session.headers,
            timeout=DEFAULT_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        return BranchCreateResponse.model_validate(response.json())

    def delete_story(self, *, session: AuthSession, story_id: str) -> bool:
        response = httpx.delete(
            f"{session.api_base_url}/api/v1/stories/{story_id}",
            headers=session.headers,
            timeout=DEFAULT_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        return DeleteResponse.model_validate(response.json()).success
