import logging
from typing import Any, Dict, Optional

from .models import GenerationSettings, Story
from .transport import TransportClient

logger = logging.getLogger(__name__)

GENERATE_PATH = "/api/stories/generate"
STATUS_PATH = "/api/stories/status/{task_id}"
REFINE_PATH = "/api/stories/refine"
ASSETS_PATH = "/api/stories/get_scenes"
REGENERATE_IMAGE_PATH = "/api/stories/regenerate_image"
SCENE_PATH = "/api/stories/{story_id}/scenes/{scene_id}"
SHARE_PATH = "/api/stories/{story_id}/share"
PDF_PATH = "/api/stories/{story_id}/download.pdf"


class StoryBackend:
    """Typed wrappers for the generation backend's endpoints. Returns raw JSON payloads."""

    def __init__(self, transport: TransportClient):
        self.transport = transport
        self.config = transport.config

    async def check_health(self) -> Any:
        return await self.transport.request(self.config.health_path, timeout_ms=self.config.health_timeout_ms)

    async def generate(self, settings: GenerationSettings) -> Any:
        payload = settings.to_payload()
        logger.info(f"Requesting story generation: {payload['prompt'][:50]}... ({payload['numScenes']} scenes)")
        return await self.transport.request(
            GENERATE_PATH,
            method="POST",
            body=payload,
            headers={"Idempotency-Key": settings.idempotency_key()},
        )

    async def get_status(self, task_id: str) -> Any:
        return await self.transport.request(STATUS_PATH.format(task_id=task_id))

    async def refine(self, prompt: str, story: Story) -> Any:
        return await self.transport.request(
            REFINE_PATH, method="POST", body={"prompt": prompt, "story": story.to_wire()}
        )

    async def generate_assets(self, story: Story, art_style: str) -> Any:
        return await self.transport.request(
            ASSETS_PATH, method="POST", body={"story": story.to_wire(), "artStyle": art_style}
        )

    async def regenerate_image(self, story_id: str, scene_id: int, prompt: str, art_style: str) -> Any:
        body = {"storyId": story_id, "sceneId": scene_id, "prompt": prompt, "artStyle": art_style}
        return await self.transport.request(REGENERATE_IMAGE_PATH, method="POST", body=body)

    async def update_scene(self, story_id: str, scene_id: int, updates: Dict[str, Any]) -> Any:
        return await self.transport.request(
            SCENE_PATH.format(story_id=story_id, scene_id=scene_id), method="PUT", body=updates
        )

    async def create_share_link(self, story_id: str, options: Optional[Dict[str, Any]] = None) -> Any:
        return await self.transport.request(
            SHARE_PATH.format(story_id=story_id), method="POST", body=options or {}
        )

    def pdf_download_url(self, story_id: str) -> str:
        return f"{self.transport.base_url}{PDF_PATH.format(story_id=story_id)}"
