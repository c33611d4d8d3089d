import hashlib
import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

IdSource = Literal["backend", "local"]


def local_id() -> str:
    """Client-side placeholder id for stories/tasks the backend did not name"""
    return uuid.uuid4().hex[:12]


class WireModel(BaseModel):
    # Backend speaks camelCase; python side uses snake_case
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class GenerationSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    story_idea: str
    genre: str = "fantasy"
    tone: str = "lighthearted"
    target_audience: str = "general"
    art_style: str = "anime"
    language: str = "en"
    num_scenes: int = 4

    def to_payload(self) -> Dict[str, Any]:
        return {
            "prompt": self.story_idea.strip(),
            "genre": self.genre,
            "tone": self.tone,
            "targetAudience": self.target_audience,
            "language": self.language,
            "numScenes": self.num_scenes,
            "artStyle": self.art_style,
        }

    def idempotency_key(self) -> str:
        content = json.dumps(self.to_payload(), sort_keys=True)
        return hashlib.sha256(content.encode()).hexdigest()[:32]


class Scene(WireModel):
    id: int
    title: str
    text: str
    image_url: Optional[str] = None
    audio_url: Optional[str] = None
    image_prompt: str = ""
    scene_number: int
    source_index: int


class StoryMetadata(WireModel):
    genre: str
    tone: str
    art_style: str
    target_audience: str
    language: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    total_scenes: int = 0


class StoryAssets(WireModel):
    pdf_url: Optional[str] = None
    audiobook_url: Optional[str] = None
    flipbook: Optional[Dict[str, Any]] = None


class Story(WireModel):
    id: str
    id_source: IdSource = "backend"
    title: str
    scenes: List[Scene]
    metadata: StoryMetadata
    assets: Optional[StoryAssets] = None

    def scene(self, scene_id: int) -> Optional[Scene]:
        for sc in self.scenes:
            if sc.id == scene_id:
                return sc
        return None


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


# Job-style vocabulary some backends report
STATUS_ALIASES = {
    "queued": TaskStatus.PENDING,
    "running": TaskStatus.PROCESSING,
    "succeeded": TaskStatus.COMPLETED,
    "canceled": TaskStatus.FAILED,
    "cancelled": TaskStatus.FAILED,
}


class GenerationTask(BaseModel):
    task_id: str
    id_source: IdSource = "backend"
    status: TaskStatus = TaskStatus.PENDING
    progress: float = 0
    current_step: str = ""
    story: Optional[Story] = None
    error: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def _map_status(cls, value):
        if isinstance(value, str):
            value = value.strip().lower()
            return STATUS_ALIASES.get(value, value)
        return value

    @field_validator("progress", mode="before")
    @classmethod
    def _clamp_progress(cls, value):
        try:
            value = float(value)
        except (TypeError, ValueError):
            return 0
        return max(0.0, min(100.0, value))

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class ShareLink(WireModel):
    share_url: str
    share_id: Optional[str] = None
    expires_at: Optional[datetime] = None
