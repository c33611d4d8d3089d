import os
from typing import List, Literal
from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator
import logging

# Configure logging
logging.basicConfig(level=os.getenv("STORY_LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

# Load .env file if it exists (for local development)
env_path = os.path.join(os.path.dirname(__file__), "..", "..", ".env")
if os.path.exists(env_path):
    load_dotenv(env_path)
    logger.info("Loaded .env file for local development")
else:
    logger.info("No .env file found, using environment variables")

STORY_API_BASE_URL = os.getenv("STORY_API_BASE_URL", "http://localhost:8000").rstrip("/")

# Generation calls can take up to two minutes (image generation)
STORY_API_TIMEOUT_MS = int(os.getenv("STORY_API_TIMEOUT_MS", "120000"))
STORY_HEALTH_TIMEOUT_MS = int(os.getenv("STORY_HEALTH_TIMEOUT_MS", "5000"))
STORY_HEALTH_PATH = os.getenv("STORY_HEALTH_PATH", "/")
STORY_POLL_INTERVAL_MS = int(os.getenv("STORY_POLL_INTERVAL_MS", "2000"))

# Comma-separated list of art styles the backend has LoRAs for (e.g., "lego,oil,anime").
_art_styles_env = os.getenv("STORY_SUPPORTED_ART_STYLES", "").strip()
if _art_styles_env:
    STORY_SUPPORTED_ART_STYLES = [s.strip().lower() for s in _art_styles_env.split(",") if s.strip()]
else:
    STORY_SUPPORTED_ART_STYLES = ["lego", "oil", "manga", "anime", "sketch"]

STORY_ART_STYLE_POLICY = os.getenv("STORY_ART_STYLE_POLICY", "reject").strip().lower()
STORY_DEFAULT_ART_STYLE = os.getenv("STORY_DEFAULT_ART_STYLE", "anime").strip().lower()
STORY_REFINE_SCOPE = os.getenv("STORY_REFINE_SCOPE", "all").strip().lower()
STORY_REFINE_EXCERPT_CHARS = int(os.getenv("STORY_REFINE_EXCERPT_CHARS", "100"))

MIN_STORY_IDEA_LENGTH = 10
MIN_SCENES = 3
MAX_SCENES = 8


class StoryClientConfig(BaseModel):
    """Everything the client needs at process start, passed explicitly to each component."""
    base_url: str = STORY_API_BASE_URL
    timeout_ms: int = Field(default=STORY_API_TIMEOUT_MS, gt=0)
    health_timeout_ms: int = Field(default=STORY_HEALTH_TIMEOUT_MS, gt=0)
    health_path: str = STORY_HEALTH_PATH
    poll_interval_ms: int = Field(default=STORY_POLL_INTERVAL_MS, gt=0)
    min_story_idea_length: int = MIN_STORY_IDEA_LENGTH
    min_scenes: int = MIN_SCENES
    max_scenes: int = MAX_SCENES
    supported_art_styles: List[str] = Field(default_factory=lambda: list(STORY_SUPPORTED_ART_STYLES))
    art_style_policy: Literal["reject", "substitute"] = STORY_ART_STYLE_POLICY
    default_art_style: str = STORY_DEFAULT_ART_STYLE
    refine_scope: Literal["all", "lead"] = STORY_REFINE_SCOPE
    refine_excerpt_chars: int = Field(default=STORY_REFINE_EXCERPT_CHARS, gt=0)

    @model_validator(mode="after")
    def _check_consistency(self):
        self.base_url = self.base_url.rstrip("/")
        self.supported_art_styles = [s.lower() for s in self.supported_art_styles]
        if not self.supported_art_styles:
            raise ValueError("supported_art_styles must not be empty")
        if self.default_art_style.lower() not in self.supported_art_styles:
            raise ValueError(
                f"default_art_style '{self.default_art_style}' not in supported styles {self.supported_art_styles}"
            )
        if not 1 <= self.min_scenes <= self.max_scenes:
            raise ValueError(f"Scene bounds invalid: min={self.min_scenes}, max={self.max_scenes}")
        return self

    @classmethod
    def from_env(cls, **overrides) -> "StoryClientConfig":
        return cls(**overrides)

    def is_art_style_supported(self, art_style: str) -> bool:
        return bool(art_style) and art_style.lower() in self.supported_art_styles
