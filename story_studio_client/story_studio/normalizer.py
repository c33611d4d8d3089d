"""
Converts the backend's varying response shapes into the canonical Story model.

Scene extraction tries, in order: numbered `scene_N` keys, a `scenes` list,
then one text blob split on blank lines. The result always has at least one
scene.
"""
import base64
import binascii
import io
import logging
import math
import re
from typing import Any, Callable, Dict, List, Optional

from PIL import Image, UnidentifiedImageError
from pydantic import ValidationError as ModelValidationError

from .errors import BackendLogicError
from .models import (
    GenerationSettings, GenerationTask, Scene, Story, StoryAssets, StoryMetadata, TaskStatus, local_id,
)

logger = logging.getLogger(__name__)

SCENE_KEY_RE = re.compile(r"^scene_(\d+)$")
PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")
BLOB_KEYS = ("story", "text", "content", "refined_story")
TEXT_KEYS = ("text", "Text", "content", "script")
IMAGE_KEYS = ("imageUrl", "image_url", "image", "PIL")
AUDIO_KEYS = ("audioUrl", "audio_url", "audio")

DEFAULT_TITLE = "Generated Story"
FALLBACK_SCENE_TEXT = (
    "We couldn't split this story into scenes. Try generating it again or refining the idea."
)


def _first(data: Dict[str, Any], keys) -> Any:
    for key in keys:
        value = data.get(key)
        if value:
            return value
    return None


def _scene_text(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, dict):
        text = _first(value, TEXT_KEYS)
        return text.strip() if isinstance(text, str) else ""
    return ""


def split_paragraphs(text: str) -> List[str]:
    return [p.strip() for p in PARAGRAPH_SPLIT_RE.split(text or "") if p.strip()]


def bucket_paragraphs(paragraphs: List[str], num_buckets: int) -> List[List[str]]:
    """Groups paragraphs in order, ceil(count / num_buckets) per bucket."""
    if not paragraphs:
        return []
    per_scene = math.ceil(len(paragraphs) / max(num_buckets, 1))
    return [paragraphs[i:i + per_scene] for i in range(0, len(paragraphs), per_scene)]


def _image_mime(raw: bytes) -> Optional[str]:
    """Mime type of an encoded image, or None if Pillow cannot identify it."""
    try:
        with Image.open(io.BytesIO(raw)) as img:
            fmt = img.format
    except (UnidentifiedImageError, OSError):
        return None
    return f"image/{fmt.lower()}" if fmt else None


def resolve_image_reference(value: Optional[str]) -> Optional[str]:
    """Data URIs and URLs pass through; bare base64 becomes a data URI."""
    if not value or not isinstance(value, str):
        return None
    value = value.strip()
    if value.startswith("data:") or value.startswith("/") or "://" in value:
        return value
    # Large inline images often arrive wrapped across lines
    compact = "".join(value.split())
    try:
        raw = base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError):
        return value
    mime = _image_mime(raw)
    if not mime:
        # Decodes as base64 but is not an image, e.g. "media/scene1"
        return value
    return f"data:{mime};base64,{compact}"


def _make_scene(position: int, source_index: int, text: str, title: Optional[str] = None,
                image_prompt: Optional[str] = None, image: Optional[str] = None,
                audio: Optional[str] = None) -> Scene:
    return Scene(
        id=position,
        title=title or f"Scene {position}",
        text=text,
        image_url=resolve_image_reference(image),
        audio_url=audio or None,
        image_prompt=image_prompt or f"Scene {position} illustration",
        scene_number=position,
        source_index=source_index,
    )


def _scenes_from_keys(raw: Dict[str, Any], requested: int) -> List[Scene]:
    scenes = []
    for i in range(1, requested + 1):
        value = raw.get(f"scene_{i}")
        text = _scene_text(value)
        if not text:
            if value is not None:
                logger.warning(f"scene_{i} has no text, skipping")
            continue
        extra = value if isinstance(value, dict) else {}
        scenes.append(_make_scene(
            len(scenes) + 1, i, text,
            title=extra.get("title"),
            image_prompt=extra.get("imagePrompt"),
            image=_first(extra, IMAGE_KEYS),
            audio=_first(extra, AUDIO_KEYS),
        ))
    return scenes


def _scenes_from_list(items: List[Any]) -> List[Scene]:
    scenes = []
    for index, item in enumerate(items, start=1):
        text = _scene_text(item)
        if not text:
            logger.warning(f"scenes[{index - 1}] has no text, skipping")
            continue
        extra = item if isinstance(item, dict) else {}
        scenes.append(_make_scene(
            len(scenes) + 1, index, text,
            title=extra.get("title"),
            image_prompt=extra.get("imagePrompt") or extra.get("image_prompt"),
            image=_first(extra, IMAGE_KEYS),
            audio=_first(extra, AUDIO_KEYS),
        ))
    return scenes


def _scenes_from_blob(text: str, requested: int) -> List[Scene]:
    buckets = bucket_paragraphs(split_paragraphs(text), requested)
    return [_make_scene(i, i, "\n\n".join(bucket)) for i, bucket in enumerate(buckets, start=1)]


def _has_scene_keys(raw: Any) -> bool:
    return isinstance(raw, dict) and any(SCENE_KEY_RE.match(str(k)) for k in raw)


def extract_scenes(raw: Any, requested_scene_count: int) -> List[Scene]:
    if isinstance(raw, str):
        return _scenes_from_blob(raw, requested_scene_count)
    if isinstance(raw, list):
        return _scenes_from_list(raw)
    if not isinstance(raw, dict):
        return []
    if _has_scene_keys(raw):
        return _scenes_from_keys(raw, requested_scene_count)
    if isinstance(raw.get("scenes"), list):
        return _scenes_from_list(raw["scenes"])
    blob = _first(raw, BLOB_KEYS)
    if isinstance(blob, str):
        return _scenes_from_blob(blob, requested_scene_count)
    return []


def _fallback_scene() -> Scene:
    return _make_scene(1, 1, FALLBACK_SCENE_TEXT)


def _assets_from(raw: Dict[str, Any], current: Optional[StoryAssets] = None) -> Optional[StoryAssets]:
    pdf = raw.get("pdfUrl") or raw.get("pdf_url")
    audiobook = raw.get("audiobookUrl") or raw.get("audiobook_url")
    flipbook = raw.get("flipbook")
    if not (pdf or audiobook or flipbook):
        return current
    base = current or StoryAssets()
    return base.model_copy(update={
        "pdf_url": pdf or base.pdf_url,
        "audiobook_url": audiobook or base.audiobook_url,
        "flipbook": flipbook if isinstance(flipbook, dict) else base.flipbook,
    })


def normalize(raw: Any, requested_scene_count: int, settings: GenerationSettings) -> Story:
    scenes = extract_scenes(raw, requested_scene_count)
    if not scenes:
        logger.warning("No scenes could be extracted from backend response, using fallback scene")
        scenes = [_fallback_scene()]

    data = raw if isinstance(raw, dict) else {}
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    story_id = data.get("id") or data.get("storyId") or data.get("story_id")
    return Story(
        id=str(story_id) if story_id else local_id(),
        id_source="backend" if story_id else "local",
        title=(data.get("title") or "").strip() or DEFAULT_TITLE,
        scenes=scenes,
        metadata=StoryMetadata(
            genre=metadata.get("genre") or settings.genre,
            tone=metadata.get("tone") or settings.tone,
            art_style=metadata.get("artStyle") or settings.art_style,
            target_audience=metadata.get("targetAudience") or settings.target_audience,
            language=metadata.get("language") or settings.language,
            total_scenes=len(scenes),
        ),
        assets=_assets_from(data),
    )


def merge_scene_assets(story: Story, raw: Any) -> Story:
    """Applies an asset-generation response (scene map or list) onto a copy of `story`."""
    if not isinstance(raw, dict):
        raise BackendLogicError("Asset response was not a JSON object")
    items = raw.get("scenes") if isinstance(raw.get("scenes"), list) else None
    if items is None and not _has_scene_keys(raw):
        raise BackendLogicError("Asset response contained no scenes")

    updated = []
    for index, scene in enumerate(story.scenes):
        if items is not None:
            backend_scene = items[index] if index < len(items) else None
        else:
            backend_scene = raw.get(f"scene_{index + 1}")
        if not isinstance(backend_scene, dict):
            updated.append(scene.model_copy())
            continue
        changes = {}
        image = resolve_image_reference(_first(backend_scene, IMAGE_KEYS))
        if image:
            changes["image_url"] = image
        audio = _first(backend_scene, AUDIO_KEYS)
        if audio:
            changes["audio_url"] = audio
        text = _scene_text(backend_scene)
        if text:
            changes["text"] = text
        updated.append(scene.model_copy(update=changes))
    return story.model_copy(update={"scenes": updated, "assets": _assets_from(raw, story.assets)})


def apply_refinement(story: Story, raw: Any, scope: str, excerpt_chars: int) -> Story:
    """Returns a copy of `story` with refined content merged into the scenes in scope."""
    targets = story.scenes if scope == "all" else story.scenes[:1]
    target_ids = {sc.id for sc in targets}

    if (_has_scene_keys(raw) or isinstance(raw, list)
            or (isinstance(raw, dict) and isinstance(raw.get("scenes"), list))):
        refined = extract_scenes(raw, len(story.scenes))
        if not refined:
            raise BackendLogicError("Refined story contained no scenes")
        texts = {sc.id: sc.text for sc in refined}

        def replace(sc: Scene) -> Optional[str]:
            return texts.get(sc.id)
    else:
        content = raw.get("refined_story") if isinstance(raw, dict) else raw
        if not isinstance(content, str) or not content.strip():
            raise BackendLogicError("Refinement response contained no refined story")
        content = content.strip()
        excerpt = content[:excerpt_chars] + ("..." if len(content) > excerpt_chars else "")

        def replace(sc: Scene) -> Optional[str]:
            return f"{sc.text}\n\n[Refined: {excerpt}]"

    scenes = []
    for sc in story.scenes:
        new_text = replace(sc) if sc.id in target_ids else None
        scenes.append(sc.model_copy(update={"text": new_text}) if new_text else sc.model_copy())
    return story.model_copy(update={"scenes": scenes})


def task_from_status(task_id: str, raw: Any, build_story: Callable[[Any], Story]) -> GenerationTask:
    """Parses a status payload; `build_story` turns an embedded story payload into a Story."""
    if not isinstance(raw, dict):
        raise BackendLogicError(f"Status response for task {task_id} was not a JSON object")
    try:
        task = GenerationTask(
            task_id=task_id,
            status=raw.get("status") or "pending",
            progress=raw.get("progress"),
            current_step=raw.get("currentStep") or raw.get("current_step") or raw.get("message") or "",
            error=str(raw["error"]) if raw.get("error") else None,
        )
    except ModelValidationError as e:
        raise BackendLogicError(f"Unrecognised status for task {task_id}: {raw.get('status')!r}") from e

    if raw.get("story") is not None:
        task.story = build_story(raw["story"])
    if task.status == TaskStatus.COMPLETED:
        task.progress = 100
        if task.story is None:
            raise BackendLogicError(f"Task {task_id} completed without a story")
    if task.status == TaskStatus.FAILED and not task.error:
        task.error = "Generation failed"
    return task


def unwrap_story(raw: Any) -> Any:
    """Some responses wrap the story payload as `{"status": ..., "story": {...}}`."""
    if isinstance(raw, dict) and isinstance(raw.get("story"), (dict, list)):
        return raw["story"]
    return raw


def accepted_task(raw: Any) -> Optional[GenerationTask]:
    """Returns the task a backend handed back for asynchronous work, or None if the response is the result itself."""
    if not isinstance(raw, dict):
        return None
    task_id = raw.get("taskId") or raw.get("task_id")
    if not task_id:
        return None
    # {taskId, story} with no status is a finished synchronous result
    status = str(raw.get("status") or "").strip().lower()
    if raw.get("story") is not None and status in ("", "completed", "succeeded"):
        return None
    estimated = raw.get("estimatedTime")
    try:
        return GenerationTask(
            task_id=str(task_id),
            status=raw.get("status") or "pending",
            progress=raw.get("progress"),
            current_step=raw.get("currentStep") or (f"Queued (about {estimated}s)" if estimated else "Queued"),
        )
    except ModelValidationError as e:
        raise BackendLogicError(f"Unrecognised status for task {task_id}: {raw.get('status')!r}") from e
