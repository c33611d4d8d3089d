import asyncio, logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .api import StoryBackend
from .errors import (
    BackendLogicError, ValidationError, WorkflowStateError, WorkflowStepError,
)
from .models import GenerationSettings, GenerationTask, Scene, ShareLink, Story, StoryAssets, TaskStatus
from .normalizer import (
    IMAGE_KEYS, accepted_task, apply_refinement, merge_scene_assets, normalize, resolve_image_reference,
    task_from_status, unwrap_story,
)
from .poller import CancellationToken, StatusPoller
from .settings import StoryClientConfig

logger = logging.getLogger(__name__)


class WorkflowState(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    POLLING_GENERATION = "polling_generation"
    PREVIEW_READY = "preview_ready"
    REFINING = "refining"
    SUBMITTING_ASSETS = "submitting_assets"
    POLLING_ASSETS = "polling_assets"
    COMPLETE = "complete"
    FAILED = "failed"


POLLING_STATES = (WorkflowState.POLLING_GENERATION, WorkflowState.POLLING_ASSETS)


class StoryWorkflow:
    """Drives one story from settings to finished, illustrated scenes.

    settings -> generate -> preview -> (refine)* -> assets -> complete

    Only one submit/refine/confirm can be in flight at a time: each of them
    leaves the accepting state before its first network call, so an
    overlapping call is rejected with WorkflowStateError. Work that was
    abandoned through cancel() or reset() never mutates state afterwards.
    """

    def __init__(self, backend: StoryBackend, config: Optional[StoryClientConfig] = None):
        self.backend = backend
        self.config = config or backend.config
        self.state = WorkflowState.IDLE
        self.settings: Optional[GenerationSettings] = None
        self.preview_story: Optional[Story] = None
        self.story: Optional[Story] = None
        self.task: Optional[GenerationTask] = None
        self.last_error: Optional[WorkflowStepError] = None
        self.refinements: List[str] = []

        self._epoch = 0
        self._token: Optional[CancellationToken] = None
        self._poll_task: Optional[asyncio.Task] = None

        self._state_listeners: List[Callable] = []
        self._task_listeners: List[Callable] = []
        self._error_listeners: List[Callable] = []

    # -- listeners -----------------------------------------------------------

    def add_state_listener(self, callback: Callable[[WorkflowState, WorkflowState], Any]):
        self._state_listeners.append(callback)

    def add_task_listener(self, callback: Callable[[GenerationTask], Any]):
        self._task_listeners.append(callback)

    def add_error_listener(self, callback: Callable[[WorkflowStepError], Any]):
        self._error_listeners.append(callback)

    async def _call_async_or_sync(self, func: Callable, *args):
        result = func(*args)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    async def _notify(self, listeners: List[Callable], *args):
        for callback in list(listeners):
            try:
                await self._call_async_or_sync(callback, *args)
            except Exception as e:
                logger.warning(f"Workflow listener failed: {e}")

    async def _set_state(self, new_state: WorkflowState):
        old_state = self.state
        self.state = new_state
        logger.info(f"Workflow state: {old_state.value} -> {new_state.value}")
        await self._notify(self._state_listeners, old_state, new_state)

    # -- helpers -------------------------------------------------------------

    def _require(self, operation: str, *allowed: WorkflowState):
        if self.state not in allowed:
            raise WorkflowStateError(operation, self.state)

    def _stale(self, epoch: int) -> bool:
        return epoch != self._epoch

    async def _record_failure(self, step: str, error: Exception, epoch: int,
                              failed_state: bool = True) -> WorkflowStepError:
        wrapped = error if isinstance(error, WorkflowStepError) else WorkflowStepError(step, error)
        if self._stale(epoch):
            logger.info(f"Ignoring failure of abandoned step {step}: {error}")
            return wrapped
        logger.error(f"Workflow step {step} failed: {error}")
        self.last_error = wrapped
        if failed_state:
            self.task = None
            await self._set_state(WorkflowState.FAILED)
        await self._notify(self._error_listeners, wrapped)
        return wrapped

    async def _restore_after_cancel(self, epoch: int, state: WorkflowState):
        # The caller's own task was cancelled mid-call; drop back to where it started
        if not self._stale(epoch):
            self._epoch += 1
            await self._set_state(state)

    def _scene(self, scene_id: int) -> Scene:
        scene = self.story.scene(scene_id) if self.story else None
        if scene is None:
            raise ValidationError(f"Scene {scene_id} does not exist")
        return scene

    # -- settings ------------------------------------------------------------

    def available_art_styles(self) -> List[str]:
        return list(self.config.supported_art_styles)

    def is_art_style_supported(self, art_style: str) -> bool:
        return self.config.is_art_style_supported(art_style)

    def validate_settings(self, settings: GenerationSettings) -> GenerationSettings:
        idea = (settings.story_idea or "").strip()
        if len(idea) < self.config.min_story_idea_length:
            raise ValidationError(
                f"Please enter a detailed story idea (at least {self.config.min_story_idea_length} characters)"
            )
        if not self.config.min_scenes <= settings.num_scenes <= self.config.max_scenes:
            raise ValidationError(
                f"Number of scenes must be between {self.config.min_scenes} and {self.config.max_scenes}"
            )
        if not self.is_art_style_supported(settings.art_style):
            if self.config.art_style_policy == "reject":
                raise ValidationError(
                    f"Art style '{settings.art_style}' is not supported. "
                    f"Choose one of: {', '.join(self.config.supported_art_styles)}"
                )
            logger.warning(
                f"Art style '{settings.art_style}' not supported, using '{self.config.default_art_style}'"
            )
            settings = settings.model_copy(update={"art_style": self.config.default_art_style})
        elif settings.art_style != settings.art_style.lower():
            settings = settings.model_copy(update={"art_style": settings.art_style.lower()})
        return settings

    # -- connectivity --------------------------------------------------------

    async def check_connectivity(self) -> Any:
        """Probes the backend's health endpoint. Never changes workflow state."""
        try:
            return await self.backend.check_health()
        except Exception as e:
            raise await self._record_failure("health_check", e, self._epoch, failed_state=False) from e

    # -- generation ----------------------------------------------------------

    async def submit_story(self, settings: GenerationSettings) -> WorkflowState:
        self._require("submit a story", WorkflowState.IDLE, WorkflowState.FAILED)
        settings = self.validate_settings(settings)
        start_state = self.state
        self._epoch += 1
        epoch = self._epoch
        self.settings = settings
        self.last_error = None
        self.refinements = []
        self._poll_task = None
        await self._set_state(WorkflowState.SUBMITTING)

        try:
            response = await self.backend.generate(settings)
            task = accepted_task(response)
            preview = None if task else normalize(unwrap_story(response), settings.num_scenes, settings)
        except asyncio.CancelledError:
            await self._restore_after_cancel(epoch, start_state)
            raise
        except Exception as e:
            raise await self._record_failure("generate", e, epoch) from e

        if self._stale(epoch):
            logger.info("Generation response arrived for an abandoned workflow, dropping it")
            return self.state

        if task is not None:
            logger.info(f"Generation accepted as task {task.task_id}")
            self.task = task
            await self._set_state(WorkflowState.POLLING_GENERATION)
            self._start_polling(
                task.task_id, "poll_generation", epoch,
                lambda raw: normalize(raw, settings.num_scenes, settings),
            )
            return self.state

        logger.info(f"Story generated synchronously with {len(preview.scenes)} scenes")
        self.preview_story = preview
        await self._set_state(WorkflowState.PREVIEW_READY)
        return self.state

    async def refine_story(self, prompt: str, current_story: Optional[Story] = None) -> Story:
        self._require("refine the story", WorkflowState.PREVIEW_READY)
        story = current_story or self.preview_story
        prompt = (prompt or "").strip()
        if not prompt:
            # Nothing to refine: keep the story and move on
            logger.info("Empty refinement prompt, keeping story as is")
            self.refinements.append("")
            await self._set_state(WorkflowState.PREVIEW_READY)
            return story

        epoch = self._epoch
        await self._set_state(WorkflowState.REFINING)
        try:
            response = await self.backend.refine(prompt, story)
            refined = apply_refinement(
                story, response, self.config.refine_scope, self.config.refine_excerpt_chars
            )
        except asyncio.CancelledError:
            await self._restore_after_cancel(epoch, WorkflowState.PREVIEW_READY)
            raise
        except Exception as e:
            raise await self._record_failure("refine", e, epoch) from e

        if self._stale(epoch):
            return story
        self.preview_story = refined
        self.refinements.append(prompt)
        await self._set_state(WorkflowState.PREVIEW_READY)
        return refined

    async def confirm_assets(self, story: Optional[Story] = None) -> WorkflowState:
        self._require("generate scene assets", WorkflowState.PREVIEW_READY)
        story = story or self.preview_story
        self._poll_task = None
        self.preview_story = story
        art_style = story.metadata.art_style or self.config.default_art_style
        epoch = self._epoch
        await self._set_state(WorkflowState.SUBMITTING_ASSETS)

        try:
            response = await self.backend.generate_assets(story, art_style)
            task = accepted_task(response)
            full_story = None if task else merge_scene_assets(story, unwrap_story(response))
        except asyncio.CancelledError:
            await self._restore_after_cancel(epoch, WorkflowState.PREVIEW_READY)
            raise
        except Exception as e:
            raise await self._record_failure("assets", e, epoch) from e

        if self._stale(epoch):
            return self.state

        if task is not None:
            logger.info(f"Asset generation accepted as task {task.task_id}")
            self.task = task
            await self._set_state(WorkflowState.POLLING_ASSETS)
            self._start_polling(
                task.task_id, "poll_assets", epoch,
                lambda raw: merge_scene_assets(story, raw),
            )
            return self.state

        self.story = full_story
        await self._set_state(WorkflowState.COMPLETE)
        return self.state

    # -- polling -------------------------------------------------------------

    def _start_polling(self, task_id: str, step: str, epoch: int, build_story: Callable[[Any], Story]):
        async def fetch(tid: str) -> GenerationTask:
            raw = await self.backend.get_status(tid)
            return task_from_status(tid, raw, build_story)

        token = CancellationToken()
        poller = StatusPoller(fetch, self.config.poll_interval_ms)
        self._token = token
        self._poll_task = asyncio.create_task(self._run_poll(poller, task_id, step, epoch, token))

    async def _run_poll(self, poller: StatusPoller, task_id: str, step: str, epoch: int,
                        token: CancellationToken) -> Optional[Story]:
        try:
            async for task in poller.poll(task_id, token):
                if token.cancelled or self._stale(epoch):
                    return None
                self.task = task
                await self._notify(self._task_listeners, task)
                if token.cancelled or self._stale(epoch):
                    return None
                if task.status == TaskStatus.FAILED:
                    raise BackendLogicError(task.error or "Generation failed")
                if task.status == TaskStatus.COMPLETED:
                    self.task = None
                    if step == "poll_generation":
                        self.preview_story = task.story
                        await self._set_state(WorkflowState.PREVIEW_READY)
                    else:
                        self.story = task.story
                        await self._set_state(WorkflowState.COMPLETE)
                    return task.story
        except Exception as e:
            if not token.cancelled:
                await self._record_failure(step, e, epoch)
        return None

    def _stop_polling(self):
        if self._token is not None:
            self._token.cancel()
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        self._token = None

    async def wait(self) -> Optional[Story]:
        """Waits for the current polling task and returns the story it produced."""
        poll_task = self._poll_task
        if poll_task is None:
            return self.story or self.preview_story
        await asyncio.wait({poll_task})
        if poll_task.cancelled():
            return None
        if self.state == WorkflowState.FAILED and self.last_error is not None:
            raise self.last_error
        return poll_task.result()

    async def cancel(self) -> WorkflowState:
        """Stops polling and returns to the last stable state. The remote task is left alone."""
        self._require("cancel", *POLLING_STATES)
        logger.info(f"Cancelling task {self.task.task_id if self.task else '?'}")
        self._epoch += 1
        self._stop_polling()
        self.task = None
        if self.state == WorkflowState.POLLING_ASSETS:
            await self._set_state(WorkflowState.PREVIEW_READY)
        else:
            await self._set_state(WorkflowState.IDLE)
        return self.state

    async def reset(self) -> WorkflowState:
        """Abandons whatever is in flight and starts a fresh workflow instance."""
        self._epoch += 1
        self._stop_polling()
        self._poll_task = None
        self.settings = None
        self.preview_story = None
        self.story = None
        self.task = None
        self.last_error = None
        self.refinements = []
        await self._set_state(WorkflowState.IDLE)
        return self.state

    # -- finished story ------------------------------------------------------

    async def edit_scene(self, scene_id: int, text: str) -> Scene:
        """Updates scene text locally first; a failed sync keeps the edit (last writer wins)."""
        self._require("edit a scene", WorkflowState.COMPLETE)
        text = (text or "").strip()
        if not text:
            raise ValidationError("Scene text cannot be empty")
        scene = self._scene(scene_id)
        scene.text = text

        if self.story.id_source == "local":
            logger.info(f"Story {self.story.id} only exists locally, not syncing scene {scene_id}")
            return scene
        try:
            await self.backend.update_scene(self.story.id, scene_id, {"text": text})
        except Exception as e:
            raise await self._record_failure("edit_scene", e, self._epoch, failed_state=False) from e
        return scene

    async def regenerate_scene_image(self, scene_id: int, prompt: Optional[str] = None) -> Scene:
        self._require("regenerate an image", WorkflowState.COMPLETE)
        scene = self._scene(scene_id)
        if prompt and prompt.strip():
            scene.image_prompt = prompt.strip()

        try:
            response = await self.backend.regenerate_image(
                self.story.id, scene_id, scene.image_prompt, self.story.metadata.art_style
            )
            data = response if isinstance(response, dict) else {}
            image = resolve_image_reference(next((data[k] for k in IMAGE_KEYS if data.get(k)), None))
            if not image:
                raise BackendLogicError("Image regeneration returned no image")
        except Exception as e:
            raise await self._record_failure("regenerate_image", e, self._epoch, failed_state=False) from e

        scene.image_url = image
        return scene

    async def create_share_link(self, options: Optional[Dict[str, Any]] = None) -> ShareLink:
        self._require("share the story", WorkflowState.COMPLETE)
        try:
            response = await self.backend.create_share_link(self.story.id, options)
            if not isinstance(response, dict) or not response.get("shareUrl"):
                raise BackendLogicError("Share response contained no link")
            return ShareLink.model_validate(response)
        except Exception as e:
            raise await self._record_failure("share", e, self._epoch, failed_state=False) from e

    def pdf_download_url(self) -> str:
        self._require("download the story", WorkflowState.COMPLETE)
        assets = self.story.assets or StoryAssets()
        if not assets.pdf_url:
            assets = assets.model_copy(update={"pdf_url": self.backend.pdf_download_url(self.story.id)})
            self.story.assets = assets
        return assets.pdf_url
