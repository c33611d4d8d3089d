from .settings import StoryClientConfig
from .transport import TransportClient
from .api import StoryBackend
from .models import GenerationSettings, GenerationTask, Scene, Story, TaskStatus
from .normalizer import normalize
from .poller import CancellationToken, StatusPoller
from .orchestrator import StoryWorkflow, WorkflowState


def create_workflow(config: StoryClientConfig = None, transport=None) -> StoryWorkflow:
    config = config or StoryClientConfig.from_env()
    return StoryWorkflow(StoryBackend(TransportClient(config, transport=transport)), config)
