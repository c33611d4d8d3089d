import httpx
import pytest

from story_studio import GenerationSettings, StoryBackend, StoryClientConfig, StoryWorkflow, TransportClient

from fake_backend import create_app

BASE_URL = "http://backend.test"


@pytest.fixture
def config():
    return StoryClientConfig(base_url=BASE_URL, timeout_ms=2000, health_timeout_ms=500, poll_interval_ms=10)


@pytest.fixture
def settings():
    return GenerationSettings(story_idea="A girl finds a door", num_scenes=3, art_style="anime")


@pytest.fixture
def backend_state():
    """Mutable knobs and call log for the fake backend"""
    return {"calls": []}


def asgi_workflow(config, backend_state):
    """Workflow talking to the fake FastAPI backend in-process"""
    transport = httpx.ASGITransport(app=create_app(backend_state))
    return StoryWorkflow(StoryBackend(TransportClient(config, transport=transport)), config)


@pytest.fixture
def workflow(config, backend_state):
    return asgi_workflow(config, backend_state)


def mock_workflow(config, handler):
    """Workflow whose HTTP calls are answered by `handler(request)`"""
    transport = httpx.MockTransport(handler)
    return StoryWorkflow(StoryBackend(TransportClient(config, transport=transport)), config)
