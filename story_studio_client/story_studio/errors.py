"""
Error taxonomy for the story generation client.

Transport and normalizer errors propagate unchanged to the workflow, which
wraps them in WorkflowStepError with the name of the step that failed.
"""
from typing import Optional


class StoryClientError(Exception):
    """Base exception for story client errors"""
    pass


class ValidationError(StoryClientError):
    """Bad user input, rejected before anything reaches the network"""
    pass


class TransportError(StoryClientError):
    """Base exception for failures of a single HTTP call"""
    pass


class RequestTimeout(TransportError):
    def __init__(self, timeout_ms: int, path: str = ""):
        super().__init__("Request timed out. Please try again.")
        self.timeout_ms = timeout_ms
        self.path = path


class NetworkError(TransportError):
    def __init__(self, message: str = "Network error. Please check your connection and try again."):
        super().__init__(message)


class HttpError(TransportError):
    def __init__(self, status: int, message: Optional[str] = None):
        self.status = status
        self.message = message or f"HTTP error! status: {status}"
        super().__init__(self.message)


class BackendLogicError(StoryClientError):
    """Well-formed HTTP success carrying an empty or malformed payload"""
    pass


class WorkflowStateError(StoryClientError):
    """An operation was invoked from a state that does not allow it"""
    def __init__(self, operation: str, state):
        state_name = getattr(state, "value", state)
        super().__init__(f"Cannot {operation} while workflow is {state_name}")
        self.operation = operation
        self.state = state


class WorkflowStepError(StoryClientError):
    """Raised by the workflow when a step fails; keeps the original error as `cause`"""

    STEP_LABELS = {
        "health_check": "Server is not responding",
        "generate": "Story generation failed",
        "poll_generation": "Story generation failed",
        "refine": "Story refinement failed",
        "assets": "Image generation failed",
        "poll_assets": "Image generation failed",
        "edit_scene": "Scene update failed",
        "regenerate_image": "Image regeneration failed",
        "share": "Share link creation failed",
    }

    def __init__(self, step: str, cause: Exception):
        label = self.STEP_LABELS.get(step, f"Step '{step}' failed")
        super().__init__(f"{label}: {cause}")
        self.step = step
        self.cause = cause
