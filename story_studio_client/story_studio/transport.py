import asyncio, logging
from typing import Any, Dict, Optional

import httpx

from .errors import BackendLogicError, HttpError, NetworkError, RequestTimeout
from .settings import StoryClientConfig

logger = logging.getLogger(__name__)


def _error_message(response: httpx.Response) -> Optional[str]:
    # A body that fails to parse must never hide the status itself
    try:
        data = response.json()
    except ValueError:
        return None
    if isinstance(data, dict):
        detail = data.get("detail") or data.get("message") or data.get("error")
        if detail:
            return detail if isinstance(detail, str) else str(detail)
    return None


class TransportClient:
    """Timeboxed JSON-over-HTTP calls against the generation backend.

    Each call opens its own httpx.AsyncClient, so nothing is left running once
    `request` returns or raises. No retries happen here.
    """

    def __init__(self, config: StoryClientConfig, transport: Optional[httpx.AsyncBaseTransport] = None,
                 headers: Optional[Dict[str, str]] = None):
        self.config = config
        self._transport = transport
        self._headers = {"Content-Type": "application/json", **(headers or {})}

    @property
    def base_url(self) -> str:
        return self.config.base_url

    async def request(self, path: str, method: str = "GET", body: Any = None,
                      headers: Optional[Dict[str, str]] = None, timeout_ms: Optional[int] = None) -> Any:
        timeout_ms = timeout_ms or self.config.timeout_ms
        timeout_s = timeout_ms / 1000.0
        logger.info(f"{method} {path} (timeout {timeout_ms}ms)")
        try:
            # wait_for cancels the in-flight call on expiry; the httpx timeout covers each I/O phase
            response = await asyncio.wait_for(
                self._send(path, method, body, headers, timeout_s),
                timeout=timeout_s,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.error(f"{method} {path} timed out after {timeout_ms}ms")
            raise RequestTimeout(timeout_ms, path)
        except httpx.TransportError as e:
            logger.error(f"{method} {path} network failure: {e!r}")
            raise NetworkError() from e

        if response.status_code < 200 or response.status_code >= 300:
            message = _error_message(response)
            logger.error(f"{method} {path} failed {response.status_code}: {message or response.text[:200]}")
            raise HttpError(response.status_code, message)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise BackendLogicError(f"Backend returned a non-JSON response for {path}") from e

    async def _send(self, path: str, method: str, body: Any, headers: Optional[Dict[str, str]],
                    timeout_s: float) -> httpx.Response:
        async with httpx.AsyncClient(base_url=self.base_url, transport=self._transport,
                                     timeout=timeout_s) as client:
            return await client.request(
                method,
                path,
                headers={**self._headers, **(headers or {})},
                json=body,
            )
