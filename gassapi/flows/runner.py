"""Step runners: the HTTP side of flow execution."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Protocol

import httpx

from ..constants import DEFAULT_REQUEST_TIMEOUT, USER_AGENT
from ..exceptions import StepExecutionError
from .models import StepRequest, StepResponse

logger = logging.getLogger(__name__)

_BODY_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


class StepRunner(Protocol):
    """Executes one materialized request."""

    async def execute(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        timeout: Optional[float] = None,
    ) -> StepResponse:
        """Send the request and return the raw response.

        Raises:
            StepExecutionError: On network failure or timeout.
        """


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    if "json" in response.headers.get("content-type", ""):
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


class HttpxStepRunner:
    """Run steps over an ``httpx.AsyncClient``."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        default_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        default_headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self._client = client or httpx.AsyncClient()
        self._default_timeout = default_timeout
        self._default_headers = {"User-Agent": USER_AGENT, **(default_headers or {})}

    async def __aenter__(self) -> "HttpxStepRunner":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def execute(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        timeout: Optional[float] = None,
    ) -> StepResponse:
        method = method.upper()
        timeout = timeout or self._default_timeout
        request_headers = {**self._default_headers, **(headers or {})}

        kwargs: Dict[str, Any] = {}
        if body is not None and method in _BODY_METHODS:
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["content"] = str(body)

        logger.debug(f"{method} {url}")
        start = time.perf_counter()
        try:
            response = await self._client.request(
                method, url, headers=request_headers, timeout=timeout, **kwargs
            )
        except httpx.TimeoutException as exc:
            raise StepExecutionError(f"Request timeout after {timeout}s") from exc
        except httpx.InvalidURL as exc:
            raise StepExecutionError(f"Invalid URL: {url}") from exc
        except httpx.HTTPError as exc:
            raise StepExecutionError(f"Network error: {exc}") from exc

        return StepResponse(
            status=response.status_code,
            headers=dict(response.headers),
            body=_decode_body(response),
            elapsed_ms=(time.perf_counter() - start) * 1000,
        )


class DryRunStepRunner:
    """Records requests instead of sending them; every request gets a 200."""

    def __init__(self) -> None:
        self.requests: List[StepRequest] = []

    async def execute(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        timeout: Optional[float] = None,
    ) -> StepResponse:
        self.requests.append(
            StepRequest(
                method=method, url=url, headers=headers or {}, body=body, timeout=timeout
            )
        )
        return StepResponse(status=200)
