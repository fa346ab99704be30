"""HTTP client for the GASSAPI backend."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from .config import GassapiConfig
from .constants import DEFAULT_BACKEND_URL, DEFAULT_REQUEST_TIMEOUT, USER_AGENT
from .exceptions import BackendError
from .flows.models import FlowDefinition

logger = logging.getLogger(__name__)


class BackendClient:
    """Fetches flow definitions and environments from the backend.

    Every backend call goes to ``<base_url>/index.php?act=<action>&id=<id>``
    and answers with an envelope ``{"success": bool, "data": ..., "message": ...}``.
    """

    def __init__(
        self,
        token: str,
        base_url: str = DEFAULT_BACKEND_URL,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._client = client or httpx.AsyncClient()
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }

    @classmethod
    def from_config(
        cls, config: GassapiConfig, client: Optional[httpx.AsyncClient] = None
    ) -> "BackendClient":
        token = config.get_token()
        if not token:
            raise BackendError("No backend token configured")
        return cls(token, config.server.url, config.server.timeout, client=client)

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        action: str,
        method: str = "GET",
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> Any:
        query = {"act": action, **(params or {})}
        url = f"{self._base_url}/index.php"
        try:
            response = await self._client.request(
                method,
                url,
                params=query,
                json=json,
                headers=self._headers,
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise BackendError(f"Backend request timed out: {action}") from exc
        except httpx.HTTPError as exc:
            raise BackendError(f"Backend request failed: {exc}") from exc

        if response.is_error:
            raise BackendError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                status=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise BackendError(f"Backend returned invalid JSON for {action}") from exc

        if isinstance(payload, dict):
            if payload.get("success") is False:
                raise BackendError(
                    payload.get("message") or payload.get("error") or "Request failed",
                    status=response.status_code,
                )
            data = payload.get("data", payload)
            # some actions wrap the record twice
            if isinstance(data, dict) and isinstance(data.get("data"), (dict, list)):
                data = data["data"]
            return data
        return payload

    async def get_flow(self, flow_id: str) -> FlowDefinition:
        data = await self._request("flow", params={"id": flow_id})
        if not isinstance(data, dict):
            raise BackendError(f"Unexpected flow payload for {flow_id}")
        logger.debug(f"Fetched flow {flow_id}")
        return FlowDefinition.from_backend(data)

    async def list_flows(self, project_id: str, **filters: Any) -> List[Dict[str, Any]]:
        data = await self._request("flows", params={"id": project_id, **filters})
        return data if isinstance(data, list) else []

    async def get_environment_variables(self, environment_id: str) -> Dict[str, str]:
        data = await self._request("environment", params={"id": environment_id})
        if not isinstance(data, dict):
            return {}
        variables = data.get("variables") or {}
        if isinstance(variables, list):
            # [{"key": ..., "value": ..., "enabled": ...}]
            return {
                item["key"]: str(item.get("value", ""))
                for item in variables
                if isinstance(item, dict) and item.get("key") and item.get("enabled", True)
            }
        return {str(k): str(v) for k, v in variables.items()}
