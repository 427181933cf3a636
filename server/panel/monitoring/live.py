import logging
from typing import Any, Optional

import httpx

from ..config import Settings
from ..core.errors import FetchFailed, PanelError
from .transport import AwsControlPlane

logger = logging.getLogger(__name__)


class LiveDataFetcher:
    """Direct HTTP reads from the agent's API on the monitored host (the fast path)."""

    def __init__(self, transport: AwsControlPlane, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.transport = transport
        self.settings = settings
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.fetch_timeout, connect=self.settings.probe_timeout),
                headers={"Accept": "application/json"},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def base_url(self, host_id: str) -> str:
        if self.settings.agent_address_override:
            return self.settings.agent_address_override.rstrip("/")
        try:
            instance = await self.transport.describe_instance(host_id)
        except PanelError as exc:
            raise FetchFailed(exc.message, cause=exc) from exc
        if not instance.public_ip:
            raise FetchFailed("Could not determine public IP address for the instance")
        return f"http://{instance.public_ip}:{self.settings.agent_api_port}"

    async def fetch_direct(self, host_id: str, endpoint_path: str = "/live/summary") -> Any:
        url = await self.base_url(host_id) + "/" + endpoint_path.lstrip("/")
        logger.debug("Fetching %s for %s", url, host_id)
        try:
            r = await self.client.get(url)
            r.raise_for_status()
            data = r.json()
        except httpx.TimeoutException as exc:
            raise FetchFailed("Request to agent HTTP endpoint timed out", cause=exc) from exc
        except httpx.ConnectError as exc:
            raise FetchFailed(
                f"Could not connect to agent at {url}. Make sure the agent is running and "
                f"port {self.settings.agent_api_port} is accessible.",
                cause=exc,
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise FetchFailed(
                f"Agent HTTP endpoint returned {exc.response.status_code}: {exc.response.text[:500]}",
                cause=exc,
            ) from exc
        except httpx.HTTPError as exc:
            raise FetchFailed(f"Request to agent HTTP endpoint failed: {exc}", cause=exc) from exc
        except ValueError as exc:
            raise FetchFailed("Agent HTTP endpoint returned invalid JSON", cause=exc) from exc
        return data
