"""Shared HTTP plumbing for the *arr library managers (Radarr, Sonarr)."""

import logging
from typing import Any, Optional

import httpx

from errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


class ArrClient:
    """One long-lived ``httpx.AsyncClient`` per library manager.

    Base URL and API key are fixed at construction; nothing is re-read per call.
    """

    service = "arr"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers={"X-Api-Key": api_key},
            timeout=timeout,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.base_url and self.api_key)

    async def _get(self, path: str, params: Optional[dict] = None, allow_404: bool = False) -> Any:
        """GET a JSON resource. Returns None for a 404 when ``allow_404`` is set."""
        try:
            resp = await self._client.get(path, params=params)
        except httpx.HTTPError as e:
            logger.warning("%s request %s failed: %s", self.service, path, e)
            raise UpstreamUnavailable(self.service, str(e)) from e

        if allow_404 and resp.status_code == 404:
            return None
        if resp.is_error:
            logger.warning("%s %s returned HTTP %d", self.service, path, resp.status_code)
            raise UpstreamUnavailable(
                self.service, f"HTTP {resp.status_code} from {path}", resp.status_code,
            )

        try:
            return resp.json()
        except ValueError as e:
            raise UpstreamUnavailable(self.service, f"invalid JSON from {path}") from e

    async def aclose(self) -> None:
        await self._client.aclose()
