"""Release resource calls against the backend API."""
from __future__ import annotations

import time
from typing import Any, Protocol, runtime_checkable

import httpx
import structlog

from balena_remote_build.core.config import ClientConfig
from balena_remote_build.core.constants import ReleaseStatus
from balena_remote_build.core.exceptions import CancellationError

logger = structlog.get_logger(__name__)

# Only releases that have not already succeeded may be cancelled, which
# also makes a repeated cancel a no-op.
NOT_SUCCEEDED_FILTER = f"status ne '{ReleaseStatus.SUCCESS}'"


@runtime_checkable
class ReleaseCanceller(Protocol):
    """Structural type for anything that can cancel a release by id."""

    async def cancel_release(self, release_id: int) -> None: ...


class ReleaseClient:
    """Minimal client for the backend's ``release`` resource.

    Usage::

        async with ReleaseClient("https://api.balena-cloud.com", token) as api:
            await api.cancel_release(4821)
    """

    def __init__(
        self,
        api_url: str,
        auth_token: str,
        *,
        api_version: str = "v7",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._auth_token = auth_token
        self._api_version = api_version
        self._timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None

    @classmethod
    def from_config(cls, config: ClientConfig, auth_token: str) -> ReleaseClient:
        return cls(
            config.api_url,
            auth_token,
            api_version=config.api_version,
            timeout=config.timeout,
        )

    def release_path(self, release_id: int) -> str:
        return f"{self._api_url}/{self._api_version}/release({release_id})"

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def cancel_release(self, release_id: int) -> None:
        """Mark a release as cancelled unless it has already succeeded.

        Raises:
            CancellationError: On a network failure or an HTTP error status.
        """
        client = self._ensure_client()
        body: dict[str, Any] = {
            "status": ReleaseStatus.CANCELLED.value,
            "end_timestamp": int(time.time() * 1000),
        }
        try:
            response = await client.patch(
                self.release_path(release_id),
                params={"$filter": NOT_SUCCEEDED_FILTER},
                json=body,
                headers={"Authorization": f"Bearer {self._auth_token}"},
            )
        except httpx.HTTPError as exc:
            raise CancellationError(
                f"Release cancel request failed for {release_id}: {exc}"
            ) from exc

        if response.status_code >= 400:
            raise CancellationError(
                f"API returned HTTP {response.status_code} cancelling release {release_id}",
                code=str(response.status_code),
                details={"raw": response.text},
                status_code=response.status_code,
            )
        logger.info("release.cancelled", release_id=release_id)

    async def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> ReleaseClient:
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()
