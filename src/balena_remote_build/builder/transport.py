from __future__ import annotations

import asyncio
import zlib
from typing import AsyncIterator

import httpx
import structlog

from balena_remote_build.core.exceptions import TransportError

logger = structlog.get_logger(__name__)

GZIP_LEVEL = 6
# wbits=31 selects the gzip container (16) with a 32 KiB window (15).
_GZIP_WBITS = 31


async def gzip_stream(chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    """Gzip-compress *chunks* on the fly."""
    compressor = zlib.compressobj(GZIP_LEVEL, zlib.DEFLATED, _GZIP_WBITS)
    async for chunk in chunks:
        compressed = compressor.compress(chunk)
        if compressed:
            yield compressed
    yield compressor.flush()


class UploadTransport:
    """One streaming ``POST`` of the project archive to the builder.

    :meth:`open` resolves once the response status line is in; any status
    outside ``[100, 400)`` raises :class:`TransportError` before the body is
    handed to a parser. :meth:`abort` tears the exchange down from another
    task, whether the request is still waiting for headers or streaming.

    Args:
        http_client: Optional pre-configured client. When omitted, the
            transport creates one and closes it in :meth:`close`.
        connect_timeout: Seconds allowed to establish the connection.
        read_timeout: Seconds allowed between two chunks of the response.
            ``None`` waits indefinitely, as builds can be silent for long
            stretches.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        connect_timeout: float = 30.0,
        read_timeout: float | None = None,
    ) -> None:
        self._http_client = http_client
        self._owns_client = http_client is None
        self._timeout = httpx.Timeout(None, connect=connect_timeout, read=read_timeout)
        self._send_task: asyncio.Future[httpx.Response] | None = None
        self._response: httpx.Response | None = None
        self._aborted = False

    @property
    def aborted(self) -> bool:
        return self._aborted

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def open(
        self,
        url: httpx.URL,
        auth_token: str,
        archive: AsyncIterator[bytes],
    ) -> httpx.Response:
        """Send the archive and return the open streaming response.

        Raises:
            TransportError: On a network failure or an HTTP status outside
                ``[100, 400)``. The message holds the status, reason and body.
        """
        if self._aborted:
            raise TransportError("Upload to the remote builder was aborted")

        client = self._ensure_client()
        request = client.build_request(
            "POST",
            url,
            headers={
                "Authorization": f"Bearer {auth_token}",
                "Content-Encoding": "gzip",
            },
            content=gzip_stream(archive),
            timeout=self._timeout,
        )
        logger.debug("builder.connecting", url=str(url))

        self._send_task = asyncio.ensure_future(client.send(request, stream=True))
        try:
            response = await self._send_task
        except httpx.HTTPError as exc:
            raise TransportError(f"Failed to reach the remote builder: {exc}") from exc
        finally:
            self._send_task = None

        self._response = response
        if 100 <= response.status_code < 400:
            logger.debug(
                "builder.response",
                status=response.status_code,
                reason=response.reason_phrase,
            )
            return response

        try:
            raw = await response.aread()
            body: str | None = raw.decode("utf-8", errors="replace") or None
        except httpx.HTTPError:
            body = None
        await response.aclose()
        logger.warning(
            "builder.http_error",
            status=response.status_code,
            reason=response.reason_phrase,
        )
        raise TransportError.from_response(
            response.status_code, response.reason_phrase, body
        )

    async def abort(self) -> None:
        """Forcibly stop the exchange. Safe to call at any point, repeatedly."""
        if self._aborted:
            return
        self._aborted = True
        logger.debug("builder.upload_aborted")
        if self._send_task is not None and not self._send_task.done():
            self._send_task.cancel()
        await self.close()

    async def close(self) -> None:
        """Release the response and, when owned, the HTTP client."""
        if self._response is not None:
            response, self._response = self._response, None
            try:
                await response.aclose()
            except httpx.HTTPError as exc:
                logger.debug("builder.response_close_failed", error=str(exc))
        if self._owns_client and self._http_client is not None:
            client, self._http_client = self._http_client, None
            await client.aclose()
