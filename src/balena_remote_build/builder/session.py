from __future__ import annotations

from typing import Any

import httpx
import structlog

from balena_remote_build.api.releases import ReleaseCanceller
from balena_remote_build.builder.cancellation import CancellationCoordinator, CancellationToken
from balena_remote_build.builder.endpoint import get_builder_endpoint
from balena_remote_build.builder.metadata import MetadataInterpreter
from balena_remote_build.builder.packager import DirectoryPackager, Packager
from balena_remote_build.builder.state import BuildSessionState
from balena_remote_build.builder.stream import InterruptibleSource, ResponseDemultiplexer
from balena_remote_build.builder.transport import UploadTransport
from balena_remote_build.core.config import BuildRequest, ClientConfig
from balena_remote_build.core.constants import SessionState
from balena_remote_build.core.exceptions import BuildFailedError
from balena_remote_build.core.types import HeadlessResult
from balena_remote_build.ui.progress import NullProgressUI, ProgressUI
from balena_remote_build.utils.async_helpers import run_sync

logger = structlog.get_logger(__name__)


class BuildSession:
    """Run one remote build from upload to a release id.

    The session owns its :class:`BuildSessionState`; the metadata
    interpreter and the cancellation coordinator only reach it through the
    state's setters and getters.

    Usage::

        token = CancellationToken()
        async with ReleaseClient(api_url, auth_token) as api:
            session = BuildSession(request, release_client=api, token=token)
            release_id = await session.run()

    Raises from :meth:`run`:
        TransportError: The builder could not be reached or answered with an
            HTTP error status.
        StreamParseError: The builder response was not what the mode expects.
        BuildFailedError: The interactive stream reported a build error.
        InterruptedError: The token was cancelled while the session ran.
    """

    def __init__(
        self,
        request: BuildRequest,
        *,
        release_client: ReleaseCanceller,
        token: CancellationToken | None = None,
        ui: ProgressUI | None = None,
        packager: Packager | None = None,
        transport: UploadTransport | None = None,
        config: ClientConfig | None = None,
    ) -> None:
        self._request = request
        self._config = config or ClientConfig()
        self._token = token or CancellationToken()
        self._ui: ProgressUI = ui or NullProgressUI()
        self._packager: Packager = packager or DirectoryPackager()
        self._transport = transport or UploadTransport(
            read_timeout=self._config.upload_timeout
        )
        self._state = BuildSessionState()
        self._status = SessionState.IDLE
        self._headless_result: HeadlessResult | None = None
        self._upload_indicator_active = False
        self._demux = ResponseDemultiplexer(request.options.headless)
        self._interpreter = MetadataInterpreter(
            self._state, self._ui, debug=self._config.debug
        )
        self._coordinator = CancellationCoordinator(
            self._token,
            state=self._state,
            transport=self._transport,
            release_client=release_client,
            ui=self._ui,
            debug=self._config.debug,
        )

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    @property
    def status(self) -> SessionState:
        return self._status

    @property
    def release_id(self) -> int | None:
        return self._state.release_id

    @property
    def had_error(self) -> bool:
        return self._state.had_error

    @property
    def headless_result(self) -> HeadlessResult | None:
        """The builder's answer in headless mode, including ``error``/``message``."""
        return self._headless_result

    @property
    def token(self) -> CancellationToken:
        return self._token

    # ------------------------------------------------------------------ #
    # Run
    # ------------------------------------------------------------------ #

    async def run(self) -> int | None:
        """Upload the project and follow the build.

        Returns the release id, or ``None`` when none was assigned (e.g. a
        headless request the builder refused; see :attr:`headless_result`).
        """
        if self._status is not SessionState.IDLE:
            raise RuntimeError("BuildSession.run() can only be called once")

        self._coordinator.arm()
        try:
            release_id = await self._drive()
        except BaseException as exc:
            if self._coordinator.triggered:
                self._settle(SessionState.CANCELLED)
                if exc is self._coordinator.error:
                    raise
                raise self._coordinator.error from exc
            self._settle(SessionState.FAILED)
            raise
        finally:
            self._coordinator.disarm()
            await self._coordinator.wait()
            await self._transport.close()
            self._stop_upload_indicator()

        if self._coordinator.triggered:
            self._settle(SessionState.CANCELLED)
            raise self._coordinator.error
        return release_id

    async def _drive(self) -> int | None:
        request = self._request
        options = request.options
        self._status = SessionState.UPLOADING

        url = get_builder_endpoint(request.base_url, request.app_slug, options)
        self._upload_indicator_active = True
        self._ui.upload_started(_origin(url))
        logger.info(
            "builder.upload_started",
            app_slug=request.app_slug,
            headless=options.headless,
        )

        archive = self._packager.package(request.source, options)
        response = await self._transport.open(url, request.auth_token, archive)

        self._status = (
            SessionState.HEADLESS_WAITING if options.headless else SessionState.STREAMING
        )
        source: InterruptibleSource[bytes] = InterruptibleSource(response.aiter_bytes())
        self._coordinator.attach(source)

        async for event in self._demux.events(source):
            self._stop_upload_indicator()
            if isinstance(event, HeadlessResult):
                self._apply_headless(event)
            else:
                self._interpreter.handle(event)

        if options.headless:
            return self._finish_headless()

        if self._state.had_error:
            raise BuildFailedError()
        self._settle(SessionState.COMPLETED)
        return self._state.release_id

    def _apply_headless(self, result: HeadlessResult) -> None:
        self._headless_result = result
        self._ui.headless_result(result)
        if result.started and result.release_id is not None:
            self._state.assign_release_id(result.release_id)

    def _finish_headless(self) -> int | None:
        result = self._headless_result
        if result is None or not result.started:
            logger.info(
                "builder.headless_rejected",
                error=result.error if result else None,
                message=result.message if result else None,
            )
            self._settle(SessionState.FAILED)
            return None
        self._settle(SessionState.COMPLETED)
        return self._state.release_id

    def _settle(self, status: SessionState) -> None:
        self._status = status
        logger.info(
            "builder.session_settled",
            status=str(status),
            release_id=self._state.release_id,
        )

    def _stop_upload_indicator(self) -> None:
        if self._upload_indicator_active:
            self._upload_indicator_active = False
            self._ui.upload_finished()

    def __repr__(self) -> str:
        return (
            f"BuildSession(app_slug={self._request.app_slug!r}, "
            f"status={self._status!r}, release_id={self._state.release_id!r})"
        )


def _origin(url: httpx.URL) -> str:
    return f"{url.scheme}://{url.netloc.decode('ascii')}"


async def start_remote_build(
    request: BuildRequest,
    *,
    release_client: ReleaseCanceller,
    **kwargs: Any,
) -> int | None:
    """Create a :class:`BuildSession` for *request* and run it.

    Extra keyword arguments are passed to :class:`BuildSession`.
    """
    session = BuildSession(request, release_client=release_client, **kwargs)
    return await session.run()


def start_remote_build_sync(
    request: BuildRequest,
    *,
    release_client: ReleaseCanceller,
    **kwargs: Any,
) -> int | None:
    """Blocking variant of :func:`start_remote_build`."""
    return run_sync(start_remote_build(request, release_client=release_client, **kwargs))
