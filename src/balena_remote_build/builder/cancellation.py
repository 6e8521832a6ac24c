"""Interrupt handling for a running build session.

The host application owns a :class:`CancellationToken` and calls
:meth:`CancellationToken.cancel` when the user interrupts (see
:func:`balena_remote_build.utils.signals.install_interrupt_handler`). The
session's :class:`CancellationCoordinator` listens on the token while the
session runs and, on the first interrupt:

1. records the interrupted exit status on the token;
2. asks the backend to mark the release as cancelled, if its id is known,
   logging any failure;
3. aborts the upload transport;
4. injects an :class:`InterruptedError` into the response source so parsing
   unwinds.
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable

import structlog

from balena_remote_build.api.releases import ReleaseCanceller
from balena_remote_build.builder.state import BuildSessionState
from balena_remote_build.builder.stream import InterruptibleSource
from balena_remote_build.builder.transport import UploadTransport
from balena_remote_build.core.constants import INTERRUPTED_EXIT_CODE, CancellationState
from balena_remote_build.core.exceptions import InterruptedError as BuildInterruptedError
from balena_remote_build.ui.progress import ProgressUI

logger = structlog.get_logger(__name__)


class CancellationToken:
    """A one-shot interrupt flag with listeners.

    Must be cancelled from the thread running the event loop; use
    ``loop.call_soon_threadsafe(token.cancel)`` from elsewhere.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._listeners: list[Callable[[], None]] = []
        self.exit_code: int | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        for listener in list(self._listeners):
            listener()

    def add_listener(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register *listener*; returns a callable that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled!r})"


class CancellationCoordinator:
    """Turns a token interrupt into at most one cancel attempt per session."""

    def __init__(
        self,
        token: CancellationToken,
        *,
        state: BuildSessionState,
        transport: UploadTransport,
        release_client: ReleaseCanceller,
        ui: ProgressUI,
        debug: bool = False,
    ) -> None:
        self._token = token
        self._state = state
        self._transport = transport
        self._release_client = release_client
        self._ui = ui
        self._debug = debug
        self._status = CancellationState.IDLE
        self._remove_listener: Callable[[], None] | None = None
        self._source: InterruptibleSource[Any] | None = None
        self._task: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self.error = BuildInterruptedError()

    @property
    def status(self) -> CancellationState:
        return self._status

    @property
    def triggered(self) -> bool:
        """Whether an interrupt was received while armed."""
        return self._task is not None

    def arm(self) -> None:
        """Start listening for interrupts. Must run inside the event loop."""
        if self._status is not CancellationState.IDLE:
            raise RuntimeError("CancellationCoordinator can only be armed once")
        self._loop = asyncio.get_running_loop()
        self._status = CancellationState.ARMED
        self._remove_listener = self._token.add_listener(self._on_interrupt)
        if self._token.cancelled:
            self._on_interrupt()

    def attach(self, source: InterruptibleSource[Any]) -> None:
        """Set the response source that receives the interrupt error."""
        self._source = source
        if self.triggered and self._status is CancellationState.DONE:
            source.fail(self.error)

    def disarm(self) -> None:
        """Stop listening. An attempt already in flight is left to finish."""
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        if self._status is CancellationState.ARMED:
            self._status = CancellationState.DONE

    async def wait(self) -> None:
        """Wait for an in-flight cancel attempt; returns at once if none."""
        if self._task is not None:
            await asyncio.shield(self._task)

    def _on_interrupt(self) -> None:
        if self._status is not CancellationState.ARMED or self._loop is None:
            return
        self._status = CancellationState.CANCELLING
        # The decision to call the backend uses the id known right now.
        release_id = self._state.release_id
        self._task = self._loop.create_task(self._cancel(release_id))

    async def _cancel(self, release_id: int | None) -> None:
        try:
            self._token.exit_code = INTERRUPTED_EXIT_CODE
            self._ui.notice("\nReceived SIGINT, cleaning up. Please wait.")
            if release_id is None:
                logger.info("builder.cancel_skipped", reason="release id unknown")
            else:
                await self._cancel_release(release_id)
            try:
                await self._transport.abort()
            except Exception as exc:  # noqa: BLE001
                logger.debug("builder.abort_failed", error=str(exc))
        finally:
            if self._source is not None:
                self._source.fail(self.error)
            self._status = CancellationState.DONE

    async def _cancel_release(self, release_id: int) -> None:
        self._ui.notice(
            f"Setting 'cancelled' release status for release ID {release_id} ..."
        )
        try:
            await self._release_client.cancel_release(release_id)
        except Exception as exc:  # noqa: BLE001
            log = logger.warning if self._debug else logger.debug
            log("release.cancel_failed", release_id=release_id, error=str(exc))
