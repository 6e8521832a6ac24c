"""Bridge between OS interrupt signals and a :class:`CancellationToken`."""
from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from balena_remote_build.builder.cancellation import CancellationToken


def install_interrupt_handler(
    token: CancellationToken,
    loop: asyncio.AbstractEventLoop | None = None,
    sig: int = signal.SIGINT,
) -> Callable[[], None]:
    """Cancel *token* when *sig* is received. Returns a function that uninstalls it.

    Uses ``loop.add_signal_handler`` where the loop supports it, and falls
    back to :func:`signal.signal` (e.g. on Windows), hopping onto the loop
    thread with ``call_soon_threadsafe``.
    """
    loop = loop or asyncio.get_running_loop()
    try:
        loop.add_signal_handler(sig, token.cancel)
    except NotImplementedError:
        previous = signal.getsignal(sig)

        def _handler(signum: int, frame: Any) -> None:
            loop.call_soon_threadsafe(token.cancel)

        signal.signal(sig, _handler)

        def _restore() -> None:
            signal.signal(sig, previous)

        return _restore

    def _remove() -> None:
        loop.remove_signal_handler(sig)

    return _remove
