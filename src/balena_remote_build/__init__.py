"""Client for remote container builds: upload, follow, cancel."""

from balena_remote_build.__version__ import __version__

from balena_remote_build.api.releases import ReleaseCanceller, ReleaseClient
from balena_remote_build.builder.cancellation import CancellationToken
from balena_remote_build.builder.packager import DirectoryPackager, Packager
from balena_remote_build.builder.session import (
    BuildSession,
    start_remote_build,
    start_remote_build_sync,
)
from balena_remote_build.core.config import BuildOptions, BuildRequest, ClientConfig
from balena_remote_build.core.constants import CursorCommand, MessageKind, SessionState
from balena_remote_build.core.exceptions import (
    BuildFailedError,
    CancellationError,
    ConfigurationError,
    InterruptedError,
    PackagingError,
    RemoteBuildError,
    StreamParseError,
    TransportError,
)
from balena_remote_build.core.types import BuilderMessage, CursorAction, HeadlessResult
from balena_remote_build.ui.progress import NullProgressUI, ProgressUI, TerminalProgressUI
from balena_remote_build.utils.logging import configure_logging, get_logger
from balena_remote_build.utils.signals import install_interrupt_handler

__all__ = [
    "__version__",
    # client
    "BuildSession",
    "start_remote_build",
    "start_remote_build_sync",
    "CancellationToken",
    "install_interrupt_handler",
    "ReleaseCanceller",
    "ReleaseClient",
    "Packager",
    "DirectoryPackager",
    # config
    "ClientConfig",
    "BuildOptions",
    "BuildRequest",
    # types
    "BuilderMessage",
    "CursorAction",
    "CursorCommand",
    "HeadlessResult",
    "MessageKind",
    "SessionState",
    # ui
    "ProgressUI",
    "NullProgressUI",
    "TerminalProgressUI",
    # errors
    "RemoteBuildError",
    "BuildFailedError",
    "CancellationError",
    "ConfigurationError",
    "InterruptedError",
    "PackagingError",
    "StreamParseError",
    "TransportError",
    # logging
    "configure_logging",
    "get_logger",
]
