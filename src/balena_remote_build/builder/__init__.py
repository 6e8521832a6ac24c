from balena_remote_build.builder.cancellation import CancellationCoordinator, CancellationToken
from balena_remote_build.builder.endpoint import get_builder_endpoint
from balena_remote_build.builder.metadata import MetadataInterpreter, parse_cursor
from balena_remote_build.builder.packager import DirectoryPackager, Packager
from balena_remote_build.builder.session import (
    BuildSession,
    start_remote_build,
    start_remote_build_sync,
)
from balena_remote_build.builder.state import BuildSessionState
from balena_remote_build.builder.stream import ResponseDemultiplexer
from balena_remote_build.builder.transport import UploadTransport

__all__ = [
    "BuildSession",
    "BuildSessionState",
    "CancellationCoordinator",
    "CancellationToken",
    "DirectoryPackager",
    "MetadataInterpreter",
    "Packager",
    "ResponseDemultiplexer",
    "UploadTransport",
    "get_builder_endpoint",
    "parse_cursor",
    "start_remote_build",
    "start_remote_build_sync",
]
