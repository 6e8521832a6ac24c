from __future__ import annotations

from enum import StrEnum


class MessageKind(StrEnum):
    PLAIN = "plain"
    METADATA = "metadata"


class MetadataResource(StrEnum):
    CURSOR = "cursor"
    # Historical name: the value is the release id assigned by the API.
    BUILD_LOG_ID = "buildLogId"


class CursorCommand(StrEnum):
    ERASE = "erase"
    UP = "up"
    DOWN = "down"
    UNKNOWN = "unknown"


class SessionState(StrEnum):
    IDLE = "idle"
    UPLOADING = "uploading"
    STREAMING = "streaming"
    HEADLESS_WAITING = "headless_waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CancellationState(StrEnum):
    IDLE = "idle"
    ARMED = "armed"
    CANCELLING = "cancelling"
    DONE = "done"


class ReleaseStatus(StrEnum):
    SUCCESS = "success"
    CANCELLED = "cancelled"


# Exit status conventionally used by shells for SIGINT (128 + 2).
INTERRUPTED_EXIT_CODE = 130

REGISTRY_SECRETS_PATH = ".balena/registry-secrets.json"
