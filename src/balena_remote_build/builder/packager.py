from __future__ import annotations

import asyncio
import io
import json
import os
import tarfile
import tempfile
import time
from pathlib import Path
from typing import IO, AsyncIterator, Protocol, runtime_checkable

import structlog

from balena_remote_build.core.config import BuildOptions
from balena_remote_build.core.constants import REGISTRY_SECRETS_PATH
from balena_remote_build.core.exceptions import PackagingError

logger = structlog.get_logger(__name__)

CHUNK_SIZE = 64 * 1024
_SPOOL_MAX_BYTES = 32 * 1024 * 1024


@runtime_checkable
class Packager(Protocol):
    """Structural type for anything that turns a project into a tar stream."""

    def package(self, source: Path, options: BuildOptions) -> AsyncIterator[bytes]: ...


def _convert_eol(data: bytes) -> bytes:
    """Return *data* with CRLF line endings turned into LF, for text files only."""
    if b"\r\n" not in data or b"\0" in data:
        return data
    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        return data
    return data.replace(b"\r\n", b"\n")


class DirectoryPackager:
    """Tar a project directory.

    Files are added in sorted order with POSIX arcnames relative to the
    project root. When registry secrets are configured they are appended as
    ``.balena/registry-secrets.json`` right before the archive is finalized.
    Ignore files are not interpreted.
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE) -> None:
        self._chunk_size = chunk_size

    async def package(self, source: Path, options: BuildOptions) -> AsyncIterator[bytes]:
        start = time.monotonic()
        logger.debug("packager.started", source=str(source))
        archive = await asyncio.to_thread(self._build_archive, Path(source), options)
        logger.debug(
            "packager.finished",
            source=str(source),
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        try:
            while True:
                chunk = archive.read(self._chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            archive.close()

    def _build_archive(self, root: Path, options: BuildOptions) -> IO[bytes]:
        if not root.is_dir():
            raise PackagingError(f"Source directory not found: {root}")

        spool = tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX_BYTES)
        try:
            with tarfile.open(fileobj=spool, mode="w", format=tarfile.PAX_FORMAT) as tar:
                for path in self._walk(root):
                    if options.registry_secrets and (
                        path.relative_to(root).as_posix() == REGISTRY_SECRETS_PATH
                    ):
                        continue
                    self._add(tar, root, path, options)
                if options.registry_secrets:
                    self._add_bytes(
                        tar,
                        REGISTRY_SECRETS_PATH,
                        json.dumps(options.registry_secrets).encode("utf-8"),
                    )
        except OSError as exc:
            spool.close()
            raise PackagingError(f"Failed to package {root}: {exc}") from exc
        spool.seek(0)
        return spool

    @staticmethod
    def _walk(root: Path) -> list[Path]:
        paths: list[Path] = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            for name in sorted(filenames):
                paths.append(Path(dirpath) / name)
        return paths

    @staticmethod
    def _add(tar: tarfile.TarFile, root: Path, path: Path, options: BuildOptions) -> None:
        arcname = path.relative_to(root).as_posix()
        info = tar.gettarinfo(str(path), arcname=arcname)
        if not info.isfile():
            tar.addfile(info)
            return
        data = path.read_bytes()
        if options.convert_eol:
            data = _convert_eol(data)
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))

    @staticmethod
    def _add_bytes(tar: tarfile.TarFile, name: str, data: bytes) -> None:
        info = tarfile.TarInfo(name)
        info.size = len(data)
        info.mtime = int(time.time())
        info.mode = 0o644
        tar.addfile(info, io.BytesIO(data))
