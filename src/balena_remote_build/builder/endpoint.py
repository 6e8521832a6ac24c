"""Builder endpoint construction."""
from __future__ import annotations

import httpx

from balena_remote_build.core.config import BuildOptions

BUILD_PATH = "/v3/build"


def _flag(value: bool) -> str:
    return "true" if value else "false"


def build_query(app_slug: str, options: BuildOptions) -> dict[str, str]:
    """Return the ``/v3/build`` query parameters, in wire order."""
    return {
        "slug": app_slug,
        "dockerfilePath": options.dockerfile_path,
        "emulated": _flag(options.emulated),
        "nocache": _flag(options.nocache),
        "headless": _flag(options.headless),
        "isdraft": _flag(options.is_draft),
    }


def get_builder_endpoint(
    base_url: str, app_slug: str, options: BuildOptions
) -> httpx.URL:
    """Build the absolute builder URL for a build request.

    A trailing slash on *base_url* is dropped before the path is appended.

    Raises:
        httpx.InvalidURL: If *base_url* cannot be parsed.
    """
    return httpx.URL(
        base_url.rstrip("/") + BUILD_PATH,
        params=build_query(app_slug, options),
    )
