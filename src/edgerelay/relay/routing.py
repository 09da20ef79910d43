"""Path routing and download path validation for the public relay surface."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from ..common.settings import RelaySettings


DOWNLOAD_PREFIX = "/dl/"
ILLEGAL_FILENAME_MARKERS = ("..", "/", "\\", "?", "#", '"')


class RouteKind(str, Enum):
    HOME = "home"
    INSTALL_SCRIPT = "install_script"
    LATEST_VERSION = "latest_version"
    DOWNLOAD = "download"
    NOT_FOUND = "not_found"


class InvalidDownloadPath(ValueError):
    """Raised when a ``/dl/`` suffix does not name a single release asset."""


@dataclass(frozen=True)
class DownloadTarget:
    version: str
    filename: str

    def upstream_url(self, settings: RelaySettings) -> str:
        return settings.download_url(self.version, self.filename)


def resolve_route(method: str, path: str, script_route: str = "/zyhive.sh") -> RouteKind:
    """Pick the handler for an already percent-decoded request path.

    Matching is exact: no trailing-slash folding and no case folding.
    """
    if method.upper() != "GET":
        return RouteKind.NOT_FOUND
    if path == "/":
        return RouteKind.HOME
    if path == script_route:
        return RouteKind.INSTALL_SCRIPT
    if path == "/latest":
        return RouteKind.LATEST_VERSION
    if path.startswith(DOWNLOAD_PREFIX):
        return RouteKind.DOWNLOAD
    return RouteKind.NOT_FOUND


def _header_safe(value: str) -> bool:
    # both halves end up in response headers, which only carry visible ASCII here
    return all("!" <= char <= "~" for char in value)


def parse_download_path(suffix: str) -> DownloadTarget:
    """Split ``{version}/{filename}`` at the first slash and validate both halves."""
    version, sep, filename = suffix.partition("/")
    if not sep:
        raise InvalidDownloadPath("Bad Request: path must be /dl/{version}/{filename}")
    if (
        not filename
        or not _header_safe(filename)
        or any(marker in filename for marker in ILLEGAL_FILENAME_MARKERS)
    ):
        raise InvalidDownloadPath("Bad Request: illegal filename")
    if not version or not _header_safe(version) or ".." in version:
        raise InvalidDownloadPath("Bad Request: illegal version")
    return DownloadTarget(version=version, filename=filename)
