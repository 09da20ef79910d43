from __future__ import annotations

import pytest

from edgerelay.relay.routing import (
    DownloadTarget,
    InvalidDownloadPath,
    RouteKind,
    parse_download_path,
    resolve_route,
)


@pytest.mark.parametrize(
    ("path", "expected"),
    [
        ("/", RouteKind.HOME),
        ("/zyhive.sh", RouteKind.INSTALL_SCRIPT),
        ("/latest", RouteKind.LATEST_VERSION),
        ("/dl/v1.0.0/aipanel-linux-amd64", RouteKind.DOWNLOAD),
        ("/dl/", RouteKind.DOWNLOAD),
        ("/latest/", RouteKind.NOT_FOUND),
        ("/zyhive.sh/", RouteKind.NOT_FOUND),
        ("/LATEST", RouteKind.NOT_FOUND),
        ("/dl", RouteKind.NOT_FOUND),
        ("/favicon.ico", RouteKind.NOT_FOUND),
        ("", RouteKind.NOT_FOUND),
    ],
)
def test_resolve_route_exact_matching(path, expected):
    assert resolve_route("GET", path) is expected


@pytest.mark.parametrize("method", ["POST", "PUT", "DELETE", "HEAD", "OPTIONS"])
def test_resolve_route_rejects_non_get(method):
    assert resolve_route(method, "/latest") is RouteKind.NOT_FOUND
    assert resolve_route(method, "/") is RouteKind.NOT_FOUND


def test_resolve_route_custom_script_route():
    assert resolve_route("GET", "/install.sh", script_route="/install.sh") is RouteKind.INSTALL_SCRIPT
    assert resolve_route("GET", "/zyhive.sh", script_route="/install.sh") is RouteKind.NOT_FOUND


def test_parse_download_path_accepts_asset():
    target = parse_download_path("v1.2.3/aipanel-linux-amd64")
    assert target == DownloadTarget(version="v1.2.3", filename="aipanel-linux-amd64")


def test_download_target_builds_release_url(relay_settings):
    target = parse_download_path("v1.2.3/aipanel-windows-amd64.exe")
    assert target.upstream_url(relay_settings) == (
        "https://downloads.example.test/Zyling-ai/zyhive/releases/download/v1.2.3/aipanel-windows-amd64.exe"
    )


@pytest.mark.parametrize(
    ("suffix", "message"),
    [
        ("onlyversion", "Bad Request: path must be /dl/{version}/{filename}"),
        ("", "Bad Request: path must be /dl/{version}/{filename}"),
        ("v1.0.0/", "Bad Request: illegal filename"),
        ("v1.0.0/../etc/passwd", "Bad Request: illegal filename"),
        ("v1.0.0/sub/file", "Bad Request: illegal filename"),
        ("v1.0.0/..", "Bad Request: illegal filename"),
        ("v1.0.0/evil\\name", "Bad Request: illegal filename"),
        ("v1.0.0/中.bin", "Bad Request: illegal filename"),
        ("v1.0.0/�.bin", "Bad Request: illegal filename"),
        ("v1.0.0/a\nb", "Bad Request: illegal filename"),
        ("v1.0.0/a\x00b", "Bad Request: illegal filename"),
        ("v1.0.0/with space", "Bad Request: illegal filename"),
        ('v1.0.0/quo"te', "Bad Request: illegal filename"),
        ("v1.0.é/aipanel-linux-amd64", "Bad Request: illegal version"),
        ("v1\r\n/aipanel-linux-amd64", "Bad Request: illegal version"),
        ("/aipanel-linux-amd64", "Bad Request: illegal version"),
        ("../aipanel-linux-amd64", "Bad Request: illegal version"),
    ],
)
def test_parse_download_path_rejects(suffix, message):
    with pytest.raises(InvalidDownloadPath) as exc_info:
        parse_download_path(suffix)
    assert str(exc_info.value) == message
