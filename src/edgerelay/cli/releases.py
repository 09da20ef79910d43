"""CLI helper for checking and downloading releases through the install relay."""

from __future__ import annotations

import argparse
import asyncio
import json
import platform
from pathlib import Path
from typing import Any, Optional

import httpx


DEFAULT_ASSET_PREFIX = "aipanel"

_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Query and download releases via the install relay")
    subparsers = parser.add_subparsers(dest="command", required=True)

    latest = subparsers.add_parser("latest", help="Show the latest published version")
    latest.add_argument("--relay-url", required=True, help="Install relay base URL")
    latest.add_argument("--current", help="Currently installed version to compare against")
    latest.add_argument("--json", action="store_true", help="Output raw JSON")

    download = subparsers.add_parser("download", help="Download a release binary")
    download.add_argument("--relay-url", required=True, help="Install relay base URL")
    download.add_argument("--version", help="Release tag (defaults to the latest version)")
    download.add_argument("--os", dest="os_name", help="Target operating system (defaults to this host)")
    download.add_argument("--arch", help="Target architecture (defaults to this host)")
    download.add_argument("--asset-prefix", default=DEFAULT_ASSET_PREFIX, help="Binary name prefix")
    download.add_argument("--output", required=True, help="File to write the binary to")
    return parser.parse_args()


def host_platform() -> tuple[str, str]:
    os_name = platform.system().lower()
    machine = platform.machine().lower()
    return os_name, _ARCH_ALIASES.get(machine, machine)


def asset_name(prefix: str, os_name: str, arch: str) -> str:
    name = f"{prefix}-{os_name}-{arch}"
    if os_name == "windows":
        name += ".exe"
    return name


def _version_key(tag: str) -> Optional[tuple]:
    """Sort key for ``v1.2.3``-style tags; None when the tag is not dotted numbers."""
    release, _, prerelease = tag.strip().lstrip("vV").split("+", 1)[0].partition("-")
    parts = release.split(".")
    if not all(part.isdigit() for part in parts):
        return None
    numbers = [int(part) for part in parts]
    while len(numbers) > 1 and numbers[-1] == 0:
        numbers.pop()
    identifiers = tuple(
        (0, int(item), "") if item.isdigit() else (1, 0, item) for item in prerelease.split(".") if prerelease
    )
    # 1.2.0-rc.1 sorts before 1.2.0
    return tuple(numbers), not prerelease, identifiers


def is_newer(latest: Optional[str], current: Optional[str]) -> bool:
    if not latest or not current:
        return False
    latest_key, current_key = _version_key(latest), _version_key(current)
    if latest_key is None or current_key is None:
        return latest.lstrip("vV") != current.lstrip("vV")
    return latest_key > current_key


async def fetch_latest(base_url: str) -> dict[str, Any]:
    async with httpx.AsyncClient(timeout=10.0) as client:
        response = await client.get(f"{base_url.rstrip('/')}/latest")
        response.raise_for_status()
        return response.json()


async def download_asset(base_url: str, version: str, name: str, output: Path) -> tuple[int, Optional[str]]:
    """Stream a release binary into ``output``.

    Bytes land in a ``.part`` sibling that replaces ``output`` only once the body
    is complete; a failed transfer leaves any previous ``output`` untouched.
    """
    url = f"{base_url.rstrip('/')}/dl/{version}/{name}"
    partial = output.with_name(output.name + ".part")
    written = 0
    async with httpx.AsyncClient(timeout=httpx.Timeout(10.0, read=None)) as client:
        async with client.stream("GET", url) as response:
            response.raise_for_status()
            cache_status = response.headers.get("x-cache")
            output.parent.mkdir(parents=True, exist_ok=True)
            try:
                with partial.open("wb") as handle:
                    async for chunk in response.aiter_bytes():
                        handle.write(chunk)
                        written += len(chunk)
                partial.replace(output)
            except BaseException:
                partial.unlink(missing_ok=True)
                raise
    return written, cache_status



async def run() -> None:
    args = parse_args()

    if args.command == "latest":
        payload = await fetch_latest(args.relay_url)
        if args.json:
            print(json.dumps(payload, indent=2))
            return
        version = payload.get("version")
        if version is None:
            print("Latest version unknown")
            return
        published = payload.get("published_at", "-")
        print(f"Latest version: {version} (published {published})")
        if args.current:
            if is_newer(version, args.current):
                print(f"Update available: {args.current} -> {version}")
            else:
                print("Already up to date")
        return

    version = args.version
    if not version:
        payload = await fetch_latest(args.relay_url)
        version = payload.get("version")
        if not version:
            raise SystemExit("Relay did not report a latest version")

    default_os, default_arch = host_platform()
    name = asset_name(args.asset_prefix, args.os_name or default_os, args.arch or default_arch)
    output = Path(args.output)
    written, cache_status = await download_asset(args.relay_url, version, name, output)
    print(f"Downloaded {name} {version} to {output} ({written} bytes, cache={cache_status or '-'})")


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
