"""Command-line entrypoint for running the edge relay and its ops endpoints."""

from __future__ import annotations

import argparse
import asyncio
from typing import Optional, Sequence

import structlog
import uvicorn

from ..common.settings import RelaySettings
from .app import create_app, create_ops_app


LOGGER = structlog.get_logger("edgerelay.relay.main")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the install relay")
    parser.add_argument("--host", help="Public bind address (overrides EDGERELAY_BIND_HOST)")
    parser.add_argument("--port", type=int, help="Public bind port (overrides EDGERELAY_BIND_PORT)")
    parser.add_argument("--ops-host", help="Ops bind address (overrides EDGERELAY_OPS_HOST)")
    parser.add_argument("--ops-port", type=int, help="Ops bind port (overrides EDGERELAY_OPS_PORT)")
    parser.add_argument("--log-level", help="Log level (overrides EDGERELAY_LOG_LEVEL)")
    return parser.parse_args(argv)


def apply_overrides(settings: RelaySettings, args: argparse.Namespace) -> RelaySettings:
    overrides = {
        "bind_host": args.host,
        "bind_port": args.port,
        "ops_host": args.ops_host,
        "ops_port": args.ops_port,
        "log_level": args.log_level,
    }
    update = {key: value for key, value in overrides.items() if value is not None}
    if not update:
        return settings
    return settings.model_copy(update=update)


async def serve(settings: RelaySettings) -> None:
    app = create_app(settings)
    ops_app = create_ops_app(app.state.relay)

    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=settings.bind_host,
            port=settings.bind_port,
            log_config=None,
            log_level=settings.log_level.lower(),
        )
    )
    # the public app owns the relay state lifespan; ops only reads it
    ops_server = uvicorn.Server(
        uvicorn.Config(
            ops_app,
            host=settings.ops_host,
            port=settings.ops_port,
            log_config=None,
            log_level=settings.log_level.lower(),
            lifespan="off",
        )
    )
    ops_task = asyncio.create_task(ops_server.serve())
    LOGGER.info(
        "Relay listening",
        host=settings.bind_host,
        port=settings.bind_port,
        ops_host=settings.ops_host,
        ops_port=settings.ops_port,
    )
    try:
        await server.serve()
    finally:
        ops_server.should_exit = True
        await ops_task
        LOGGER.info("Relay stopped")


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    settings = apply_overrides(RelaySettings(), args)
    asyncio.run(serve(settings))


if __name__ == "__main__":
    main()
