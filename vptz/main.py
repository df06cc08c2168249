"""
Service entrypoint.

Resolves configuration from the command line and the profile file, wires the
store, the mixer session, the control surface and the HTTP front door, and
serves the API with uvicorn.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from dataclasses import replace
from pathlib import Path
from typing import Optional

from .api.server import create_app
from .config import DEFAULT_MIXER_ADDR, PROFILES_PATH, ControlConfig, load_profile, split_addr
from .control import ControlSurface
from .mixer.connection import MixerConnection
from .mixer.session import MixerInstance, SessionManager
from .notify import StateNotifier
from .state import FramingCache
from .store import FramingStore
from .utils.logging import configure_logging, level_for_verbosity

LOG = logging.getLogger(__name__)


def build_surface(config: ControlConfig) -> ControlSurface:
    """Wire the control surface and its collaborators for ``config``."""

    connections = {}
    host, port = split_addr(config.primary_addr)
    connections[MixerInstance.PRIMARY] = MixerConnection(host, port, name="vmix1")
    if config.has_secondary:
        host, port = split_addr(config.secondary_addr)
        connections[MixerInstance.SECONDARY] = MixerConnection(host, port, name="vmix2")

    notifier = StateNotifier()
    session = SessionManager(config, connections, notifier)
    store = FramingStore(config)
    return ControlSurface(config, store, session, FramingCache(config), notifier)


async def serve(config: ControlConfig, host: str = "127.0.0.1", port: int = 12345, log_level: str = "info") -> None:
    import uvicorn

    app = create_app(build_surface(config))
    server_config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_config=None,
        log_level=log_level,
        reload=False,
    )
    server = uvicorn.Server(config=server_config)

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Received signal %s, shutting down server...", signum)
        server.should_exit = True

    for signame in ("SIGINT", "SIGTERM"):
        signal.signal(getattr(signal, signame), _handle_signal)

    LOG.info("Serving API on http://%s:%d/", host, port)
    await server.serve()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="vMix virtual PTZ control service")
    parser.add_argument("-v", "--log-level", type=int, default=2, choices=range(0, 4), help="verbosity 0 (errors) to 3 (debug)")
    parser.add_argument("-l", "--log-file", default="-", help="log file ('-' for stdout)")
    parser.add_argument("-s", "--state-dir", default=None, help="directory holding the state database")
    parser.add_argument("-a", "--http-addr", default="127.0.0.1", help="bind host for the API server")
    parser.add_argument("-p", "--http-port", type=int, default=12345, help="bind port for the API server")
    parser.add_argument("-A", "--vmix1-addr", default=None, help=f"primary mixer address (default {DEFAULT_MIXER_ADDR})")
    parser.add_argument("-B", "--vmix2-addr", default=None, help="secondary mixer address (default: same as primary)")
    parser.add_argument("--profile", default="default", help="configuration profile to load")
    parser.add_argument("--profiles-file", type=Path, default=PROFILES_PATH, help="YAML file with configuration profiles")
    return parser.parse_args(argv)


def resolve_config(args: argparse.Namespace) -> ControlConfig:
    config = load_profile(args.profile, args.profiles_file)
    overrides = {}
    if args.state_dir is not None:
        overrides["state_dir"] = args.state_dir
    if args.vmix1_addr is not None:
        overrides["primary_addr"] = args.vmix1_addr
        if args.vmix2_addr is None:
            overrides["secondary_addr"] = args.vmix1_addr
    if args.vmix2_addr is not None:
        overrides["secondary_addr"] = args.vmix2_addr
    config = replace(config, **overrides)
    split_addr(config.primary_addr)
    split_addr(config.secondary_addr)
    return config


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    level = level_for_verbosity(args.log_level)
    configure_logging(level=level, log_file=args.log_file)
    config = resolve_config(args)
    LOG.info(
        "Starting with %d camera(s), mixer A at %s%s",
        len(config.cameras),
        config.primary_addr,
        f", mixer B at {config.secondary_addr}" if config.has_secondary else "",
    )

    try:
        asyncio.run(serve(config, host=args.http_addr, port=args.http_port, log_level=logging.getLevelName(level).lower()))
    except KeyboardInterrupt:
        LOG.info("Interrupted by user.")


if __name__ == "__main__":
    run()
