"""Entrypoint.

Usage:
  python -m quotefeed.app.main stream   # realtime socket feed + candle aggregation
  python -m quotefeed.app.main api      # run FastAPI server
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

import uvicorn

from quotefeed.api.server import create_app
from quotefeed.app.engine import run_stream
from quotefeed.infrastructure.logging.logging import configure_logging
from quotefeed.infrastructure.utils.config import load_config


def main() -> None:
    parser = argparse.ArgumentParser("quotefeed")
    parser.add_argument("command", choices=["stream", "api"], help="What to run")
    parser.add_argument("--config", type=Path, default=None, help="YAML config path")
    args = parser.parse_args()

    if args.command == "stream":
        try:
            asyncio.run(run_stream(args.config))
        except KeyboardInterrupt:
            pass
        return

    if args.command == "api":
        config = load_config(args.config)
        configure_logging(config.log_level, role="api")
        uvicorn.run(create_app(config), host=config.api.host, port=config.api.port, reload=False)
        return


if __name__ == "__main__":
    main()
