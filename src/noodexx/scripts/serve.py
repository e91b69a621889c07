"""Run the noodexx HTTP server with uvicorn."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

import uvicorn

from noodexx.app import DEFAULT_CONFIG_PATH, create_app
from noodexx.config import AppConfig, ConfigError
from noodexx.provider_manager import ProviderInitializationError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Start the noodexx web server")
    parser.add_argument("--config", dest="config_path", default=DEFAULT_CONFIG_PATH, help="Path to config.json")
    parser.add_argument("--host", help="Bind address (overrides server.bind_address)")
    parser.add_argument("--port", type=int, help="Port (overrides server.port)")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config_path = Path(args.config_path)
    try:
        config = AppConfig.load(config_path)
        app = create_app(config=config, config_path=config_path)
    except (ConfigError, ProviderInitializationError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    host = args.host or config.server.bind_address
    port = args.port or config.server.port
    uvicorn.run(app, host=host, port=port, log_level=config.logging.level.replace("warn", "warning"))
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry
    sys.exit(main())
