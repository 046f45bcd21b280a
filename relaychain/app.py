"""relaychain CLI - main application entry point."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import yaml

from relaychain.engine.config import EngineConfig
from relaychain.engine.yaml_config import RelayConfig, discover_config, load_yaml_config


def _configure_server_logging(config: EngineConfig) -> Path:
    log_level = os.getenv("RELAY_LOG_LEVEL", config.log_level).upper()
    log_dir = Path.home() / ".relaychain" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "relaychain-server.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level, logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _load_config(explicit: str | None) -> RelayConfig:
    logger = logging.getLogger(__name__)
    base = EngineConfig.from_env()
    config_path = Path(explicit) if explicit else discover_config(Path.cwd())
    if config_path is None:
        logger.info("No config file found; using env and defaults")
        return RelayConfig(engine=base)
    logger.info("Using config: %s (exists=%s)", config_path, config_path.exists())
    return load_yaml_config(config_path, base=base)


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="relaychain",
        description="relaychain - streaming multi-LLM chains with a supervisor",
    )
    parser.add_argument(
        "prompt", nargs="?", default=None,
        help="Run one prompt and stream the answer to the terminal",
    )
    parser.add_argument(
        "--model", "-m", default=None,
        help="Model for a one-shot run (default: from config)",
    )
    parser.add_argument(
        "--server", action="store_true",
        help="Start the HTTP+SSE server",
    )
    parser.add_argument(
        "--host", default="127.0.0.1",
        help="Server bind address",
    )
    parser.add_argument(
        "--port", type=int, default=8787,
        help="Server port (0=random available port)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file for engine, providers and models",
    )
    parser.add_argument(
        "--store", metavar="DIR",
        help="Persist sessions as JSON files in DIR (default: in memory)",
    )
    parser.add_argument(
        "--list-models", action="store_true",
        help="List accepted models and provider key status, then exit",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    if args.server:
        engine = EngineConfig.from_env()
        log_file = _configure_server_logging(engine)
    else:
        logging.basicConfig(
            level=logging.DEBUG if args.verbose else logging.WARNING,
            format="%(asctime)s %(name)s %(levelname)s %(message)s",
            datefmt="%H:%M:%S",
        )
        log_file = None

    from relaychain.engine.errors import RelayError

    try:
        relay_config = _load_config(args.config)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(f"Error: could not load config: {exc}", file=sys.stderr)
        sys.exit(2)
    if args.store:
        relay_config.engine.store_path = args.store

    if args.server:
        from relaychain.server.server import RelayServer

        logging.getLogger(__name__).info(
            "Starting relaychain server host=%s port=%s config=%s store=%s log=%s",
            args.host, args.port, args.config or "<auto>",
            relay_config.engine.store_path or "<memory>", log_file,
        )
        server = RelayServer.from_config(relay_config, host=args.host, port=args.port)
        try:
            asyncio.run(server.start())
        except KeyboardInterrupt:
            pass
        sys.exit(0)

    from relaychain.engine.cli import print_models, run_once
    from relaychain.engine.model_registry import build_model_registry
    from relaychain.engine.providers import build_provider_registry

    engine = relay_config.engine
    models = build_model_registry(relay_config.models, engine.extra_models)
    providers = build_provider_registry(
        relay_config.providers, timeout_seconds=engine.request_timeout_seconds,
    )

    if args.list_models:
        print_models(models, providers)
        sys.exit(0)

    if not args.prompt:
        parser.print_help()
        sys.exit(1)

    try:
        ok = asyncio.run(run_once(
            relay_config, providers, models, args.model or engine.default_model, args.prompt,
        ))
    except RelayError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(130)
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
