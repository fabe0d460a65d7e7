"""chromevm CLI entry point."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from chromevm.config import DEFAULT_CONFIG_FILE, write_default_config


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _init_config(path: Path, force: bool) -> None:
    if not write_default_config(path, force=force):
        print(f"Error: {path} already exists", file=sys.stderr)
        print("Use --force to overwrite it.", file=sys.stderr)
        sys.exit(1)
    print(f"Wrote default configuration to {path}")
    print()
    print("Next steps:")
    print(f"  1. Review {path}")
    print("  2. Make sure Docker is running and the sandbox image can be built")
    print(f"  3. Run: chromevm serve --config {path}")


def _serve(args) -> None:
    import uvicorn

    from chromevm.config import load_config
    from chromevm.server import ChromeVMServer, create_app

    try:
        config = load_config(args.config)
    except ValueError as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    host = args.host or config.server.host
    port = args.port or config.server.port
    app = create_app(ChromeVMServer(config))
    uvicorn.run(app, host=host, port=port, log_level=args.log_level.lower())


def _agent(args) -> None:
    import uvicorn

    from chromevm.agent.app import create_app
    from chromevm.config import AgentConfig, load_config

    base = load_config(args.config).agent if args.config else None
    config = AgentConfig.from_env(base=base)
    port = args.port or config.port
    app = create_app(config)
    uvicorn.run(app, host=args.host or "0.0.0.0", port=port, log_level=args.log_level.lower())


def main():
    parser = argparse.ArgumentParser(
        prog="chromevm",
        description="chromevm: browser-automation sandbox orchestrator",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Load environment variables from this file (default: ./.env if present)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # chromevm init
    init_parser = subparsers.add_parser("init", help="Write a default chromevm.yaml")
    init_parser.add_argument(
        "--path",
        type=Path,
        default=Path(DEFAULT_CONFIG_FILE),
        help=f"Where to write the config (default: {DEFAULT_CONFIG_FILE})",
    )
    init_parser.add_argument("--force", action="store_true", help="Overwrite an existing file")

    for name, help_text in (
        ("serve", "Start the orchestrator API server"),
        ("agent", "Start the sandbox agent (inside a VM container)"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument(
            "--config",
            type=Path,
            default=None,
            help="Path to chromevm.yaml (default: $CHROMEVM_CONFIG or ./chromevm.yaml)",
        )
        sub.add_argument("--host", default=None, help="Host to bind to")
        sub.add_argument("--port", type=int, default=None, help="Port to bind to")
        sub.add_argument(
            "--log-level",
            default="INFO",
            choices=["DEBUG", "INFO", "WARNING", "ERROR"],
            help="Logging level (default: INFO)",
        )

    args = parser.parse_args()

    if args.env_file is not None:
        load_dotenv(args.env_file)
    else:
        load_dotenv()

    if args.command == "init":
        _init_config(args.path, args.force)
        return

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    _configure_logging(args.log_level)

    if args.command == "agent":
        _agent(args)
    else:
        _serve(args)


if __name__ == "__main__":
    main()
