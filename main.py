"""
main.py — Folio Assistant Entry Point

Usage:
    python main.py                                  # console panel, default settings
    python main.py --log-level DEBUG                # verbose logging
    python main.py --config path/to/config.yaml
    python main.py --url ws://assistant.local:8000/ws
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

# Load .env from the project root before anything reads the environment
ENV_PATH = Path(__file__).parent / ".env"
load_dotenv(dotenv_path=ENV_PATH)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="folio-assistant",
        description="Folio Assistant — voice panel for the portfolio assistant service",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $FOLIO_ASSISTANT_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    parser.add_argument(
        "--url",
        default=None,
        help="Assistant service base URL (overrides ASSISTANT_WEBSOCKET_URL and config)",
    )
    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if:
      - config.yaml has invalid values (Pydantic ValidationError)
      - cross-field problems are found (ConfigError from validate_all())
    """
    from config.settings import load_settings, ConfigError
    from observability.logger import setup_logging, get_logger
    from pydantic import ValidationError

    if args.url:
        os.environ["ASSISTANT_WEBSOCKET_URL"] = args.url

    # -- Load and parse -------------------------------------------------------
    try:
        settings = load_settings(args.config)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {e['loc'][-1] if e['loc'] else '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your .env file and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (OSError, ValueError) as exc:
        print(
            f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n",
            file=sys.stderr,
        )
        sys.exit(1)

    # -- Cross-field validation -----------------------------------------------
    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    # -- Logging --------------------------------------------------------------
    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.log_json_format,
        console_output=settings.log_console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )

    log = get_logger("assistant.main")
    return settings, log


async def main() -> int:
    args = parse_args()
    settings, log = bootstrap(args)

    log.info(
        "assistant.starting",
        base_url=settings.base_url,
        language=settings.capture.language,
        voice=settings.playback.voice_name,
    )

    from interfaces.console import run_console
    try:
        await run_console(settings, log)
    except KeyboardInterrupt:
        log.info("assistant.interrupted")
    except (OSError, RuntimeError) as e:
        log.exception("assistant.crashed", error=str(e), error_type=type(e).__name__)
        raise
    return 0


def run() -> int:
    """Console-script entry point."""
    return asyncio.run(main())


if __name__ == "__main__":
    sys.exit(run())
