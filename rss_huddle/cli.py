"""Command-line interface for the rss_huddle feed cache."""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import pprint
from pathlib import Path
from typing import List, Optional

from .api import build_feed_api
from .config import parse_app_config, parse_env_config

logger = logging.getLogger(__name__)

REFRESH_WAIT_SECONDS = 600.0


def build_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Serve aggregated RSS feeds through the freshness cache."
    )
    parser.add_argument(
        "--config",
        default="configs/config.xml",
        help="Path to the main configuration XML file.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (e.g. DEBUG, INFO, WARNING). Overrides config.",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Optional path to a log file. Overrides config.",
    )

    action = parser.add_mutually_exclusive_group()
    action.add_argument(
        "--clear-cache",
        action="store_true",
        help="Delete the cached aggregate and fetch every feed again.",
    )
    action.add_argument(
        "--refresh",
        action="store_true",
        help="Run a background refresh and wait for it to finish.",
    )
    action.add_argument(
        "--status",
        action="store_true",
        help="Report whether a background refresh is running.",
    )
    return parser


def configure_logging(level_name: str, log_file: Optional[str] = None) -> None:
    """Initialise logging according to options."""
    log_level = getattr(logging, level_name.upper(), None)
    if not isinstance(log_level, int):
        raise ValueError(f"Unsupported log level: {level_name}")

    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    root_logger.setLevel(log_level)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    if log_file:
        log_path = Path(log_file)
        if log_path.parent and not log_path.parent.exists():
            log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
        logger.debug(
            "Logger initialised with level %s and file output to %s",
            level_name.upper(),
            log_path,
        )
    else:
        logger.debug(
            "Logger initialised with console output at level %s", level_name.upper()
        )


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        app_config = parse_app_config(args.config)

        if app_config.env_file:
            os.environ.update(parse_env_config(app_config.env_file))

        # CLI overrides config
        log_level = args.log_level or app_config.logging.level
        log_file = args.log_file or app_config.logging.file
        configure_logging(log_level, log_file)

        config_dict = dataclasses.asdict(app_config)
        if config_dict["cache"].get("connection_string"):
            config_dict["cache"]["connection_string"] = "***MASKED***"
        logger.info("Active Configuration:\n%s", pprint.pformat(config_dict))

        api = build_feed_api(app_config)

        if args.status:
            response = api.refresh_status()
        elif args.refresh:
            response = api.trigger_refresh()
            if not api.coordinator.refresher.wait(timeout=REFRESH_WAIT_SECONDS):
                logger.error("Background refresh did not finish in time")
                return 1
        else:
            response = api.get_feeds(client_key="cli", clear_cache=args.clear_cache)
    except ValueError as exc:
        parser.error(str(exc))
    except (RuntimeError, FileNotFoundError) as exc:
        logger.error("%s", exc)
        return 1
    except Exception:  # noqa: BLE001
        logger.exception("Unexpected error during execution.")
        return 1

    print(json.dumps(response.body, indent=2, ensure_ascii=False))
    return 0 if response.status_code < 500 else 1
