"""
Notifier entry point.

Loads configuration, configures logging, and runs the notification service
for one signed-in user.
"""

from __future__ import annotations

import argparse
import asyncio
import sys

import structlog

from .config import load_config
from .models import Role
from .service import NotificationService


def configure_logging(level: str = "info", fmt: str = "json") -> None:
    """Configure structlog with the specified level and format."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        processors.append(structlog.processors.dict_tracebacks)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.get_level_from_name(level)
        ),
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="School realtime notifications")
    parser.add_argument(
        "-c", "--config",
        default="school-notify.yaml",
        help="Path to configuration file (default: school-notify.yaml)",
    )
    parser.add_argument("--user-id", required=True, help="Signed-in user id")
    parser.add_argument(
        "--role",
        required=True,
        type=Role.parse,
        help="Signed-in user role: admin, teacher, student or parent",
    )
    return parser


def run() -> None:
    """CLI entry point for the notifier."""
    args = build_parser().parse_args()

    try:
        config = load_config(args.config)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except Exception as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    configure_logging(config.logging.level, config.logging.format)
    structlog.contextvars.bind_contextvars(user=args.user_id, role=args.role.value)
    log = structlog.get_logger()
    log.info("notify.config_loaded", config_path=args.config)

    service = NotificationService(config)
    try:
        asyncio.run(service.run_forever(args.role, args.user_id))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
