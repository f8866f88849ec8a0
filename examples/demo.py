#!/usr/bin/env python3
"""linepump - drive a line-protocol worker and dispatch its events."""

from __future__ import annotations

import sys
from pathlib import Path

import structlog

from linepump.session.config import DispatcherConfig
from linepump.session.dispatcher import Dispatcher
from linepump.session.handlers import DEFAULT

# Configure structured logging
structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

WORKER = Path(__file__).with_name("echo_worker.py")


def on_ready(dispatcher: Dispatcher) -> None:
    print(f"worker says: {dispatcher.current_event_payload()}")
    dispatcher.queue_command("login", "alice", "secret")


def on_welcome(dispatcher: Dispatcher) -> None:
    print(f"logged in: {dispatcher.current_event_payload()}")
    dispatcher.queue_command("status")
    dispatcher.queue_command("frobnicate")


def on_status(dispatcher: Dispatcher) -> None:
    print(f"status: {dispatcher.current_event_payload()}")
    dispatcher.queue_command("logout")


def on_bye(dispatcher: Dispatcher) -> None:
    print("logged out, asking the worker to quit")
    dispatcher.queue_command("quit")


def on_anything_else(dispatcher: Dispatcher) -> None:
    print(f"[{dispatcher.current_event_code()}] {dispatcher.current_event_payload()}")


def main() -> int:
    config = DispatcherConfig(
        executable_path=sys.executable,
        args=("-u", str(WORKER)),
        enable_metrics=True,
    )
    dispatcher = Dispatcher(config=config)

    dispatcher.add_handler(220, on_ready)
    dispatcher.add_handler(200, on_welcome)
    dispatcher.add_handler(210, on_status)
    dispatcher.add_handler(221, on_bye)
    dispatcher.add_handler(DEFAULT, on_anything_else)

    dispatcher.run_until_exit()

    print(f"final event: {dispatcher.current_event_code()} {dispatcher.current_event_payload()}")
    logger.info("Demo finished", **dispatcher.metrics)
    return 0


if __name__ == "__main__":
    sys.exit(main())
