#!/usr/bin/env python3
"""
Metrics Agent

Runs as a long-lived service on the device and provides:
- Telemetry sampling (memory pressure, network, storage, battery)
- MQTT delivery to the IoT broker with TLS client certificates
- Local fallback storage when the broker is unreachable
- A durable operator log

Usage:
    metrics-agent [--config CONFIG_PATH] [--display]
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

import structlog

from .config import load_config
from .delivery import create_backend
from .display import console_observer
from .errors import ConfigError
from .storage import DurableLog, LocalStore
from .telemetry import CollectionLoop, MetricsSampler

logger = structlog.get_logger(__name__)


def configure_logging(config: dict) -> None:
    """Configure structured logging."""
    level = getattr(logging, str(config.get("level", "INFO")).upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer = (
        structlog.dev.ConsoleRenderer()
        if config.get("format") == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


class MetricsAgent:
    """Main agent application."""

    def __init__(self, config: dict, display: bool = False):
        self.config = config
        self._shutdown_event = asyncio.Event()

        self.store = LocalStore(self.config)
        self.durable_log = DurableLog(self.store)
        self.backend = create_backend(self.config)
        self.collector = CollectionLoop(
            self.config,
            sampler=MetricsSampler(self.config),
            backend=self.backend,
            store=self.store,
            durable_log=self.durable_log,
        )
        if display:
            self.collector.add_observer(console_observer)

    def get_health(self) -> dict:
        """Agent health summary."""
        latest = self.collector.latest
        return {
            "running": self.collector.is_running,
            "connection": self.backend.status.to_dict(),
            "status_text": self.collector.status_text,
            "last_outcome": latest.outcome.to_dict() if latest else None,
        }

    async def start(self) -> None:
        """Start the agent and block until stopped."""
        logger.info("Starting metrics agent", version=self.config["agent"]["version"])
        await self.durable_log.log_async("Application started")

        await self.collector.start()
        logger.info("Metrics agent started", health=self.get_health())

        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the agent gracefully."""
        logger.info("Stopping metrics agent")
        await self.collector.stop()
        await self.durable_log.log_async("Application stopped")
        self._shutdown_event.set()
        logger.info("Metrics agent stopped")

    def handle_signal(self, signum: int) -> None:
        """Handle shutdown signals."""
        logger.info("Received signal", signal=signum)
        asyncio.create_task(self.stop())


async def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Device metrics agent")
    parser.add_argument(
        "--config", "-c",
        default="config.yaml",
        help="Path to configuration file"
    )
    parser.add_argument(
        "--display",
        action="store_true",
        help="Log display values after every tick"
    )
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        configure_logging({})
        logger.error("Invalid configuration", error=str(e))
        return 2

    configure_logging(config.get("logging", {}))
    agent = MetricsAgent(config, display=args.display)

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, agent.handle_signal, signum)

    try:
        await agent.start()
    except Exception as e:
        logger.exception("Agent failed", error=str(e))
        return 1
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
