#!/usr/bin/env python3
"""
Worker Runner — Drain the routing streams without the HTTP API.

Starts the consumer-group workers (AI ingestion, workflow triggers,
outbound WhatsApp/email) against the configured queue and stops them
gracefully on SIGINT/SIGTERM.

Usage:
    python scripts/run_workers.py
    python scripts/run_workers.py --ai-workers 4 --outbound-workers 2
    python scripts/run_workers.py --config config/prod.yaml
"""
import asyncio
import os
import signal
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def run(args) -> None:
    from dotenv import load_dotenv
    load_dotenv()

    import structlog
    from config.settings import load_settings
    from config.log_setup import configure_logging
    from core.services import build_services

    settings = load_settings(args.config)
    if args.ai_workers is not None:
        settings.workers.ai_workers = args.ai_workers
    if args.workflow_workers is not None:
        settings.workers.workflow_workers = args.workflow_workers
    if args.outbound_workers is not None:
        settings.workers.outbound_workers = args.outbound_workers
    configure_logging(settings)
    logger = structlog.get_logger()

    services = build_services(settings)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass  # Windows

    await services.start()
    logger.info("worker_runner_started",
                ai_workers=settings.workers.ai_workers,
                workflow_workers=settings.workers.workflow_workers,
                outbound_workers=settings.workers.outbound_workers)
    try:
        await stop_event.wait()
    finally:
        logger.info("worker_runner_stopping", shutdown_timeout=settings.workers.shutdown_timeout)
        await services.stop()


def main():
    parser = argparse.ArgumentParser(description="Run queue workers")
    parser.add_argument("--config", default=None, help="Path to settings YAML")
    parser.add_argument("--ai-workers", type=int, default=None)
    parser.add_argument("--workflow-workers", type=int, default=None)
    parser.add_argument("--outbound-workers", type=int, default=None)
    args = parser.parse_args()

    asyncio.run(run(args))


if __name__ == "__main__":
    main()
