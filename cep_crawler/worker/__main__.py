"""
Command line entry point for the CEP worker.

    cep-crawler-worker run [--environment dev] [--providers viacep,brasilapi]
    cep-crawler-worker health [--environment prod]

`health` probes each configured provider once and exits non-zero when none
answers, which is what container liveness checks need.
"""

import argparse
import asyncio
import logging
import sys
from typing import Any, Dict, List, Optional

from ..config.settings import CrawlerSettings, load_settings
from ..health import create_health_monitor
from ..provider import create_providers
from ..utils.logging import setup_crawler_logger
from .crawler_worker import CepWorker

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--environment", "-e", help="Environment (dev/devlocal/staging/prod)")
    common.add_argument("--providers", help="Comma separated provider names (overrides settings)")
    common.add_argument(
        "--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level"
    )

    parser = argparse.ArgumentParser(prog="cep-crawler-worker", description="CEP range crawler worker")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", parents=[common], help="Consume work items until stopped")
    run_parser.add_argument("--worker-id", help="Custom worker ID")
    run_parser.add_argument("--min-interval-ms", type=int, help="Minimum interval between provider calls")

    subparsers.add_parser("health", parents=[common], help="Probe every configured provider once")
    return parser


def settings_from_args(args: argparse.Namespace) -> CrawlerSettings:
    overrides: Dict[str, Any] = {"log_level": args.log_level}
    if args.providers:
        overrides["providers"] = args.providers
    if getattr(args, "min_interval_ms", None) is not None:
        overrides["min_request_interval_ms"] = args.min_interval_ms
    return load_settings(environment=args.environment, **overrides)


async def run_worker(settings: CrawlerSettings, worker_id: Optional[str] = None) -> None:
    logger.info(
        f"Starting CEP worker ({settings.environment}): providers={settings.providers}, "
        f"min_interval={settings.min_request_interval_ms}ms, max_concurrent={settings.max_concurrent_calls}"
    )

    worker = CepWorker(settings, worker_id=worker_id)
    worker.setup_signal_handlers()
    try:
        await worker.initialize()
        worker._main_task = asyncio.create_task(worker.run())
        await worker._main_task
    finally:
        await worker.shutdown()


async def check_providers(settings: CrawlerSettings) -> List[str]:
    """One health check per provider. Returns the names of the healthy ones."""
    providers = create_providers(settings)
    monitor = create_health_monitor(providers, settings)
    try:
        await monitor.check_health()
        for record in (m.status() for m in monitor.monitors):
            print(f"{record.provider_name}: {'healthy' if record.is_healthy else 'unhealthy'}")
        return monitor.healthy_providers()
    finally:
        for provider in providers:
            await provider.close()


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    settings = settings_from_args(args)
    setup_crawler_logger("cep_crawler", level=settings.log_level, json_logs=settings.json_logs)

    try:
        if args.command == "run":
            asyncio.run(run_worker(settings, worker_id=args.worker_id))
        else:
            if not asyncio.run(check_providers(settings)):
                sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
