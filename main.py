#!/usr/bin/env python3
"""
Command line entry point: runs one fetch or processing worker, or seeds the
fetch topic.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from sitecrawler import __version__
from sitecrawler.crawler.scheduler import ROLES, CrawlerScheduler
from sitecrawler.utils.config import load_config
from sitecrawler.utils.logger import log_system_info, setup_logging
from sitecrawler.utils.monitoring import initialize_monitoring


EPILOG = """
Examples:
  python main.py --role fetch                          # run a fetch worker
  python main.py --role process                        # run a processing worker
  python main.py --seed https://example.com            # publish a seed URL and exit
  python main.py --config staging.yaml --dry-run       # check connections only
"""


class CrawlerApp:
    """One worker process, from config loading to shutdown."""

    def __init__(self):
        self.scheduler: Optional[CrawlerScheduler] = None
        self.logger = logging.getLogger(__name__)

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()

        def request_stop(signum: int):
            self.logger.info(f"Signal {signal.Signals(signum).name} received, stopping after the current message")
            if self.scheduler:
                self.scheduler.stop_crawling()

        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, request_stop, signum)

    async def run(self, config_path: str, role: str, seeds: Optional[List[str]] = None,
                  dry_run: bool = False) -> int:
        """Run until stopped. Returns the process exit status."""
        one_shot = dry_run or bool(seeds)

        try:
            config = load_config(config_path)
            setup_logging(config.logging)
            log_system_info()

            self.logger.info(
                f"Starting {role} worker with {config_path}: "
                f"topics {config.queue.topics.fetch}/{config.queue.topics.process}, "
                f"partitions {config.worker.partitions} of {config.queue.partitions}, "
                f"{config.database.type} metadata, {config.blob_store.type} blobs"
            )

            # no metrics endpoint for one-shot invocations
            monitor = initialize_monitoring(
                config.monitoring.metrics_enabled and not one_shot,
                config.monitoring.prometheus_port
            )

            self.scheduler = CrawlerScheduler(config, role, monitor)
            await self.scheduler.initialize()

            if dry_run:
                await self._report_connections()
            elif seeds:
                await self.scheduler.add_seed_urls(seeds)
            else:
                self._install_signal_handlers()
                await self.scheduler.start_crawling()

        except Exception as e:
            self.logger.error(f"Fatal error: {e}", exc_info=True)
            return 1

        finally:
            if self.scheduler:
                await self.scheduler.close()
            self.logger.info(f"{role} worker stopped")

        return 0

    async def _report_connections(self):
        scheduler = self.scheduler
        self.logger.info("Dry run: all connections established, nothing will be consumed")
        self.logger.info(f"Queue: {await scheduler.frontier.get_stats()}")
        self.logger.info(f"Metadata store: {await scheduler.database.get_stats()}")
        self.logger.info(f"Blob store: {await scheduler.blob_store.get_stats()}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Two-stage distributed site crawler worker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=EPILOG
    )
    parser.add_argument('--config', default='config.yaml',
                        help='YAML configuration file (default: %(default)s)')
    parser.add_argument('--role', choices=ROLES, default='fetch',
                        help='pipeline stage this process runs (default: %(default)s)')
    parser.add_argument('--seed', action='append', metavar='URL',
                        help='publish URL to the fetch topic and exit; may be repeated')
    parser.add_argument('--dry-run', action='store_true',
                        help='connect to the queue and stores, report, and exit')
    parser.add_argument('--version', action='version', version=f'sitecrawler {__version__}')
    return parser


def main() -> int:
    args = build_parser().parse_args()

    if not Path(args.config).exists():
        print(f"Error: configuration file '{args.config}' not found (use --config)", file=sys.stderr)
        return 1

    app = CrawlerApp()
    try:
        return asyncio.run(app.run(args.config, args.role, seeds=args.seed, dry_run=args.dry_run))
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130


if __name__ == '__main__':
    sys.exit(main())
