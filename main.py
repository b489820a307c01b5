"""
Main application entry point
"""
import argparse
import logging
import sys
import time

from mail_engine.auth.credentials import CredentialVault
from mail_engine.config import load_env
from mail_engine.core.periodic_sync import JobResult, PeriodicSyncJob
from mail_engine.core.scheduler import SyncScheduler
from mail_engine.core.sync_manager import SyncOrchestrator
from mail_engine.core.workers import IoWorkerPool
from mail_engine.storage.db import init_db
from mail_engine.utils.logging_cfg import setup_logging


logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Background mail sync service")
    parser.add_argument("--debug", action="store_true", help="enable debug logging")
    parser.add_argument("--once", action="store_true", help="run a single sync tick and exit")
    parser.add_argument("--interval", type=int, metavar="SECONDS", help="seconds between sync ticks")
    return parser.parse_args(argv)


def main(argv=None):
    """Main function"""
    args = parse_args(argv)

    # Load environment variables and ensure directories exist
    load_env()

    # Initialize database schema
    init_db()

    setup_logging(debug=args.debug)

    orchestrator = SyncOrchestrator(CredentialVault())
    job = PeriodicSyncJob(orchestrator, IoWorkerPool())

    if args.once:
        try:
            result = job.run()
        finally:
            job.pool.shutdown()
        return 0 if result == JobResult.SUCCESS else 1

    scheduler = SyncScheduler(job, interval_seconds=args.interval)
    scheduler.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        scheduler.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
