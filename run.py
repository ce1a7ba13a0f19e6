"""
Run the approval engine background worker.

Usage:
    python run.py
    python run.py --seed           # Install the stock workflows first
    python run.py --once           # Dispatch pending events once and exit
"""
import argparse
import asyncio
import signal

from approval_engine.engine import WorkflowEngine
from approval_engine.repositories.mongo_client import create_indexes, close_connection, health_check
from approval_engine.scheduler.scheduler import start_scheduler, stop_scheduler
from approval_engine.utils.logger import setup_logging, get_logger

logger = get_logger("approval_engine.run")


async def serve(engine: WorkflowEngine) -> None:
    """Run the scheduler until SIGINT / SIGTERM"""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises
            pass

    scheduler = start_scheduler(engine)
    logger.info(f"Worker running as {scheduler.server_id}")
    try:
        await stop_event.wait()
    finally:
        stop_scheduler()


def main():
    parser = argparse.ArgumentParser(description="Run the approval workflow engine worker")
    parser.add_argument(
        "--seed",
        action="store_true",
        help="Install the predefined workflows before starting"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Dispatch pending events once and exit"
    )

    args = parser.parse_args()

    setup_logging()
    status = health_check()
    if status["status"] != "healthy":
        logger.error(f"MongoDB unavailable: {status.get('error')}")
        raise SystemExit(1)

    create_indexes()
    engine = WorkflowEngine()

    try:
        if args.seed:
            installed = engine.install_predefined()
            logger.info(f"Installed {len(installed)} predefined workflows")

        if args.once:
            stats = engine.dispatch_events()
            print(f"Sent: {stats['sent']}  Failed: {stats['failed']}  Skipped: {stats['skipped']}")
            return

        asyncio.run(serve(engine))
    finally:
        close_connection()


if __name__ == "__main__":
    main()
