# deploy_engine/run_scheduler.py
"""Run the scheduled-backup worker."""

import logging
import signal
import sys
import time

from deploy_engine.container import get_container

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    """Main entry point."""
    container = get_container()
    scheduler = container.scheduler

    def signal_handler(sig, frame):
        logger.info("Shutting down backup scheduler...")
        container.shutdown()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info("=" * 80)
    logger.info("BACKUP SCHEDULER")
    logger.info("=" * 80)
    logger.info(f"Storage: {container.settings.backup_storage_type}")
    logger.info(f"Poll Interval: {container.settings.scheduler_poll_seconds}s")
    policy = container.settings.retention_policy
    logger.info(
        f"Retention: {policy.daily_days}d daily, {policy.weekly_weeks}w weekly, "
        f"{policy.monthly_months}m monthly"
    )
    logger.info("Press Ctrl+C to stop")
    logger.info("=" * 80)

    scheduler.start()

    # Keep running
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Shutting down backup scheduler...")
        container.shutdown()


if __name__ == "__main__":
    main()
