#!/usr/bin/env python3
"""
Maintenance for the processing_jobs table: fail jobs stuck in processing and
delete finished jobs past the retention window.
"""

import argparse
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

import structlog

from provn import config
from provn.core.database import cleanup_old_records, close_connection_pool, fail_stale_jobs

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.dev.ConsoleRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def main():
    parser = argparse.ArgumentParser(description="Clean up Provn processing jobs")
    parser.add_argument("--days", type=int, default=30,
                       help="Delete finished jobs older than this many days")
    parser.add_argument("--stale-minutes", type=int, default=config.STALE_JOB_MINUTES,
                       help="Fail jobs that have not progressed for this many minutes")
    args = parser.parse_args()

    try:
        stale = fail_stale_jobs(args.stale_minutes)
        result = cleanup_old_records(args.days)
        logger.info("Job cleanup finished", stale_jobs_failed=stale, **result)
        return True
    except Exception as e:
        logger.error("Job cleanup failed", error=str(e))
        return False
    finally:
        close_connection_pool()


if __name__ == "__main__":
    sys.exit(0 if main() else 1)
