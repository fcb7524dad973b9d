# engage/workers/chat_sync_worker.py
"""
Chat Sync Worker

Batch reconciliation of chat groups for a list of branches: system
(broadcast) groups per category and every field-staff direct-message
group. One failing branch is reported and the run carries on.

Usage:
    python -m engage.workers.chat_sync_worker BRANCH_ID [BRANCH_ID ...]
    python -m engage.workers.chat_sync_worker --system-groups-only 101 102
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional, Sequence

from engage.chat.sync_results import BranchSyncReport
from engage.config.logging_config import setup_logging
from engage.core.container import build_container

log = logging.getLogger("engage.workers.chat_sync")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile chat groups for branches")
    parser.add_argument("branch_ids", nargs="+", help="Branch ids to reconcile")
    parser.add_argument(
        "--system-groups-only",
        action="store_true",
        help="Only reconcile broadcast system groups (skip direct-message groups)",
    )
    parser.add_argument(
        "--apply-schema",
        action="store_true",
        help="Apply engage/database/chat_schema.sql before running",
    )
    return parser.parse_args(argv)


async def run_worker(args: argparse.Namespace) -> List[BranchSyncReport]:
    setup_logging(
        service_name="chat-sync",
        log_file=os.getenv("WORKER_LOG_FILE"),
        enable_json=os.getenv("ENVIRONMENT") == "production",
    )

    container = await build_container(apply_schema=args.apply_schema)
    try:
        log.info(f"Chat sync started for {len(args.branch_ids)} branch(es)")
        return await container.service.sync_branches(
            args.branch_ids,
            system_groups_only=args.system_groups_only,
        )
    finally:
        await container.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point; exit code 2 when any branch failed."""
    args = parse_args(argv)
    try:
        reports = asyncio.run(run_worker(args))
    except KeyboardInterrupt:
        print("\nWorker interrupted")
        return 130

    return 0 if all(report.succeeded for report in reports) else 2


if __name__ == "__main__":
    sys.exit(main())
