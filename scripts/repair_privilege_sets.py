"""Restore canonical privilege role sets on every guild row.

Rows edited by hand or by other tools may hold duplicate roles, unsorted
arrays, or admin roles missing from priv_manager. Safe to run multiple times.

Usage: python -m scripts.repair_privilege_sets [--dry-run]
"""

import argparse
import asyncio
import logging

from db import close_db, connect_db
from guild_config import repair_privilege_sets

logger = logging.getLogger(__name__)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Repair privilege role sets of every configured guild."
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=False,
        help="Only report the guilds that need a repair.",
    )
    return parser.parse_args()


async def _run(args: argparse.Namespace) -> None:
    await connect_db()
    try:
        repaired = await repair_privilege_sets(dry_run=args.dry_run)
    finally:
        await close_db()

    if args.dry_run:
        logger.info("Guilds needing a repair: %s (%s)", len(repaired), repaired)
    else:
        logger.info("Guilds repaired: %s (%s)", len(repaired), repaired)


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
    args = _parse_args()
    asyncio.run(_run(args))


if __name__ == "__main__":
    main()
