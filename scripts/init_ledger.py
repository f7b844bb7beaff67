"""Ledger initialization script.

Run this to create the subscription ledger schema and list any transfers that
are still waiting for reconciliation.
"""

import asyncio

from src.config import config
from src.database import db
from src.logging_utils import get_logger, setup_logging

setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


async def main():
    """Initialize the ledger."""
    logger.info("Initializing subscription ledger...")
    logger.info(f"Database path: {db.db_path}")

    await db.initialize()

    pending = await db.list_reconciliations()
    if pending:
        logger.warning(f"{len(pending)} transfer(s) awaiting reconciliation:")
        for record in pending:
            logger.warning(
                f"- {record.reconciliation_id}: tx {record.transaction_hash} from "
                f"{record.user_address} ({record.plan_id}/{record.billing_cycle}, "
                f"{record.amount:g} {config.adao_token_symbol})"
            )
    else:
        logger.info("No pending reconciliations.")

    logger.info("Ledger initialization complete!")


if __name__ == "__main__":
    asyncio.run(main())
