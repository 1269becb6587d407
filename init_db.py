"""
Numbers lottery: init_db.py
One-shot initializer for the SQLite database:
- Ensures schema (PRAGMA + tables + indexes)
- Opens the current round if none exists
"""

import asyncio
import os

from loguru import logger

from config import settings  # keeps DB path consistent with app
from db import Ledger, rfc3339
from rounds import RoundManager


# =========================================================
# Config
# =========================================================
DB_PATH = os.getenv("DB_PATH", settings.DB_PATH)


# =========================================================
# Main
# =========================================================
async def main(db_path: str = DB_PATH) -> int:
    logger.info(f"Using DB_PATH={db_path}")
    ledger = await Ledger.open(db_path)
    try:
        existing = await ledger.find_open_round()
        rnd = await RoundManager(ledger, settings).get_or_open_current_round()
        if existing:
            logger.info(f"Current round exists: {rnd.round_id}")
        else:
            logger.info(f"Initialized round {rnd.round_id}, draw at {rfc3339(rnd.draw_date)}")
        return rnd.round_id
    finally:
        await ledger.close()


if __name__ == "__main__":
    asyncio.run(main())
