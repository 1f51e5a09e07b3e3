"""
Admin Tools - command line entry points for scheduled trial maintenance

    python admin_tools.py cleanup-trials
    python admin_tools.py beta-count
"""
import argparse
import asyncio
import logging
import sys

from config.settings import MAX_BETA_USERS
from database import AsyncSessionLocal, init_db
from services.trial_service import TrialService

logger = logging.getLogger(__name__)


async def cleanup_trials() -> int:
    """Run the expiry sweep once. Returns the number of trials deactivated."""
    async with AsyncSessionLocal() as session:
        try:
            cleaned_count = await TrialService(session).cleanup_expired_trials()
            await session.commit()
        except Exception:
            await session.rollback()
            raise
    return cleaned_count


async def beta_count() -> int:
    async with AsyncSessionLocal() as session:
        return await TrialService(session).get_beta_user_count()


async def _run(command: str) -> int:
    await init_db()
    if command == "cleanup-trials":
        cleaned_count = await cleanup_trials()
        print(f"Cleaned up {cleaned_count} expired trials")
    elif command == "beta-count":
        count = await beta_count()
        print(f"{count}/{MAX_BETA_USERS} beta slots in use")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Trial maintenance tasks")
    parser.add_argument("command", choices=["cleanup-trials", "beta-count"])
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    return asyncio.run(_run(args.command))


if __name__ == "__main__":
    sys.exit(main())
