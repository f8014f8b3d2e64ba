"""Issue redemption codes from the command line (admin seed)."""

import argparse
import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone

# Add parent dir to path to find the app modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import settings
from database import async_session_maker, engine, Base
from services.redemption import issue_redemption_codes


def _parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Issue single-use redemption codes.")
    parser.add_argument("--count", type=int, default=1)
    parser.add_argument("--credits", type=int, default=settings.REDEMPTION_DEFAULT_CREDITS)
    parser.add_argument(
        "--validity-days",
        type=int,
        default=settings.REDEMPTION_DEFAULT_VALIDITY_DAYS,
        help="Days the granted credits stay valid; 0 means permanent.",
    )
    parser.add_argument("--code-ttl-days", type=int, default=0, help="Days until the code itself expires; 0 = never.")
    parser.add_argument("codes", nargs="*", help="Explicit codes to create instead of random ones.")
    return parser.parse_args(argv)


async def _issue(args) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    expires_at = None
    if args.code_ttl_days > 0:
        expires_at = datetime.now(timezone.utc) + timedelta(days=args.code_ttl_days)

    async with async_session_maker() as session:
        rows = await issue_redemption_codes(
            session,
            count=args.count,
            amount=args.credits,
            validity_days=args.validity_days,
            expires_at=expires_at,
            codes=args.codes,
        )
    for row in rows:
        print(f"🎟️ {row.code}  +{row.grant_amount} credits")
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(_issue(_parse_args()))
