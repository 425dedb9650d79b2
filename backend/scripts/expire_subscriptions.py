"""Store EXPIRED for subscriptions whose expiry date has passed.

Reads already report these as expired (lazy expiry); this sweep makes the
stored status and audit log catch up. Safe to run repeatedly, e.g. hourly
from cron.

Run inside Docker:
    docker compose exec backend python -m scripts.expire_subscriptions
"""

import asyncio
import sys
from pathlib import Path

# Add backend to path so imports work when run as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from digifarmacy.database import async_session_factory, engine, utcnow
from digifarmacy.services.subscription_service import expire_overdue_subscriptions


async def sweep() -> int:
    """Expire overdue subscriptions in one transaction; returns the count."""
    async with async_session_factory() as session:
        try:
            expired = await expire_overdue_subscriptions(session, utcnow())
            await session.commit()
        except Exception:
            await session.rollback()
            raise
    await engine.dispose()
    return expired


if __name__ == "__main__":
    count = asyncio.run(sweep())
    print(f"✅ Expired {count} subscriptions")
