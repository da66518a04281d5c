"""Run recurring billing manually.

Usage:
    cd backend
    python -m scripts.run_billing_tasks
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

from app.core.config import settings
from app.core.database import create_engine, create_session_maker
from app.core.logging import setup_logging
from app.modules.billing.tasks import run_recurring_billing
from app.modules.payment_gateway import create_gateway


async def main():
    """Run one recurring billing pass."""
    setup_logging(level=settings.LOG_LEVEL, json_format=False)

    print("\n" + "=" * 60)
    print("Running Recurring Billing")
    print("=" * 60)

    engine = create_engine(settings.DATABASE_URL)
    try:
        summary = await run_recurring_billing(create_session_maker(engine), create_gateway(settings))
    finally:
        await engine.dispose()

    print(f"\nResults:")
    print(f"  Processed:  {summary.processed}")
    print(f"  Successful: {summary.successful}")
    print(f"  Failed:     {summary.failed}")
    print(f"  Skipped:    {summary.skipped}")
    for result in summary.results:
        if not result.succeeded:
            print(f"  - {result.subscription_id}: {result.status} ({result.error_kind})")


if __name__ == "__main__":
    asyncio.run(main())
