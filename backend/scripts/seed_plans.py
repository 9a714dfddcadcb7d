"""Seed the plan catalog.

Run with: python -m scripts.seed_plans
"""

import asyncio
import sys
from decimal import Decimal
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select, delete
from app.core.config import settings
from app.core.database import async_session_maker
from app.modules.billing.models import BillingInterval, Plan


# Prices are per 30-day cycle in the billing currency
PLANS_DATA = [
    {
        "code": "free",
        "name": "Free",
        "description": "Get started with the basics",
        "price": Decimal("0.00"),
        "limits": {"seats": 1, "projects": 1, "api_calls_per_month": 1000},
        "features": ["basic_reports"],
        "sort_order": 0,
    },
    {
        "code": "basic",
        "name": "Basic",
        "description": "For small teams",
        "price": Decimal("100000.00"),
        "limits": {"seats": 3, "projects": 10, "api_calls_per_month": 10000},
        "features": ["basic_reports", "email_support"],
        "sort_order": 1,
    },
    {
        "code": "pro",
        "name": "Pro",
        "description": "For growing teams",
        "price": Decimal("200000.00"),
        "limits": {"seats": 10, "projects": 50, "api_calls_per_month": 100000},
        "features": ["basic_reports", "advanced_reports", "email_support", "webhooks"],
        "sort_order": 2,
    },
    {
        "code": "enterprise",
        "name": "Enterprise",
        "description": "Unlimited usage and priority support",
        "price": Decimal("1000000.00"),
        "limits": {"seats": -1, "projects": -1, "api_calls_per_month": -1},
        "features": [
            "basic_reports",
            "advanced_reports",
            "priority_support",
            "webhooks",
            "sso",
        ],
        "sort_order": 3,
    },
]


async def seed_plans(reset: bool = False):
    """Seed plans into database.

    Args:
        reset: If True, delete all existing plans first
    """
    async with async_session_maker() as session:
        if reset:
            print("Deleting existing plans...")
            await session.execute(delete(Plan))
            await session.commit()

        for plan_data in PLANS_DATA:
            values = {
                **plan_data,
                "currency": settings.BILLING_CURRENCY,
                "billing_interval": BillingInterval.MONTHLY.value,
                "interval_days": 30,
                "is_active": True,
            }
            result = await session.execute(
                select(Plan).where(Plan.code == plan_data["code"])
            )
            existing = result.scalar_one_or_none()

            if existing:
                print(f"Updating plan: {plan_data['code']}")
                for key, value in values.items():
                    setattr(existing, key, value)
            else:
                print(f"Creating plan: {plan_data['code']}")
                session.add(Plan(**values))

        await session.commit()

        result = await session.execute(select(Plan).order_by(Plan.sort_order))
        print("\n" + "=" * 40)
        print("PLANS SUMMARY")
        print("=" * 40)
        for plan in result.scalars().all():
            print(f"{plan.name:<12} {plan.code:<12} {plan.price:>14} {plan.currency}")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Seed the plan catalog")
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Delete all existing plans before seeding"
    )
    args = parser.parse_args()

    asyncio.run(seed_plans(reset=args.reset))
