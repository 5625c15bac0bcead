"""Sync the ``plans`` table with the static plan catalog.

Creates missing plan rows, refreshes display name, tokens and price of
existing ones, and deactivates rows for plans no longer in the catalog.
Safe to run repeatedly.

Run from the backend directory:
    python -m scripts.seed_plans
"""

import asyncio
import sys
from pathlib import Path

# Add backend to path so imports work when run as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.plans import PLANS
from app.database import async_session_factory, engine
from app.models.plan import Plan


async def sync_plan_rows(session: AsyncSession) -> dict[str, list[str]]:
    """Bring plan rows in line with the catalog. Returns the plan names per action."""
    result = await session.execute(select(Plan))
    rows = {plan.name: plan for plan in result.scalars().all()}
    summary: dict[str, list[str]] = {"created": [], "updated": [], "deactivated": []}

    for config in PLANS.values():
        values = {
            "display_name": config.display_name,
            "tokens_per_month": config.tokens,
            "price_cents": config.price_monthly_cents,
            "is_active": True,
        }
        row = rows.get(config.name)
        if row is None:
            session.add(Plan(name=config.name, **values))
            summary["created"].append(config.name)
            continue
        changed = {k: v for k, v in values.items() if getattr(row, k) != v}
        if changed:
            for name, value in changed.items():
                setattr(row, name, value)
            summary["updated"].append(config.name)

    for name, row in rows.items():
        if name not in PLANS and row.is_active:
            row.is_active = False
            summary["deactivated"].append(name)

    await session.flush()
    return summary


async def seed() -> None:
    async with async_session_factory() as session:
        summary = await sync_plan_rows(session)
        await session.commit()

    for action, names in summary.items():
        print(f"{action.capitalize():<12} {', '.join(names) or '-'}")
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed())
