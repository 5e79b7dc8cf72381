"""
Database seeding script for development data.

Creates an ADMIN, a STREAMER and a VIEWER with accounts, the platform
account and the gift catalog, then prints a bearer token for each user.
Run this script after database is set up but before first use.
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from billing_backend.app.db.session import AsyncSessionLocal, init_models
from billing_backend.app.core.jwt import create_access_token
from billing_backend.app.domain.ledger.ledger_store import LedgerStore
from billing_backend.app.models.enums import UserRole
from billing_backend.app.models.gift import GiftCatalogItem
from billing_backend.app.models.ledger_enums import EntryKind
from billing_backend.app.models.user import User
from billing_backend.app.main import app  # noqa: F401  registers every model
from sqlalchemy import select

# (name, description, price in centavos, rarity)
GIFT_CATALOG = [
    ("Rose", "A single red rose", 500, "common"),
    ("Heart", "Show some love", 1000, "common"),
    ("Champagne", "Time to celebrate", 5000, "rare"),
    ("Diamond", "Shine bright", 20000, "epic"),
    ("Crown", "Royalty treatment", 100000, "legendary"),
]


async def seed_data():
    await init_models()

    async with AsyncSessionLocal() as db:
        print("🌱 Starting seeding...")

        result = await db.execute(select(User).where(User.username == "admin"))
        if result.scalar_one_or_none():
            print("ℹ️  Seed data already exists, skipping")
            return

        users = [
            User(email="admin@billing.local", username="admin", role=UserRole.ADMIN),
            User(email="streamer@billing.local", username="streamer", role=UserRole.STREAMER,
                 payout_key="streamer@billing.local"),
            User(email="viewer@billing.local", username="viewer", role=UserRole.VIEWER),
        ]
        db.add_all(users)
        await db.flush()

        for user in users:
            await LedgerStore.open_account(db, user.id)
        await LedgerStore.get_platform_account(db)
        print("✅ Created users and accounts")

        # Starting balance so the viewer can place calls right away
        viewer_account = await LedgerStore.get_account_for_user(db, users[2].id)
        await LedgerStore.post_entry(db, viewer_account.id, 10000, EntryKind.DEPOSIT, description="Seed deposit")
        print("✅ Credited 10000 to the viewer")

        db.add_all([
            GiftCatalogItem(name=name, description=description, price=price, rarity=rarity)
            for name, description, price, rarity in GIFT_CATALOG
        ])
        print(f"✅ Created {len(GIFT_CATALOG)} catalog gifts")

        await db.commit()

        print("\n🎉 Seeding completed successfully!")
        print("\nBearer tokens:")
        for user in users:
            print(f"  - {user.role.value:<8} {user.username}: {create_access_token(user.id, user.role.value)}")


if __name__ == "__main__":
    asyncio.run(seed_data())
