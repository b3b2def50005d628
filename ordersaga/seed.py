import asyncio

from .common import database
from .inventory.service import StockReservationEngine

# product_id -> quantity on hand
SAMPLE_STOCK = {
    1: 20,
    2: 150,
    3: 80,
    4: 120,
    5: 35,
    10: 5,
    20: 3,
}


async def seed_inventory() -> None:
    await database.init_db()
    engine = StockReservationEngine()
    existing = {row["productId"] for row in await engine.list_all()}
    added = 0
    for product_id, quantity in SAMPLE_STOCK.items():
        # never overwrite live stock
        if product_id in existing:
            continue
        await engine.upsert(product_id, quantity)
        added += 1
    print(f"Seed complete. Added {added} inventory records.")


async def amain():
    try:
        await seed_inventory()
    finally:
        await database.dispose_db()


if __name__ == "__main__":
    asyncio.run(amain())
