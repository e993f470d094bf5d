# file: scripts/seed_data.py

import argparse
import asyncio
import logging
import os
import random
import sys
from datetime import timedelta

# Add the project root to the Python path to allow absolute imports from the 'app' package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
from app.config import get_settings
from app.database.connection import get_db_session, init_db
from app.database.models import AccountCategory, Transaction, TransactionCategory, User, utcnow
from app.services.rule_evaluator import (
    EVENT_CATEGORIES,
    MARKETPLACE_MERCHANTS,
    RECEIPT_AMOUNT_THRESHOLD,
    SHOPPING_CATEGORIES,
    TRAVEL_CATEGORIES,
)

logger = logging.getLogger("seed_data")

FIRST_NAMES = ["Ana", "Luis", "Maria", "Carlos", "Sofia", "Jorge", "Valentina", "Diego", "Camila", "Mateo"]
LAST_NAMES = ["Garcia", "Rodriguez", "Martinez", "Lopez", "Gomez", "Perez", "Sanchez", "Ramirez"]
MERCHANTS = ["Blue Bottle", "Office Depot", "Delta", "Uber", "Coursera", "Hilton", "Staples", "Chipotle"]
DESCRIPTIONS = ["Client meeting", "Team offsite", "Monthly supplies", "Conference trip", "Software training"]

SCENARIOS = [
    "marketplace_no_receipt",
    "travel_no_receipt",
    "food_no_receipt",
    "food_no_attendee",
    "missing_note",
]


def build_transaction(user_id: int, rng: random.Random) -> Transaction:
    amount = round(rng.uniform(5, 500), 2)
    category = rng.choice(list(TransactionCategory))
    merchant_name = rng.choice(MERCHANTS)
    description = rng.choice(DESCRIPTIONS)
    receipt_url = f"https://receipts.example.com/{rng.randrange(10 ** 8)}.pdf"

    # 40% of transactions get a rule-violating scenario.
    scenario = rng.choice(SCENARIOS) if rng.random() < 0.4 else "clean"

    if scenario == "marketplace_no_receipt":
        category = rng.choice(SHOPPING_CATEGORIES)
        merchant_name = rng.choice(MARKETPLACE_MERCHANTS)
        if amount > RECEIPT_AMOUNT_THRESHOLD:
            receipt_url = None
    elif scenario == "travel_no_receipt":
        category = rng.choice(TRAVEL_CATEGORIES)
        receipt_url = None
    elif scenario == "food_no_receipt":
        category = TransactionCategory.FOOD_AND_DRINK
        if amount > RECEIPT_AMOUNT_THRESHOLD:
            receipt_url = None
    elif scenario == "food_no_attendee":
        category = TransactionCategory.FOOD_AND_DRINK
        if amount > RECEIPT_AMOUNT_THRESHOLD:
            description = "Lunch with team"
    elif scenario == "missing_note":
        category = rng.choice([*SHOPPING_CATEGORIES, *TRAVEL_CATEGORIES, *EVENT_CATEGORIES,
                               TransactionCategory.FOOD_AND_DRINK])
        description = ""

    return Transaction(
        user_id=user_id,
        amount=amount,
        category=category,
        merchant_name=merchant_name,
        description=description,
        receipt_url=receipt_url,
        account_category=AccountCategory.BUSINESS,
        date=utcnow() - timedelta(days=rng.randint(0, 30), hours=rng.randint(0, 23)),
    )


async def seed(num_users: int, seed_value=None):
    rng = random.Random(seed_value)
    await init_db()

    async with get_db_session() as db:
        for i in range(num_users):
            first_name = rng.choice(FIRST_NAMES)
            last_name = rng.choice(LAST_NAMES)
            user = User(
                email=f"{first_name}.{last_name}.{i}.{rng.randrange(10 ** 6)}@example.com".lower(),
                first_name=first_name,
                last_name=last_name,
            )
            db.add(user)
            await db.flush()

            transactions = [build_transaction(user.id, rng) for _ in range(rng.randint(20, 50))]
            db.add_all(transactions)
            logger.info("Created user %s with %d transactions", user.email, len(transactions))

        await db.commit()


def main():
    parser = argparse.ArgumentParser(description="Create demo users and business transactions.")
    parser.add_argument("--users", type=int, default=50)
    parser.add_argument("--seed", type=int, default=None, help="random seed for reproducible data")
    args = parser.parse_args()

    logging.basicConfig(level=get_settings().log_level)
    asyncio.run(seed(args.users, args.seed))
    logger.info("Seeding finished")


if __name__ == "__main__":
    main()
