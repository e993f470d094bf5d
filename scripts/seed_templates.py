# file: scripts/seed_templates.py

import argparse
import asyncio
import logging
import os
import sys

# Add the project root to the Python path to allow absolute imports from the 'app' package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
from app.config import get_settings
from app.database.connection import get_db_session, init_db
from app.database.models import NotificationChannel, NotificationTemplate, NotificationType
from app.services.scheduler_service import SchedulerService

logger = logging.getLogger("seed_templates")

DEFAULT_TEMPLATES = [
    {
        "id": NotificationType.DAILY_ACTION_ITEMS.value,
        "name": "Daily Action Items",
        "description": "Daily digest of items requiring attention.",
        "template": "Hi {userName}, you have {totalActionItems} items requiring your attention today. Log into the app to resolve them.",
        "channels": [NotificationChannel.IN_APP.value, NotificationChannel.EMAIL.value],
    },
    {
        "id": NotificationType.WEEKLY_SUMMARY.value,
        "name": "Weekly Summary",
        "description": "Weekly summary of transactions.",
        "template": "Hi {userName}, you had {totalWeeklyTransactions} transactions this week. {incompleteTransactions} need attention.",
        "channels": [NotificationChannel.EMAIL.value],
    },
    {
        "id": NotificationType.MISSING_NOTES.value,
        "name": "Missing Notes",
        "description": "Transactions missing notes.",
        "template": "Hi {userName}, you have {count} transactions missing notes. Please add details.",
        "channels": [NotificationChannel.IN_APP.value],
    },
    {
        "id": NotificationType.MEAL_ATTENDEES.value,
        "name": "Missing Meal Attendees",
        "description": "Meal expenses missing attendees.",
        "template": "Hi {userName}, please add attendees for {count} meal expenses over $25.",
        "channels": [NotificationChannel.IN_APP.value],
    },
    {
        "id": NotificationType.MARKETPLACE_RECEIPT.value,
        "name": "Missing Marketplace Receipts",
        "description": "Marketplace purchases missing receipts.",
        "template": "Hi {userName}, we found {count} marketplace purchases missing receipts.",
        "channels": [NotificationChannel.IN_APP.value, NotificationChannel.EMAIL.value],
    },
    {
        "id": NotificationType.SPECIAL_CATEGORY_RECEIPT.value,
        "name": "Missing Special Category Receipts",
        "description": "Special category expenses missing receipts.",
        "template": "Hi {userName}, you have {count} special category expenses missing receipts.",
        "channels": [NotificationChannel.IN_APP.value, NotificationChannel.EMAIL.value],
    },
]

DEFAULT_SCHEDULES = [
    ("daily-action-items", NotificationType.DAILY_ACTION_ITEMS.value, "0 9 * * *"),
    ("weekly-summary", NotificationType.WEEKLY_SUMMARY.value, "0 9 * * 1"),
]


async def seed_templates():
    await init_db()
    async with get_db_session() as db:
        for data in DEFAULT_TEMPLATES:
            template = await db.get(NotificationTemplate, data["id"])
            if template is None:
                db.add(NotificationTemplate(**data))
                logger.info("Created template %s", data["id"])
            else:
                for key, value in data.items():
                    setattr(template, key, value)
                logger.info("Updated template %s", data["id"])
        await db.commit()


def seed_schedules(scheduler: SchedulerService, channel: str):
    for name, notification_type, cron in DEFAULT_SCHEDULES:
        scheduler.create_job(
            name,
            f"Schedule for {notification_type} via {channel}",
            cron,
            {"type": notification_type, "channel": channel},
        )


def main():
    parser = argparse.ArgumentParser(description="Upsert the default notification templates.")
    parser.add_argument("--with-schedules", action="store_true", help="also create the default Cloud Scheduler jobs")
    parser.add_argument("--channel", default=NotificationChannel.IN_APP.value, help="channel used by seeded schedules")
    args = parser.parse_args()

    settings = get_settings()
    logging.basicConfig(level=settings.log_level)

    asyncio.run(seed_templates())
    if args.with_schedules:
        seed_schedules(SchedulerService.from_settings(settings), args.channel.upper())
    logger.info("Seeding finished")


if __name__ == "__main__":
    main()
