# file: services/rule_evaluator.py
"""
Eligibility rules for the built-in notification types.

Each rule is a fixed SQL predicate over business-classified transactions.
Evaluating a rule returns the qualifying users keyed by user id, each with
a small set of integer counters and, for the per-transaction rules, the ids
of the transactions that matched.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Awaitable, Callable, Dict, List, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import (
    AccountCategory,
    NotificationType,
    Transaction,
    TransactionCategory,
    User,
    utcnow,
)
from app.services.exceptions import UnknownNotificationType

logger = logging.getLogger(__name__)

MARKETPLACE_MERCHANTS = ["Amazon", "Walmart", "Etsy", "eBay", "Target"]

SHOPPING_CATEGORIES = [
    TransactionCategory.SHOPPING,
    TransactionCategory.SUPPLIES,
    TransactionCategory.BUSINESS_EQUIPMENT,
]

TRAVEL_CATEGORIES = [
    TransactionCategory.TRAVEL,
    TransactionCategory.TRANSPORTATION,
]

EVENT_CATEGORIES = [
    TransactionCategory.ENTERTAINMENT,
    TransactionCategory.EDUCATION,
]

# Categories where a business expense needs a description.
NOTE_SENSITIVE_CATEGORIES = [
    *SHOPPING_CATEGORIES,
    *TRAVEL_CATEGORIES,
    *EVENT_CATEGORIES,
    TransactionCategory.FOOD_AND_DRINK,
]

RECEIPT_AMOUNT_THRESHOLD = 25
ATTENDEE_MARKER = "Attendee"
WEEKLY_WINDOW = timedelta(days=7)


@dataclass
class RuleMatch:
    user_id: int
    counters: Dict[str, int] = field(default_factory=dict)
    transaction_ids: List[int] = field(default_factory=list)
    device_token: Optional[str] = None

    @property
    def count(self) -> int:
        return self.counters.get("count", 0)


# --- Predicates ---

def _is_business():
    return Transaction.account_category == AccountCategory.BUSINESS


def _receipt_missing():
    return Transaction.receipt_url.is_(None)


def _description_missing():
    return or_(Transaction.description.is_(None), Transaction.description == "")


def marketplace_receipt_missing():
    return and_(
        _receipt_missing(),
        Transaction.amount > RECEIPT_AMOUNT_THRESHOLD,
        Transaction.category.in_(SHOPPING_CATEGORIES),
        func.lower(Transaction.merchant_name).in_([m.lower() for m in MARKETPLACE_MERCHANTS]),
    )


def special_category_receipt_missing():
    return and_(
        _receipt_missing(),
        or_(
            # Travel always needs a receipt
            Transaction.category.in_(TRAVEL_CATEGORIES),
            and_(
                Transaction.category == TransactionCategory.FOOD_AND_DRINK,
                Transaction.amount > RECEIPT_AMOUNT_THRESHOLD,
            ),
            and_(
                Transaction.category.in_(EVENT_CATEGORIES),
                Transaction.amount > RECEIPT_AMOUNT_THRESHOLD,
            ),
        ),
    )


def notes_missing():
    return and_(
        _description_missing(),
        Transaction.category.in_(NOTE_SENSITIVE_CATEGORIES),
    )


def meal_attendees_missing():
    return and_(
        Transaction.amount >= RECEIPT_AMOUNT_THRESHOLD,
        Transaction.category == TransactionCategory.FOOD_AND_DRINK,
        # NOT ILIKE is NULL for a NULL description, so that case is spelled out.
        or_(
            Transaction.description.is_(None),
            ~Transaction.description.ilike(f"%{ATTENDEE_MARKER}%"),
        ),
    )


def weekly_incomplete():
    return or_(
        and_(
            _receipt_missing(),
            Transaction.amount > RECEIPT_AMOUNT_THRESHOLD,
            Transaction.category.in_([
                *SHOPPING_CATEGORIES,
                *EVENT_CATEGORIES,
                TransactionCategory.FOOD_AND_DRINK,
            ]),
        ),
        and_(
            _receipt_missing(),
            Transaction.category.in_(TRAVEL_CATEGORIES),
        ),
        notes_missing(),
    )


# --- Query helpers ---

async def _transactions_by_user(db: AsyncSession, predicate) -> Dict[int, RuleMatch]:
    stmt = (
        select(Transaction.id, Transaction.user_id, User.device_token)
        .join(User, User.id == Transaction.user_id)
        .where(_is_business(), predicate)
        .order_by(Transaction.user_id, Transaction.id)
    )
    result = await db.execute(stmt)

    matches: Dict[int, RuleMatch] = {}
    for transaction_id, user_id, device_token in result.all():
        match = matches.get(user_id)
        if match is None:
            match = matches[user_id] = RuleMatch(user_id=user_id, device_token=device_token)
        match.transaction_ids.append(transaction_id)

    for match in matches.values():
        match.counters["count"] = len(match.transaction_ids)
    return matches


async def _count_by_user(db: AsyncSession, *conditions) -> Dict[int, int]:
    stmt = (
        select(Transaction.user_id, func.count(Transaction.id))
        .where(_is_business(), *conditions)
        .group_by(Transaction.user_id)
    )
    result = await db.execute(stmt)
    return {user_id: count for user_id, count in result.all()}


async def _device_tokens(db: AsyncSession, user_ids) -> Dict[int, Optional[str]]:
    if not user_ids:
        return {}
    result = await db.execute(select(User.id, User.device_token).where(User.id.in_(list(user_ids))))
    return {user_id: token for user_id, token in result.all()}


def _merge_counts(keys: List[str], groups: List[Dict[int, int]]) -> Dict[int, Dict[str, int]]:
    stats: Dict[int, Dict[str, int]] = {}
    for key, group in zip(keys, groups):
        for user_id, count in group.items():
            stats.setdefault(user_id, {k: 0 for k in keys})[key] = count
    return stats


# --- Rules ---

async def query_marketplace_receipts(db: AsyncSession) -> Dict[int, RuleMatch]:
    return await _transactions_by_user(db, marketplace_receipt_missing())


async def query_special_category_receipts(db: AsyncSession) -> Dict[int, RuleMatch]:
    return await _transactions_by_user(db, special_category_receipt_missing())


async def query_missing_notes(db: AsyncSession) -> Dict[int, RuleMatch]:
    return await _transactions_by_user(db, notes_missing())


async def query_meal_attendees(db: AsyncSession) -> Dict[int, RuleMatch]:
    return await _transactions_by_user(db, meal_attendees_missing())


async def query_daily_action_items(db: AsyncSession) -> Dict[int, RuleMatch]:
    keys = ["missingReceipts", "missingNotes", "missingAttendees"]
    stats = _merge_counts(keys, [
        await _count_by_user(db, or_(marketplace_receipt_missing(), special_category_receipt_missing())),
        await _count_by_user(db, notes_missing()),
        await _count_by_user(db, meal_attendees_missing()),
    ])
    tokens = await _device_tokens(db, stats.keys())

    matches = {}
    for user_id, counters in stats.items():
        total = sum(counters.values())
        counters["totalActionItems"] = total
        counters["count"] = total
        matches[user_id] = RuleMatch(user_id=user_id, counters=counters, device_token=tokens.get(user_id))
    return matches


async def query_weekly_summary(db: AsyncSession) -> Dict[int, RuleMatch]:
    since = utcnow() - WEEKLY_WINDOW
    in_window = Transaction.date >= since

    keys = ["totalWeeklyTransactions", "incompleteTransactions"]
    stats = _merge_counts(keys, [
        await _count_by_user(db, in_window),
        await _count_by_user(db, in_window, weekly_incomplete()),
    ])
    tokens = await _device_tokens(db, stats.keys())

    matches = {}
    for user_id, counters in stats.items():
        counters["count"] = counters["totalWeeklyTransactions"]
        matches[user_id] = RuleMatch(user_id=user_id, counters=counters, device_token=tokens.get(user_id))
    return matches


RULES: Dict[NotificationType, Callable[[AsyncSession], Awaitable[Dict[int, RuleMatch]]]] = {
    NotificationType.DAILY_ACTION_ITEMS: query_daily_action_items,
    NotificationType.WEEKLY_SUMMARY: query_weekly_summary,
    NotificationType.MISSING_NOTES: query_missing_notes,
    NotificationType.MEAL_ATTENDEES: query_meal_attendees,
    NotificationType.MARKETPLACE_RECEIPT: query_marketplace_receipts,
    NotificationType.SPECIAL_CATEGORY_RECEIPT: query_special_category_receipts,
}


def parse_notification_type(value) -> NotificationType:
    try:
        return NotificationType(value)
    except ValueError:
        raise UnknownNotificationType(value)


async def evaluate_rule(db: AsyncSession, notification_type) -> Dict[int, RuleMatch]:
    """Run the eligibility rule for ``notification_type``; users with a zero count are dropped."""
    rule = RULES[parse_notification_type(notification_type)]
    matches = await rule(db)
    qualifying = {user_id: match for user_id, match in matches.items() if match.count > 0}
    logger.info("Rule %s matched %d user(s)", notification_type, len(qualifying))
    return qualifying
