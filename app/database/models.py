import enum
from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase, relationship
from sqlalchemy import Column, Integer, String, Text, JSON, ForeignKey, Numeric, DateTime, Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountCategory(str, enum.Enum):
    BUSINESS = "business"
    PERSONAL = "personal"


class TransactionCategory(str, enum.Enum):
    # Income
    INCOME_WAGES = "income_wages"
    INCOME_BUSINESS = "income_business"
    INCOME_INVESTMENTS = "income_investments"
    INCOME_OTHER = "income_other"

    # Transfer
    TRANSFER = "transfer"
    LOAN_PAYMENTS = "loan_payments"

    # Expense
    ADVERTISING = "advertising"
    SUBSCRIPTIONS = "subscriptions"
    BANK_FEES = "bank_fees"
    BUSINESS_EQUIPMENT = "business_equipment"
    EDUCATION = "education"
    INSURANCE = "insurance"
    FOOD_AND_DRINK = "food_and_drink"
    PROFESSIONAL_FEES = "professional_fees"
    RENT_AND_UTILITIES = "rent_and_utilities"
    REPAIRS = "repairs"
    SUPPLIES = "supplies"
    TRAVEL = "travel"
    TRANSPORTATION = "transportation"
    UTILITIES = "utilities"
    SHOPPING = "shopping"
    HOME = "home"
    MEDICAL = "medical"
    PERSONAL_CARE = "personal_care"
    PERSONAL_BRAND = "personal_brand"
    ENTERTAINMENT = "entertainment"
    GOVERNMENT = "government"
    NON_PROFIT = "non_profit"
    OWNER_CONTRIBUTIONS = "owner_contributions"
    EMPLOYEE_CONTRACTOR = "employee_contractor"


class NotificationChannel(str, enum.Enum):
    IN_APP = "IN_APP"
    EMAIL = "EMAIL"
    APN = "APN"


class NotificationStatus(str, enum.Enum):
    CREATED = "CREATED"
    # Claimed by a dispatcher, delivery in flight.
    SENDING = "SENDING"
    PUBLISHED = "PUBLISHED"
    SENT = "SENT"
    FAILED = "FAILED"
    READ = "READ"


class NotificationType(str, enum.Enum):
    DAILY_ACTION_ITEMS = "digest_daily_action_items"
    WEEKLY_SUMMARY = "digest_weekly_summary"
    MISSING_NOTES = "notes_needed_general"
    MEAL_ATTENDEES = "notes_needed_meal_attendees"
    MARKETPLACE_RECEIPT = "receipt_needed_marketplace"
    SPECIAL_CATEGORY_RECEIPT = "receipt_needed_special_category"


def _enum_column(enum_cls, length: int):
    # Stored as VARCHAR holding the enum *value*, so the same schema works on sqlite and postgres.
    return Enum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


# Base class for all models
class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    email = Column(Text, unique=True, nullable=False, index=True)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    device_token = Column(Text, nullable=True)

    transactions = relationship("Transaction", back_populates="user", cascade="all, delete-orphan")
    notifications = relationship("Notification", back_populates="user", cascade="all, delete-orphan")

    @property
    def display_name(self) -> str:
        return self.first_name or self.email or "User"


class Transaction(Base):
    __tablename__ = "transactions"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Numeric(12, 2, asdecimal=False), nullable=False)
    category = Column(_enum_column(TransactionCategory, 50), nullable=False)
    merchant_name = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    receipt_url = Column(Text, nullable=True)
    account_category = Column(_enum_column(AccountCategory, 20), nullable=False, default=AccountCategory.BUSINESS)
    date = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    user = relationship("User", back_populates="transactions")


class NotificationTemplate(Base):
    __tablename__ = "notification_templates"
    # Same key as Notification.notification_type
    id = Column(String(100), primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    template = Column(Text, nullable=False)
    channels = Column(JSON, nullable=False, default=list)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    # Soft reference to NotificationTemplate.id; the template may not exist.
    notification_type = Column(String(100), nullable=False, index=True)
    channel = Column(_enum_column(NotificationChannel, 20), nullable=False)
    status = Column(_enum_column(NotificationStatus, 20), nullable=False, default=NotificationStatus.CREATED, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    sent_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="notifications")
