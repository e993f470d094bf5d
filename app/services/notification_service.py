# file: services/notification_service.py

import logging
from dataclasses import asdict, dataclass, field
from typing import List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.attributes import set_committed_value

from app.database.models import (
    Notification,
    NotificationChannel,
    NotificationStatus,
    User,
    utcnow,
)
from app.services.apn_service import PushSender
from app.services.email_service import EmailMessage, EmailSender, EmailTemplate
from app.services.rule_evaluator import evaluate_rule, parse_notification_type
from app.services.template_renderer import resolve_template

logger = logging.getLogger(__name__)


@dataclass
class GenerationResult:
    notification_type: str
    channel: NotificationChannel
    notifications: List[Notification] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.notifications)


@dataclass
class DispatchFilters:
    status: Optional[NotificationStatus] = None
    type: Optional[str] = None
    channel: Optional[NotificationChannel] = None
    user_id: Optional[int] = None
    message: Optional[str] = None
    notification_ids: Optional[List[int]] = None


@dataclass
class DispatchStats:
    published: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    total: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


def resolve_channel(requested: Optional[NotificationChannel], template_channels: Sequence[str]) -> NotificationChannel:
    """Explicit request wins, then the template's first channel, then IN_APP."""
    if requested is not None:
        return NotificationChannel(requested)
    if template_channels:
        try:
            return NotificationChannel(str(template_channels[0]).upper())
        except ValueError:
            logger.warning("Template declares unknown channel %r, falling back to IN_APP", template_channels[0])
    return NotificationChannel.IN_APP


def initial_status(channel: NotificationChannel) -> NotificationStatus:
    # In-app notifications are visible as soon as they are stored.
    if channel == NotificationChannel.IN_APP:
        return NotificationStatus.PUBLISHED
    return NotificationStatus.CREATED


def notification_filters(filters: DispatchFilters) -> list:
    if filters.notification_ids:
        return [Notification.id.in_(filters.notification_ids)]

    conditions = []
    if filters.status:
        conditions.append(Notification.status == filters.status)
    if filters.type:
        conditions.append(Notification.notification_type == filters.type)
    if filters.channel:
        conditions.append(Notification.channel == filters.channel)
    if filters.user_id is not None:
        conditions.append(Notification.user_id == filters.user_id)
    if filters.message:
        conditions.append(Notification.message.ilike(f"%{filters.message}%"))
    return conditions


async def generate_notifications(
        db: AsyncSession,
        notification_type: str,
        channel: Optional[NotificationChannel] = None,
) -> GenerationResult:
    """
    Evaluates the rule for ``notification_type`` and stores one notification per qualifying user.
    Either every row is committed or none is.
    """
    notification_type = parse_notification_type(notification_type).value
    template = await resolve_template(db, notification_type)
    matches = await evaluate_rule(db, notification_type)

    target_channel = resolve_channel(channel, template.channels)
    result = GenerationResult(notification_type, target_channel, warnings=list(template.warnings))
    if not matches:
        return result

    users_result = await db.execute(select(User).where(User.id.in_(list(matches.keys()))))
    users = {user.id: user for user in users_result.scalars().all()}

    status = initial_status(target_channel)
    for user_id, match in matches.items():
        user = users.get(user_id)
        variables = {
            "userName": user.display_name if user else "User",
            "type": notification_type,
            **match.counters,
        }

        metadata = dict(match.counters)
        if match.transaction_ids:
            metadata["transactionIds"] = list(match.transaction_ids)
        if match.device_token:
            metadata["deviceToken"] = match.device_token

        result.notifications.append(Notification(
            user_id=user_id,
            notification_type=notification_type,
            channel=target_channel,
            status=status,
            title=template.name,
            message=template.render(variables),
            metadata_=metadata,
        ))

    try:
        db.add_all(result.notifications)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        raise

    logger.info("Generated %d %s notification(s) for type %s", result.count, target_channel.value, notification_type)
    return result


class NotificationDispatcher:
    """Delivers stored notifications over their channel and records the outcome per row."""

    def __init__(self, email_sender: EmailSender, push_sender: PushSender, email_template: EmailTemplate):
        self.email_sender = email_sender
        self.push_sender = push_sender
        self.email_template = email_template

    @staticmethod
    def _claimable(notification: Notification, filters: DispatchFilters) -> bool:
        # PUBLISHED, SENT and READ are terminal. FAILED is only retried when asked for explicitly.
        if notification.status == NotificationStatus.CREATED:
            return True
        if notification.status == NotificationStatus.FAILED and notification.channel != NotificationChannel.IN_APP:
            return bool(filters.notification_ids) or filters.status == NotificationStatus.FAILED
        return False

    async def _claim(self, db: AsyncSession, notification: Notification, new_status: NotificationStatus) -> bool:
        # Single compare-and-swap on the status we loaded; losing the race means another worker owns the row.
        stmt = (
            update(Notification)
            .where(Notification.id == notification.id, Notification.status == notification.status)
            .values(status=new_status)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        await db.commit()
        if result.rowcount != 1:
            return False
        set_committed_value(notification, "status", new_status)
        return True

    async def _finish(self, db: AsyncSession, notification: Notification, delivered: bool, stats: DispatchStats):
        if delivered:
            notification.status = NotificationStatus.SENT
            notification.sent_at = utcnow()
            stats.sent += 1
        else:
            notification.status = NotificationStatus.FAILED
            stats.failed += 1
        await db.commit()

    async def _deliver_email(self, notification: Notification) -> bool:
        user = notification.user
        content = self.email_template.generate(name=user.first_name or "User", message_body=notification.message)
        result = await self.email_sender.send_email(EmailMessage(
            to=user.email,
            subject=notification.title or content.subject,
            html=content.html,
            text=content.text,
        ))
        if not result.success:
            logger.error("Email to %s failed: %s", user.email, result.error)
        return result.success

    async def _deliver_push(self, notification: Notification) -> bool:
        device_token = notification.user.device_token
        if not device_token:
            logger.warning("No device token for user %s", notification.user_id)
            return False

        payload = {"type": notification.notification_type, **(notification.metadata_ or {})}
        return await self.push_sender.send(device_token, notification.message, payload)

    async def dispatch(self, db: AsyncSession, filters: DispatchFilters) -> DispatchStats:
        stmt = (
            select(Notification)
            .where(*notification_filters(filters))
            .options(selectinload(Notification.user))
            .order_by(Notification.id)
        )
        result = await db.execute(stmt)
        notifications = result.scalars().all()

        stats = DispatchStats(total=len(notifications))
        for notification in notifications:
            if not self._claimable(notification, filters):
                stats.skipped += 1
                continue

            if notification.channel == NotificationChannel.IN_APP:
                if await self._claim(db, notification, NotificationStatus.PUBLISHED):
                    stats.published += 1
                else:
                    stats.skipped += 1
                continue

            if not await self._claim(db, notification, NotificationStatus.SENDING):
                logger.info("Notification %s was claimed by another worker, skipping", notification.id)
                stats.skipped += 1
                continue

            try:
                if notification.channel == NotificationChannel.EMAIL:
                    delivered = await self._deliver_email(notification)
                elif notification.channel == NotificationChannel.APN:
                    delivered = await self._deliver_push(notification)
                else:
                    raise ValueError(f"Unsupported channel {notification.channel}")
            except Exception:
                logger.exception("Failed to send %s notification %s", notification.channel.value, notification.id)
                delivered = False

            await self._finish(db, notification, delivered, stats)

        logger.info("Dispatch finished: %s", stats.as_dict())
        return stats


async def trigger_notifications(
        db: AsyncSession,
        dispatcher: NotificationDispatcher,
        notification_type: str,
        channel: Optional[NotificationChannel] = None,
):
    """Generate, then immediately send the CREATED rows for the same type and channel."""
    generation = await generate_notifications(db, notification_type, channel)
    stats = await dispatcher.dispatch(db, DispatchFilters(
        status=NotificationStatus.CREATED,
        type=generation.notification_type,
        channel=generation.channel,
    ))
    return generation, stats
