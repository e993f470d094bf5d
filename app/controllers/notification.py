# file: controllers/notification.py

import logging
import math
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import HTMLResponse, PlainTextResponse
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.database.connection import get_db
from app.database.models import (
    Notification as NotificationModel,
    NotificationChannel,
    NotificationStatus,
    NotificationTemplate as NotificationTemplateModel,
)
from app.models.notification import (
    GenerateResponse,
    NotificationPage,
    NotificationRequest,
    NotificationResponse,
    PageMeta,
    SendMatchingRequest,
    SendMatchingResponse,
    TriggerResponse,
    UserSummary,
)
from app.models.template import NotificationTemplateResponse, NotificationTemplateUpdate
from app.services.email_service import MockEmailService
from app.services.exceptions import UnknownNotificationType
from app.services.notification_service import (
    DispatchFilters,
    NotificationDispatcher,
    generate_notifications,
    notification_filters,
    trigger_notifications,
)
from app.services.providers import get_dispatcher, get_email_service

router = APIRouter()
logger = logging.getLogger(__name__)


def _internal_error() -> HTTPException:
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error")


def _require_type(request: NotificationRequest) -> str:
    if not request.type:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Notification type is required")
    return request.type


def convert_to_pydantic(db_notification: NotificationModel) -> NotificationResponse:
    # Needs the user relationship to be loaded already.
    return NotificationResponse(
        id=db_notification.id,
        user_id=db_notification.user_id,
        notification_type=db_notification.notification_type,
        channel=db_notification.channel,
        status=db_notification.status,
        title=db_notification.title,
        message=db_notification.message,
        metadata=db_notification.metadata_,
        created_at=db_notification.created_at,
        sent_at=db_notification.sent_at,
        user=UserSummary.model_validate(db_notification.user) if db_notification.user else None,
    )


@router.post("/notifications/trigger", response_model=TriggerResponse)
async def trigger_notification(
        request: NotificationRequest,
        db: AsyncSession = Depends(get_db),
        dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Generates notifications for a type and immediately sends the ones awaiting delivery."""
    logger.info("[Trigger] Received trigger for %s via %s", request.type, request.channel)
    notification_type = _require_type(request)

    try:
        generation, stats = await trigger_notifications(db, dispatcher, notification_type, request.channel)
    except UnknownNotificationType as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception:
        logger.exception("[Trigger] Error processing %s", notification_type)
        raise _internal_error()

    logger.info("[Trigger] Completed %s: %s", notification_type, stats.as_dict())
    return TriggerResponse(
        success=True,
        message="Trigger processed successfully",
        generated=generation.count,
        warnings=generation.warnings,
        stats=stats.as_dict(),
    )


@router.post("/create-notification", response_model=GenerateResponse)
async def create_notification(request: NotificationRequest, db: AsyncSession = Depends(get_db)):
    notification_type = _require_type(request)

    try:
        generation = await generate_notifications(db, notification_type, request.channel)
    except UnknownNotificationType as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception:
        logger.exception("Error generating notifications for %s", notification_type)
        raise _internal_error()

    return GenerateResponse(
        message=f"Generated {generation.count} notifications for type {notification_type}",
        count=generation.count,
        warnings=generation.warnings,
    )


@router.get("/get-notifications", response_model=NotificationPage)
async def get_notifications(
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=500),
        status_filter: Optional[NotificationStatus] = Query(None, alias="status"),
        type: Optional[str] = None,
        channel: Optional[NotificationChannel] = None,
        user_id: Optional[int] = Query(None, alias="userId"),
        message: Optional[str] = None,
        db: AsyncSession = Depends(get_db),
):
    conditions = notification_filters(DispatchFilters(
        status=status_filter, type=type, channel=channel, user_id=user_id, message=message,
    ))

    try:
        stmt = (
            select(NotificationModel)
            .where(*conditions)
            .options(selectinload(NotificationModel.user))
            .order_by(NotificationModel.created_at.desc(), NotificationModel.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        notifications = (await db.execute(stmt)).scalars().all()
        total = (await db.execute(select(func.count(NotificationModel.id)).where(*conditions))).scalar_one()
    except Exception:
        logger.exception("Error fetching notifications")
        raise _internal_error()

    return NotificationPage(
        data=[convert_to_pydantic(n) for n in notifications],
        meta=PageMeta(total=total, page=page, limit=limit, total_pages=math.ceil(total / limit)),
    )


@router.post("/send-matching-notifications", response_model=SendMatchingResponse)
async def send_matching_notifications(
        request: SendMatchingRequest,
        db: AsyncSession = Depends(get_db),
        dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    filters = DispatchFilters(
        status=request.status,
        type=request.type,
        channel=request.channel,
        user_id=request.user_id,
        message=request.message,
        notification_ids=request.notification_ids,
    )
    try:
        stats = await dispatcher.dispatch(db, filters)
    except Exception:
        logger.exception("Error processing notifications")
        raise _internal_error()

    return SendMatchingResponse(message="Processed notifications", stats=stats.as_dict())


# --- Templates ---

@router.get("/notification-templates", response_model=list[NotificationTemplateResponse])
async def get_notification_templates(db: AsyncSession = Depends(get_db)):
    try:
        result = await db.execute(select(NotificationTemplateModel).order_by(NotificationTemplateModel.id))
        return result.scalars().all()
    except Exception:
        logger.exception("Error fetching templates")
        raise _internal_error()


@router.put("/notification-templates/{template_id}", response_model=NotificationTemplateResponse)
async def update_notification_template(
        template_id: str,
        update: NotificationTemplateUpdate,
        db: AsyncSession = Depends(get_db),
):
    db_template = await db.get(NotificationTemplateModel, template_id)
    if not db_template:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Template not found")

    if update.template is not None:
        db_template.template = update.template
    if update.name is not None:
        db_template.name = update.name
    if update.channels is not None:
        db_template.channels = [channel.value for channel in update.channels]

    try:
        await db.commit()
        await db.refresh(db_template)
    except Exception:
        await db.rollback()
        logger.exception("Error updating template %s", template_id)
        raise _internal_error()
    return db_template


@router.get("/email-mock/latest", response_class=HTMLResponse)
async def get_latest_email(email_service: MockEmailService = Depends(get_email_service)):
    content = email_service.latest_email()
    if content is None:
        return PlainTextResponse("No emails found", status_code=status.HTTP_404_NOT_FOUND)
    return HTMLResponse(content=content)
