# file: services/providers.py
"""
Process-wide service handles. Built once at startup, kept on ``app.state``
and handed to the controllers through FastAPI dependencies.
"""

import logging

from fastapi import FastAPI, Request

from app.config import Settings
from app.services.apn_service import APNService
from app.services.email_service import EmailTemplate, MockEmailService
from app.services.notification_service import NotificationDispatcher
from app.services.scheduler_service import SchedulerService

logger = logging.getLogger(__name__)


def init_services(app: FastAPI, settings: Settings):
    email_service = MockEmailService(settings.sent_emails_dir)
    apn_service = APNService(settings.apn)

    app.state.email_service = email_service
    app.state.apn_service = apn_service
    app.state.dispatcher = NotificationDispatcher(
        email_sender=email_service,
        push_sender=apn_service,
        email_template=EmailTemplate(settings.email),
    )
    app.state.scheduler = SchedulerService.from_settings(settings)
    logger.info("Services initialized (apn configured: %s)", apn_service.is_configured)


async def close_services(app: FastAPI):
    apn_service = getattr(app.state, "apn_service", None)
    if apn_service is not None:
        await apn_service.aclose()


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_scheduler_service(request: Request) -> SchedulerService:
    return request.app.state.scheduler


def get_email_service(request: Request) -> MockEmailService:
    return request.app.state.email_service
