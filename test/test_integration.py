import pytest
from httpx import AsyncClient
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import (
    Notification,
    NotificationChannel,
    NotificationStatus,
    NotificationType,
    TransactionCategory,
)
from app.services.email_service import EmailResult
from app.services.exceptions import SchedulerNotConfigured
from app.services.notification_service import DispatchFilters, generate_notifications
from app.services.scheduler_service import encode_payload

from conftest import add_template, add_transaction, create_user

MEAL_TEMPLATE = "Hi {userName}, please add attendees for {count} meal expenses over $25."


async def _notifications(db: AsyncSession):
    db.expire_all()
    result = await db.execute(select(Notification).order_by(Notification.id))
    return result.scalars().all()


###############################################################
# 1. Generation
###############################################################

@pytest.mark.asyncio
async def test_meal_attendee_scenario_end_to_end(client: AsyncClient, db_session: AsyncSession):
    """A $50 team lunch with a receipt needs attendees but no receipt."""
    user = await create_user(db_session, "ana@example.com", "Ana")
    await add_transaction(db_session, user, 50, TransactionCategory.FOOD_AND_DRINK,
                          description="Lunch with team", receipt_url="https://receipts.example.com/1.pdf")
    await add_template(db_session, NotificationType.MEAL_ATTENDEES.value, MEAL_TEMPLATE, ["IN_APP"],
                       name="Missing Meal Attendees")

    response = await client.post("/api/notifications/trigger",
                                 json={"type": "notes_needed_meal_attendees", "channel": "IN_APP"})
    assert response.status_code == 200, response.text
    assert response.json()["generated"] == 1

    response = await client.post("/api/notifications/trigger",
                                 json={"type": "receipt_needed_special_category", "channel": "IN_APP"})
    assert response.status_code == 200, response.text
    assert response.json()["generated"] == 0

    response = await client.get("/api/get-notifications")
    body = response.json()
    assert body["meta"]["total"] == 1
    notification = body["data"][0]
    assert notification["notificationType"] == "notes_needed_meal_attendees"
    assert notification["channel"] == "IN_APP"
    assert notification["status"] == "PUBLISHED"
    assert notification["title"] == "Missing Meal Attendees"
    assert notification["message"] == "Hi Ana, please add attendees for 1 meal expenses over $25."
    assert notification["metadata"]["count"] == 1
    assert len(notification["metadata"]["transactionIds"]) == 1
    assert notification["user"]["email"] == "ana@example.com"


@pytest.mark.asyncio
async def test_generate_twice_creates_two_rows(client: AsyncClient, db_session: AsyncSession):
    user = await create_user(db_session, "ana@example.com", "Ana")
    await add_transaction(db_session, user, 10, TransactionCategory.SHOPPING)

    for _ in range(2):
        response = await client.post("/api/create-notification", json={"type": "notes_needed_general"})
        assert response.json()["count"] == 1

    assert len(await _notifications(db_session)) == 2


@pytest.mark.asyncio
async def test_missing_template_uses_fallback_and_warns(client: AsyncClient, db_session: AsyncSession):
    user = await create_user(db_session, "ana@example.com", "Ana")
    await add_transaction(db_session, user, 10, TransactionCategory.SHOPPING)

    response = await client.post("/api/create-notification", json={"type": "notes_needed_general"})

    assert response.json()["warnings"] == ["No template found for type notes_needed_general, using defaults."]
    [notification] = await _notifications(db_session)
    assert notification.message == "Notification: notes_needed_general count: 1"
    assert notification.channel == NotificationChannel.IN_APP


@pytest.mark.asyncio
async def test_explicit_channel_overrides_template(db_session: AsyncSession):
    user = await create_user(db_session, "ana@example.com", "Ana")
    await add_transaction(db_session, user, 10, TransactionCategory.SHOPPING)
    await add_template(db_session, NotificationType.MISSING_NOTES.value, "{count} notes missing", ["IN_APP"])

    result = await generate_notifications(db_session, "notes_needed_general", NotificationChannel.EMAIL)

    assert result.channel == NotificationChannel.EMAIL
    assert result.notifications[0].status == NotificationStatus.CREATED


async def _notification_count(db: AsyncSession) -> int:
    return (await db.execute(select(func.count(Notification.id)))).scalar_one()


@pytest.mark.asyncio
async def test_failed_commit_persists_nothing(client: AsyncClient, db_session: AsyncSession, mocker):
    await _email_notification(db_session, email="ana@example.com")
    await _email_notification(db_session, email="bob@example.com")

    async def flush_then_fail():
        await db_session.flush()
        raise OperationalError("COMMIT", {}, Exception("connection lost"))

    mocker.patch.object(db_session, "commit", side_effect=flush_then_fail)

    response = await client.post("/api/create-notification", json={"type": "notes_needed_general"})

    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error"}
    assert await _notification_count(db_session) == 0


@pytest.mark.asyncio
async def test_failed_rule_query_persists_nothing(client: AsyncClient, db_session: AsyncSession, mocker):
    user = await _email_notification(db_session)
    await add_transaction(db_session, user, 40, TransactionCategory.FOOD_AND_DRINK)
    mocker.patch("app.services.rule_evaluator._device_tokens",
                 side_effect=OperationalError("SELECT", {}, Exception("connection lost")))

    response = await client.post("/api/create-notification", json={"type": "digest_daily_action_items"})

    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error"}
    assert await _notification_count(db_session) == 0


@pytest.mark.asyncio
async def test_generate_rejects_bad_requests(client: AsyncClient):
    response = await client.post("/api/create-notification", json={})
    assert response.status_code == 400
    assert response.json() == {"error": "Notification type is required"}

    response = await client.post("/api/create-notification", json={"type": "bogus"})
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid notification type: bogus"}

    response = await client.post("/api/create-notification", json={"type": "notes_needed_general", "channel": "sms"})
    assert response.status_code == 400
    assert "error" in response.json()


###############################################################
# 2. Dispatch
###############################################################

async def _email_notification(db: AsyncSession, email="ana@example.com", device_token=None):
    user = await create_user(db, email, "Ana", device_token=device_token)
    await add_transaction(db, user, 10, TransactionCategory.SHOPPING)
    return user


@pytest.mark.asyncio
async def test_email_dispatch_marks_sent(client: AsyncClient, db_session: AsyncSession, email_sender):
    await _email_notification(db_session)
    await client.post("/api/create-notification", json={"type": "notes_needed_general", "channel": "EMAIL"})

    response = await client.post("/api/send-matching-notifications", json={"status": "CREATED", "channel": "EMAIL"})

    assert response.status_code == 200, response.text
    assert response.json()["stats"] == {"published": 0, "sent": 1, "failed": 0, "skipped": 0, "total": 1}
    [notification] = await _notifications(db_session)
    assert notification.status == NotificationStatus.SENT
    assert notification.sent_at is not None
    assert email_sender.sent[0].to == "ana@example.com"
    assert email_sender.sent[0].subject == "notes_needed_general"


@pytest.mark.asyncio
async def test_email_failure_marks_failed(client: AsyncClient, db_session: AsyncSession, email_sender):
    email_sender.succeed = False
    await _email_notification(db_session)
    await client.post("/api/create-notification", json={"type": "notes_needed_general", "channel": "EMAIL"})

    response = await client.post("/api/send-matching-notifications", json={"status": "CREATED"})

    assert response.json()["stats"]["failed"] == 1
    [notification] = await _notifications(db_session)
    assert notification.status == NotificationStatus.FAILED
    assert notification.sent_at is None


@pytest.mark.asyncio
async def test_push_without_device_token_fails(client: AsyncClient, db_session: AsyncSession, push_sender):
    await _email_notification(db_session)
    await client.post("/api/create-notification", json={"type": "notes_needed_general", "channel": "APN"})

    response = await client.post("/api/send-matching-notifications", json={"channel": "APN"})

    assert response.json()["stats"]["failed"] == 1
    assert push_sender.sent == []
    [notification] = await _notifications(db_session)
    assert notification.status == NotificationStatus.FAILED


@pytest.mark.asyncio
async def test_push_with_device_token_is_sent(client: AsyncClient, db_session: AsyncSession, push_sender):
    await _email_notification(db_session, device_token="abcdef")
    await client.post("/api/create-notification", json={"type": "notes_needed_general", "channel": "APN"})

    response = await client.post("/api/send-matching-notifications", json={"channel": "APN"})

    assert response.json()["stats"]["sent"] == 1
    device_token, alert, payload = push_sender.sent[0]
    assert device_token == "abcdef"
    assert alert == "Notification: notes_needed_general count: 1"
    assert payload["type"] == "notes_needed_general"


@pytest.mark.asyncio
async def test_notification_ids_override_other_filters(client: AsyncClient, db_session: AsyncSession):
    await _email_notification(db_session)
    await client.post("/api/create-notification", json={"type": "notes_needed_general", "channel": "EMAIL"})
    await client.post("/api/create-notification", json={"type": "notes_needed_general", "channel": "EMAIL"})
    first, second = await _notifications(db_session)

    response = await client.post("/api/send-matching-notifications",
                                 json={"notificationIds": [first.id], "channel": "APN", "status": "SENT"})

    assert response.json()["stats"]["total"] == 1
    first, second = await _notifications(db_session)
    assert first.status == NotificationStatus.SENT
    assert second.status == NotificationStatus.CREATED


async def _stored_notification(db: AsyncSession, user, channel: NotificationChannel,
                               status: NotificationStatus) -> Notification:
    notification = Notification(
        user_id=user.id,
        notification_type=NotificationType.MISSING_NOTES.value,
        channel=channel,
        status=status,
        title="Missing Notes",
        message="You have 1 transactions missing notes.",
        metadata_={"count": 1},
    )
    db.add(notification)
    await db.commit()
    return notification


@pytest.mark.asyncio
async def test_in_app_dispatch_publishes_created_rows(client: AsyncClient, db_session: AsyncSession,
                                                      email_sender):
    user = await _email_notification(db_session)
    await _stored_notification(db_session, user, NotificationChannel.IN_APP, NotificationStatus.CREATED)
    await _stored_notification(db_session, user, NotificationChannel.IN_APP, NotificationStatus.READ)

    response = await client.post("/api/send-matching-notifications", json={"channel": "IN_APP"})

    assert response.json()["stats"] == {"published": 1, "sent": 0, "failed": 0, "skipped": 1, "total": 2}
    assert email_sender.sent == []
    created, read = await _notifications(db_session)
    assert created.status == NotificationStatus.PUBLISHED
    assert read.status == NotificationStatus.READ


@pytest.mark.asyncio
async def test_terminal_rows_are_not_sent_again(client: AsyncClient, db_session: AsyncSession, email_sender):
    user = await _email_notification(db_session)
    await _stored_notification(db_session, user, NotificationChannel.EMAIL, NotificationStatus.SENT)
    await _stored_notification(db_session, user, NotificationChannel.EMAIL, NotificationStatus.FAILED)

    response = await client.post("/api/send-matching-notifications", json={"channel": "EMAIL"})

    assert response.json()["stats"] == {"published": 0, "sent": 0, "failed": 0, "skipped": 2, "total": 2}
    assert email_sender.sent == []
    sent, failed = await _notifications(db_session)
    assert sent.status == NotificationStatus.SENT
    assert failed.status == NotificationStatus.FAILED


@pytest.mark.asyncio
async def test_failed_rows_are_retried_when_targeted(client: AsyncClient, db_session: AsyncSession, email_sender):
    user = await _email_notification(db_session)
    by_id = await _stored_notification(db_session, user, NotificationChannel.EMAIL, NotificationStatus.FAILED)
    await _stored_notification(db_session, user, NotificationChannel.EMAIL, NotificationStatus.FAILED)

    response = await client.post("/api/send-matching-notifications", json={"notificationIds": [by_id.id]})
    assert response.json()["stats"]["sent"] == 1

    response = await client.post("/api/send-matching-notifications", json={"status": "FAILED"})
    assert response.json()["stats"] == {"published": 0, "sent": 1, "failed": 0, "skipped": 0, "total": 1}

    assert [n.status for n in await _notifications(db_session)] == [NotificationStatus.SENT, NotificationStatus.SENT]
    assert len(email_sender.sent) == 2


@pytest.mark.asyncio
async def test_raising_sender_fails_row_and_batch_continues(client: AsyncClient, db_session: AsyncSession,
                                                            email_sender, mocker):
    await _email_notification(db_session, email="ana@example.com")
    await _email_notification(db_session, email="bob@example.com")
    await client.post("/api/create-notification", json={"type": "notes_needed_general", "channel": "EMAIL"})
    mocker.patch.object(email_sender, "send_email",
                        side_effect=[RuntimeError("smtp down"), EmailResult(success=True, message_id="email_1.html")])

    response = await client.post("/api/send-matching-notifications", json={"status": "CREATED", "channel": "EMAIL"})

    assert response.status_code == 200, response.text
    assert response.json()["stats"] == {"published": 0, "sent": 1, "failed": 1, "skipped": 0, "total": 2}
    first, second = await _notifications(db_session)
    assert first.status == NotificationStatus.FAILED
    assert first.sent_at is None
    assert second.status == NotificationStatus.SENT
    assert second.sent_at is not None


@pytest.mark.asyncio
async def test_row_claimed_elsewhere_is_skipped(db_session: AsyncSession, dispatcher, email_sender):
    await _email_notification(db_session)
    result = await generate_notifications(db_session, "notes_needed_general", NotificationChannel.EMAIL)
    notification = result.notifications[0]

    # Another worker moves the row on; this session still holds the stale CREATED status.
    await db_session.execute(
        update(Notification)
        .where(Notification.id == notification.id)
        .values(status=NotificationStatus.SENDING)
        .execution_options(synchronize_session=False)
    )
    await db_session.commit()

    stats = await dispatcher.dispatch(db_session, DispatchFilters(notification_ids=[notification.id]))

    assert stats.skipped == 1
    assert stats.sent == 0
    assert email_sender.sent == []


###############################################################
# 3. Trigger
###############################################################

@pytest.mark.asyncio
async def test_trigger_generates_and_sends(client: AsyncClient, db_session: AsyncSession, email_sender):
    await _email_notification(db_session)
    await add_template(db_session, NotificationType.MISSING_NOTES.value, "{count} notes missing", ["EMAIL"])

    response = await client.post("/api/notifications/trigger", json={"type": "notes_needed_general"})

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["success"] is True
    assert body["generated"] == 1
    assert body["stats"]["sent"] == 1
    assert email_sender.sent[0].html.count("1 notes missing") == 1


@pytest.mark.asyncio
async def test_trigger_in_app_only_generates(client: AsyncClient, db_session: AsyncSession):
    await _email_notification(db_session)

    response = await client.post("/api/notifications/trigger", json={"type": "notes_needed_general",
                                                                      "channel": "IN_APP"})

    assert response.json()["generated"] == 1
    assert response.json()["stats"]["total"] == 0
    [notification] = await _notifications(db_session)
    assert notification.status == NotificationStatus.PUBLISHED


@pytest.mark.asyncio
async def test_trigger_requires_type(client: AsyncClient):
    response = await client.post("/api/notifications/trigger", json={"channel": "EMAIL"})
    assert response.status_code == 400
    assert response.json() == {"error": "Notification type is required"}


###############################################################
# 4. Listing
###############################################################

@pytest.mark.asyncio
async def test_get_notifications_pagination_and_filters(client: AsyncClient, db_session: AsyncSession):
    await _email_notification(db_session)
    for channel in ("IN_APP", "IN_APP", "EMAIL"):
        await client.post("/api/create-notification", json={"type": "notes_needed_general", "channel": channel})

    response = await client.get("/api/get-notifications", params={"page": 2, "limit": 2})
    body = response.json()
    assert body["meta"] == {"total": 3, "page": 2, "limit": 2, "totalPages": 2}
    assert len(body["data"]) == 1

    response = await client.get("/api/get-notifications", params={"status": "CREATED"})
    assert [n["channel"] for n in response.json()["data"]] == ["EMAIL"]

    response = await client.get("/api/get-notifications", params={"message": "COUNT: 1", "channel": "IN_APP"})
    assert response.json()["meta"]["total"] == 2

    response = await client.get("/api/get-notifications", params={"type": "digest_weekly_summary"})
    assert response.json() == {"data": [], "meta": {"total": 0, "page": 1, "limit": 10, "totalPages": 0}}


###############################################################
# 5. Templates and email preview
###############################################################

@pytest.mark.asyncio
async def test_templates_list_and_update(client: AsyncClient, db_session: AsyncSession):
    await add_template(db_session, NotificationType.MEAL_ATTENDEES.value, MEAL_TEMPLATE, ["IN_APP"])

    response = await client.get("/api/notification-templates")
    assert [t["id"] for t in response.json()] == ["notes_needed_meal_attendees"]

    response = await client.put("/api/notification-templates/notes_needed_meal_attendees",
                                json={"template": "Add attendees to {count} meals", "channels": ["EMAIL", "APN"]})
    assert response.status_code == 200, response.text
    assert response.json()["template"] == "Add attendees to {count} meals"
    assert response.json()["channels"] == ["EMAIL", "APN"]
    assert "updatedAt" in response.json()


@pytest.mark.asyncio
async def test_update_missing_template_returns_404(client: AsyncClient):
    response = await client.put("/api/notification-templates/nope", json={"template": "x"})
    assert response.status_code == 404
    assert response.json() == {"error": "Template not found"}


@pytest.mark.asyncio
async def test_email_preview(client: AsyncClient, db_session: AsyncSession, mock_email_service, dispatcher):
    response = await client.get("/api/email-mock/latest")
    assert response.status_code == 404

    dispatcher.email_sender = mock_email_service
    await _email_notification(db_session)
    await client.post("/api/notifications/trigger", json={"type": "notes_needed_general", "channel": "EMAIL"})

    response = await client.get("/api/email-mock/latest")
    assert response.status_code == 200
    assert "Notification: notes_needed_general count: 1" in response.text


###############################################################
# 6. Schedules
###############################################################

@pytest.mark.asyncio
async def test_list_schedules(client: AsyncClient, mock_scheduler):
    mock_scheduler.list_jobs.return_value = [{
        "name": "projects/p/locations/l/jobs/sched-1",
        "schedule": "0 9 * * *",
        "state": "ENABLED",
        "description": "Schedule for digest_daily_action_items via IN_APP",
        "httpTarget": {"body": encode_payload("digest_daily_action_items", "IN_APP")},
    }]

    response = await client.get("/api/schedules")

    assert response.status_code == 200, response.text
    schedule = response.json()["data"][0]
    assert schedule["id"] == "sched-1"
    assert schedule["notificationId"] == "digest_daily_action_items"
    assert schedule["channelId"] == "IN_APP"
    assert schedule["cronExpression"] == "0 9 * * *"
    assert schedule["enabled"] is True


@pytest.mark.asyncio
async def test_create_schedule(client: AsyncClient, mock_scheduler):
    response = await client.post("/api/schedules", json={"notificationId": "digest_weekly_summary",
                                                          "cronExpression": "0 9 * * 1", "channelId": "email"})

    assert response.status_code == 200, response.text
    assert response.json()["id"].startswith("sched-")
    name, description, cron, payload = mock_scheduler.create_job.call_args.args
    assert name == response.json()["id"]
    assert description == "Schedule for digest_weekly_summary via EMAIL"
    assert cron == "0 9 * * 1"
    assert payload == {"type": "digest_weekly_summary", "channel": "EMAIL"}


@pytest.mark.asyncio
async def test_create_schedule_requires_fields(client: AsyncClient, mock_scheduler):
    response = await client.post("/api/schedules", json={"notificationId": "digest_weekly_summary"})
    assert response.status_code == 400
    assert response.json() == {"error": "Missing required fields"}
    mock_scheduler.create_job.assert_not_called()


@pytest.mark.asyncio
async def test_toggle_and_delete_schedule(client: AsyncClient, mock_scheduler):
    response = await client.patch("/api/schedules/sched-1/toggle", json={"enabled": False})
    assert response.json() == {"message": "Schedule paused"}
    mock_scheduler.pause_job.assert_called_once_with("sched-1")

    response = await client.patch("/api/schedules/sched-1/toggle", json={"enabled": True})
    assert response.json() == {"message": "Schedule resumed"}
    mock_scheduler.resume_job.assert_called_once_with("sched-1")

    response = await client.delete("/api/schedules/sched-1")
    assert response.json() == {"message": "Schedule deleted"}
    mock_scheduler.delete_job.assert_called_once_with("sched-1")


@pytest.mark.asyncio
async def test_scheduler_errors_become_500(client: AsyncClient, mock_scheduler):
    mock_scheduler.list_jobs.side_effect = SchedulerNotConfigured("Cloud Scheduler client is not configured")

    response = await client.get("/api/schedules")

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to list schedules"}


###############################################################
# 7. Auth and health
###############################################################

@pytest.mark.asyncio
async def test_missing_token_is_rejected(client: AsyncClient):
    response = await client.get("/api/get-notifications", headers={"x-api-token": ""})
    assert response.status_code == 403
    assert response.json() == {"error": "Unauthorized: Invalid or missing token"}

    response = await client.get("/api/schedules", headers={"x-api-token": "wrong"})
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_unconfigured_secret_fails_closed(client: AsyncClient, test_settings):
    from main import app
    from app.config import get_settings

    app.dependency_overrides[get_settings] = lambda: test_settings.model_copy(update={"api_secret_token": None})

    response = await client.get("/api/get-notifications")

    assert response.status_code == 500
    assert response.json() == {"error": "Internal Server Configuration Error"}


@pytest.mark.asyncio
async def test_health_needs_no_token(client: AsyncClient):
    response = await client.get("/health", headers={"x-api-token": ""})
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "db": "connected"}
