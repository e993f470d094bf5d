# file: controllers/schedule.py

import logging
import time

from fastapi import APIRouter, Depends, HTTPException, status

from app.database.models import NotificationChannel
from app.models.schedule import ScheduleCreate, ScheduleList, ScheduleToggle
from app.services.providers import get_scheduler_service
from app.services.scheduler_service import SchedulerService, job_to_schedule

router = APIRouter()
logger = logging.getLogger(__name__)

# Scheduler calls are blocking HTTP requests, so these handlers are plain functions
# and FastAPI runs them in its threadpool.


@router.get("", response_model=ScheduleList)
def get_schedules(scheduler: SchedulerService = Depends(get_scheduler_service)):
    try:
        jobs = scheduler.list_jobs()
    except Exception:
        logger.exception("Error listing schedules")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to list schedules")
    return ScheduleList(data=[job_to_schedule(job) for job in jobs])


@router.post("")
def create_schedule(request: ScheduleCreate, scheduler: SchedulerService = Depends(get_scheduler_service)):
    if not request.notification_id or not request.cron_expression:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required fields")

    channel = (request.channel_id or NotificationChannel.IN_APP.value).upper()
    if channel not in {c.value for c in NotificationChannel}:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid channel: {request.channel_id}")

    name = f"sched-{int(time.time() * 1000)}"
    description = f"Schedule for {request.notification_id} via {channel}"
    payload = {"type": request.notification_id, "channel": channel}

    try:
        scheduler.create_job(name, description, request.cron_expression, payload)
    except Exception:
        logger.exception("Error creating schedule")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create schedule")
    return {"message": "Schedule created", "id": name}


@router.delete("/{schedule_id}")
def delete_schedule(schedule_id: str, scheduler: SchedulerService = Depends(get_scheduler_service)):
    try:
        scheduler.delete_job(schedule_id)
    except Exception:
        logger.exception("Error deleting schedule %s", schedule_id)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to delete schedule")
    return {"message": "Schedule deleted"}


@router.patch("/{schedule_id}/toggle")
def toggle_schedule(
        schedule_id: str,
        request: ScheduleToggle,
        scheduler: SchedulerService = Depends(get_scheduler_service),
):
    try:
        if request.enabled:
            scheduler.resume_job(schedule_id)
        else:
            scheduler.pause_job(schedule_id)
    except Exception:
        logger.exception("Error toggling schedule %s", schedule_id)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to toggle schedule")
    return {"message": f"Schedule {'resumed' if request.enabled else 'paused'}"}
