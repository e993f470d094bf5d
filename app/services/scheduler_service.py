# file: services/scheduler_service.py
"""
Thin wrapper over the Google Cloud Scheduler REST API.

Every job is an HTTP callback to ``POST /api/notifications/trigger`` whose body
is the base64-encoded JSON ``{"type": ..., "channel": ...}``.
"""

import base64
import json
import logging
from typing import Any, Dict, List, Optional

from google.oauth2.service_account import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from app.config import SchedulerConfig
from app.services.exceptions import SchedulerNotConfigured

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]
TRIGGER_PATH = "/api/notifications/trigger"


def encode_payload(notification_type: str, channel: str) -> str:
    raw = json.dumps({"type": notification_type, "channel": channel}).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def decode_payload(body: Optional[str]) -> Dict[str, Any]:
    if not body:
        return {}
    try:
        payload = json.loads(base64.b64decode(body).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        logger.warning("Failed to parse job body: %s", e)
        return {}
    return payload if isinstance(payload, dict) else {}


def job_to_schedule(job: Dict[str, Any]) -> Dict[str, Any]:
    # Job name format: projects/<project>/locations/<location>/jobs/<id>
    job_id = (job.get("name") or "").split("/")[-1]
    payload = decode_payload((job.get("httpTarget") or {}).get("body"))
    return {
        "id": job_id,
        "notification_id": payload.get("type") or "unknown",
        "channel_id": payload.get("channel") or "",
        "cron_expression": job.get("schedule"),
        "enabled": job.get("state") == "ENABLED",
        "last_run": job.get("lastAttemptTime"),
        "next_run": job.get("scheduleTime"),
        "description": job.get("description"),
    }


class SchedulerService:
    def __init__(self, config: SchedulerConfig, api_base_url: str, api_token: Optional[str], service=None):
        self.config = config
        self.api_base_url = api_base_url.rstrip("/")
        self.api_token = api_token or ""
        self._service = service

    @classmethod
    def from_settings(cls, settings) -> "SchedulerService":
        config = settings.scheduler
        service = None
        if not config.project_id:
            logger.warning("GCP_PROJECT_ID is not set. Cloud Scheduler calls will fail.")
        else:
            try:
                creds = Credentials.from_service_account_file(config.credentials_file, scopes=SCOPES)
                service = build("cloudscheduler", "v1", credentials=creds, cache_discovery=False)
            except (OSError, ValueError) as e:
                logger.warning("Could not load Cloud Scheduler credentials from %s: %s", config.credentials_file, e)
        return cls(config, settings.api_base_url, settings.api_secret_token, service=service)

    @property
    def parent(self) -> str:
        return f"projects/{self.config.project_id}/locations/{self.config.location_id}"

    def job_path(self, name: str) -> str:
        return f"{self.parent}/jobs/{name}"

    def _jobs(self):
        if self._service is None:
            raise SchedulerNotConfigured("Cloud Scheduler client is not configured")
        return self._service.projects().locations().jobs()

    def build_job(self, name: str, description: str, schedule: str, payload: Dict[str, str]) -> Dict[str, Any]:
        return {
            "name": self.job_path(name),
            "description": description,
            "schedule": schedule,
            "timeZone": self.config.time_zone,
            "httpTarget": {
                "uri": f"{self.api_base_url}{TRIGGER_PATH}",
                "httpMethod": "POST",
                "headers": {
                    "Content-Type": "application/json",
                    "x-api-token": self.api_token,
                },
                "body": encode_payload(payload["type"], payload["channel"]),
            },
        }

    def create_job(self, name: str, description: str, schedule: str, payload: Dict[str, str]) -> Dict[str, Any]:
        job = self.build_job(name, description, schedule, payload)
        try:
            response = self._jobs().create(parent=self.parent, body=job).execute()
        except HttpError as e:
            if e.resp.status == 409:
                logger.info("Job %s exists, updating...", name)
                return self.update_job(name, description, schedule, payload)
            raise
        logger.info("Created job: %s", response.get("name"))
        return response

    def update_job(self, name: str, description: str, schedule: str, payload: Dict[str, str]) -> Dict[str, Any]:
        job = self.build_job(name, description, schedule, payload)
        response = self._jobs().patch(name=job["name"], body=job).execute()
        logger.info("Updated job: %s", response.get("name"))
        return response

    def list_jobs(self) -> List[Dict[str, Any]]:
        jobs: List[Dict[str, Any]] = []
        page_token = None
        while True:
            response = self._jobs().list(parent=self.parent, pageToken=page_token).execute()
            jobs.extend(response.get("jobs", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                return jobs

    def delete_job(self, name: str) -> None:
        self._jobs().delete(name=self.job_path(name)).execute()
        logger.info("Deleted job: %s", self.job_path(name))

    def pause_job(self, name: str) -> None:
        self._jobs().pause(name=self.job_path(name), body={}).execute()

    def resume_job(self, name: str) -> None:
        self._jobs().resume(name=self.job_path(name), body={}).execute()
