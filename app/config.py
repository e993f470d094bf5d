# file: config.py

import os
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

load_dotenv()


class EmailConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    company_name: str = "Investrio"
    signature_name: str = "Investrio Team"
    signature_title: str = "Support"
    signature_email: str = "support@investrio.io"
    logo_url: str = "https://storage.googleapis.com/investrio-images/assets/small-full-logo-cropped.png"
    link_url: str = "https://investrio.io"
    primary_color: str = "#11083a"
    secondary_color: str = "#9b81f9"
    background_color: str = "#f3ecff"
    text_color: str = "#6b7280"


class APNConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    key_id: Optional[str] = None
    team_id: Optional[str] = None
    bundle_id: Optional[str] = None
    production: bool = False
    certs_dir: str = "certs"


class SchedulerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    project_id: Optional[str] = None
    location_id: str = "us-central1"
    credentials_file: str = "certs/google-cloud-credentials.json"
    time_zone: str = "America/Bogota"


class Settings(BaseModel):
    """Process-wide configuration, read once from the environment."""

    model_config = ConfigDict(frozen=True)

    database_url: str
    api_secret_token: Optional[str] = None
    api_base_url: str = "http://localhost:3000"
    sent_emails_dir: str = "sent_emails"
    cors_origins: List[str] = ["*"]
    log_level: str = "INFO"
    email: EmailConfig = EmailConfig()
    apn: APNConfig = APNConfig()
    scheduler: SchedulerConfig = SchedulerConfig()

    @classmethod
    def from_env(cls) -> "Settings":
        email_defaults = EmailConfig()
        return cls(
            database_url=_database_url(),
            api_secret_token=os.getenv("API_SECRET_TOKEN") or None,
            api_base_url=os.getenv("API_BASE_URL", "http://localhost:3000").rstrip("/"),
            sent_emails_dir=os.getenv("SENT_EMAILS_DIR", "sent_emails"),
            cors_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()],
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            email=EmailConfig(
                company_name=os.getenv("EMAIL_COMPANY_NAME", email_defaults.company_name),
                signature_name=os.getenv("EMAIL_SIGNATURE_NAME", email_defaults.signature_name),
                signature_title=os.getenv("EMAIL_SIGNATURE_TITLE", email_defaults.signature_title),
                signature_email=os.getenv("EMAIL_SIGNATURE_EMAIL", email_defaults.signature_email),
                logo_url=os.getenv("EMAIL_LOGO_URL", email_defaults.logo_url),
                link_url=os.getenv("EMAIL_LINK_URL", email_defaults.link_url),
                primary_color=os.getenv("EMAIL_PRIMARY_COLOR", email_defaults.primary_color),
            ),
            apn=APNConfig(
                key_id=os.getenv("APN_KEY_ID") or None,
                team_id=os.getenv("APN_TEAM_ID") or None,
                bundle_id=os.getenv("APN_BUNDLE_ID") or None,
                production=os.getenv("APN_PRODUCTION", "false").lower() == "true",
                certs_dir=os.getenv("APN_CERTS_DIR", "certs"),
            ),
            scheduler=SchedulerConfig(
                project_id=os.getenv("GCP_PROJECT_ID") or None,
                location_id=os.getenv("GCP_LOCATION_ID", "us-central1"),
                credentials_file=os.getenv("GCP_CREDENTIALS_FILE", "certs/google-cloud-credentials.json"),
                time_zone=os.getenv("SCHEDULER_TIME_ZONE", "America/Bogota"),
            ),
        )


def _database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if url:
        return url

    db_password = os.getenv("DB_PASSWORD")
    if not db_password:
        raise ValueError("DATABASE_URL or DB_PASSWORD environment variable is required")

    return (
        f"postgresql+asyncpg://{os.getenv('DB_USER')}:{db_password}"
        f"@{os.getenv('DB_HOST')}:{os.getenv('DB_PORT')}/{os.getenv('DB_NAME')}"
    )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
