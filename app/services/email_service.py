# file: services/email_service.py
"""
Email composition and a file-backed mock sender.

The mock sender writes every message to ``sent_emails/email_<n>.html`` so the
dashboard can preview the latest one.
"""

import html
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol

from app.config import EmailConfig

logger = logging.getLogger(__name__)

_EMAIL_FILE = re.compile(r"^email_(\d+)\.html$")


@dataclass
class EmailContent:
    html: str
    text: str
    subject: str


@dataclass
class EmailMessage:
    to: str
    subject: str
    html: str
    text: str


@dataclass
class EmailResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class EmailSender(Protocol):
    async def send_email(self, message: EmailMessage) -> EmailResult: ...


class EmailTemplate:
    """Generic branded wrapper around a plain notification message."""

    def __init__(self, config: EmailConfig):
        self.config = config

    def subject(self) -> str:
        return f"Welcome to {self.config.company_name}!"

    def generate(self, name: str, message_body: str, url_link: Optional[str] = None) -> EmailContent:
        cfg = self.config
        link = url_link or cfg.link_url
        esc = html.escape

        body_html = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{esc(self.subject())}</title></head>
<body style="margin:0;background:{cfg.background_color};font-family:Arial,sans-serif;color:{cfg.text_color};">
  <table width="100%" cellpadding="0" cellspacing="0"><tr><td align="center">
    <div style="max-width:600px;background:#ffffff;padding:32px;border-radius:8px;margin:24px;">
      <img src="{esc(cfg.logo_url)}" alt="{esc(cfg.company_name)} Logo" style="height:40px;">
      <p>Hi {esc(name)}!</p>
      <p>{esc(message_body)}</p>
      <a href="{esc(link)}" style="background:{cfg.primary_color};color:#ffffff;padding:12px 20px;border-radius:5px;text-decoration:none;">Get Started</a>
      <p style="margin-top:32px;">{esc(cfg.signature_name)}<br>{esc(cfg.signature_title)}<br>
        <a href="mailto:{esc(cfg.signature_email)}" style="color:{cfg.secondary_color};">{esc(cfg.signature_email)}</a></p>
    </div>
  </td></tr></table>
</body>
</html>"""

        body_text = (
            f"Hi {name}!\n\n{message_body}\n\nGet Started: {link}\n\n"
            f"{cfg.signature_name}\n{cfg.signature_title}\n{cfg.signature_email}\n"
        )
        return EmailContent(html=body_html, text=body_text, subject=self.subject())


def _email_indices(directory: Path):
    if not directory.exists():
        return []
    indices = []
    for entry in directory.iterdir():
        match = _EMAIL_FILE.match(entry.name)
        if match:
            indices.append(int(match.group(1)))
    return indices


class MockEmailService:
    def __init__(self, sent_emails_dir: str):
        self.directory = Path(sent_emails_dir)

    async def send_email(self, message: EmailMessage) -> EmailResult:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            indices = _email_indices(self.directory)
            filename = f"email_{max(indices) + 1 if indices else 1}.html"

            header = (
                f"<!--\nTo: {message.to}\nSubject: {message.subject}\n"
                f"Date: {datetime.now(timezone.utc).isoformat()}\n-->\n"
            )
            (self.directory / filename).write_text(header + message.html, encoding="utf-8")
            logger.info("Email saved to %s", self.directory / filename)
            return EmailResult(success=True, message_id=filename)
        except OSError as e:
            logger.error("Error saving email: %s", e)
            return EmailResult(success=False, error=str(e))

    def latest_email(self) -> Optional[str]:
        indices = _email_indices(self.directory)
        if not indices:
            return None
        return (self.directory / f"email_{max(indices)}.html").read_text(encoding="utf-8")
