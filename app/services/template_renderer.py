# file: services/template_renderer.py

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import NotificationTemplate

logger = logging.getLogger(__name__)

FALLBACK_TEMPLATE = "Notification: {type} count: {count}"

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def interpolate(template: str, variables: Dict[str, Any]) -> str:
    """
    Replaces every ``{name}`` with ``variables[name]``.
    Names that are missing (or None) are left as ``{name}`` so they stay visible in previews.
    """
    def _replace(match: re.Match) -> str:
        value = variables.get(match.group(1))
        if value is None:
            return match.group(0)
        return str(value)

    return _PLACEHOLDER.sub(_replace, template)


@dataclass
class ResolvedTemplate:
    notification_type: str
    name: str
    template: str
    channels: List[str] = field(default_factory=list)
    is_fallback: bool = False
    warnings: List[str] = field(default_factory=list)

    def render(self, variables: Dict[str, Any]) -> str:
        return interpolate(self.template, variables)


async def resolve_template(db: AsyncSession, notification_type: str) -> ResolvedTemplate:
    record: Optional[NotificationTemplate] = await db.get(NotificationTemplate, notification_type)

    if record is None:
        warning = f"No template found for type {notification_type}, using defaults."
        logger.warning(warning)
        return ResolvedTemplate(
            notification_type=notification_type,
            name=notification_type,
            template=FALLBACK_TEMPLATE,
            is_fallback=True,
            warnings=[warning],
        )

    return ResolvedTemplate(
        notification_type=notification_type,
        name=record.name or notification_type,
        template=record.template or FALLBACK_TEMPLATE,
        channels=list(record.channels or []),
    )
