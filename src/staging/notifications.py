"""Completion notifications for finished staging requests."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional, Protocol

from src.core.config import get_settings
from src.core.logger import get_logger
from src.integrations.email.resend_client import EmailClientError, EmailMessage, ResendClient, get_resend_client


logger = get_logger("snapstage.notifications")

STAGING_READY_SUBJECT = "Your staged room is ready! ✨"


class StagingNotifier(Protocol):
    def staging_completed(
        self,
        *,
        email: str,
        name: Optional[str],
        project_id: str,
        project_name: str,
    ) -> bool:
        """Notify the owner; returns whether a message was sent."""


def render_staging_completed_text(*, name: str, project_name: str, project_url: str) -> str:
    return (
        f"Hi {name},\n\n"
        f'Your project "{project_name}" has been staged!\n\n'
        f"View it here: {project_url}\n\n"
        "Team SnapStage"
    )


class EmailStagingNotifier:
    def __init__(self, *, client: ResendClient, base_url: str, enabled: bool = True) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._enabled = enabled

    def staging_completed(
        self,
        *,
        email: str,
        name: Optional[str],
        project_id: str,
        project_name: str,
    ) -> bool:
        if not self._enabled or not email:
            return False

        display_name = (name or "").strip() or email.split("@", 1)[0]
        message = EmailMessage(
            to=[email],
            subject=STAGING_READY_SUBJECT,
            text=render_staging_completed_text(
                name=display_name,
                project_name=project_name,
                project_url=f"{self._base_url}/dashboard/projects/{project_id}",
            ),
            tags={"category": "staging_completed"},
        )
        try:
            message_id = self._client.send(message)
        except EmailClientError as exc:
            logger.warning("staging_completed_email_failed", project_id=project_id, error=str(exc))
            return False

        logger.info("staging_completed_email_sent", project_id=project_id, message_id=message_id)
        return True


class NullStagingNotifier:
    def staging_completed(
        self,
        *,
        email: str,
        name: Optional[str],
        project_id: str,
        project_name: str,
    ) -> bool:
        del email, name, project_id, project_name
        return False


@lru_cache(maxsize=1)
def get_notifier() -> StagingNotifier:
    settings = get_settings()
    if not settings.email_enabled or not settings.email_api_key:
        return NullStagingNotifier()
    return EmailStagingNotifier(
        client=get_resend_client(),
        base_url=settings.app_public_base_url or "https://snapstage.app",
        enabled=True,
    )
