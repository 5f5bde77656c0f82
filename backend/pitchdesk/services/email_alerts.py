"""
Notification e-mails via SendGrid.

Mirrors in-app notifications to the recipient's profile e-mail. Only wired in
when SENDGRID_API_KEY is configured; recipients without an e-mail address are
skipped.
"""
import asyncio
import html
import logging
from typing import Optional

import sendgrid
from sendgrid.helpers.mail import Content, Mail

from pitchdesk.core.config import Settings, get_settings
from pitchdesk.core.errors import UpstreamUnavailable
from pitchdesk.models.schemas import Notification, NotificationType
from pitchdesk.services.sinks import NotificationSink
from pitchdesk.services.store import WorkflowStore

logger = logging.getLogger(__name__)

_ACCENT = {
    NotificationType.AGENT_INTEREST: "#1d4ed8",
    NotificationType.NEGOTIATION: "#d97706",
    NotificationType.CONTRACT_UPDATE: "#7c3aed",
    NotificationType.SUCCESS: "#16a34a",
}


def _build_html(notification: Notification, app_name: str) -> str:
    accent = _ACCENT.get(notification.type, "#1e3a5f")
    date_str = notification.created_at.strftime("%B %d, %Y %H:%M UTC")
    # Titles and bodies carry profile-supplied names
    title = html.escape(notification.title)
    body = html.escape(notification.message)
    app_name = html.escape(app_name)
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="UTF-8"></head>
<body style="font-family:Arial,sans-serif;background:#f9fafb;margin:0;padding:0;">
  <div style="max-width:600px;margin:24px auto;background:#fff;
               border-radius:8px;overflow:hidden;box-shadow:0 1px 3px rgba(0,0,0,.1);">
    <div style="background:#1e3a5f;padding:20px 24px;">
      <h1 style="color:#fff;margin:0;font-size:20px;">{app_name}</h1>
      <p style="color:#93c5fd;margin:4px 0 0;font-size:14px;">{date_str}</p>
    </div>
    <div style="padding:20px 24px;border-left:4px solid {accent};">
      <h2 style="margin:0 0 8px;font-size:17px;color:#111827;">{title}</h2>
      <p style="margin:0;font-size:14px;color:#374151;">{body}</p>
    </div>
    <div style="padding:16px 24px;background:#f9fafb;border-top:1px solid #e5e7eb;">
      <p style="margin:0;font-size:12px;color:#9ca3af;">
        You are receiving this because you are a party to a transfer on {app_name}.
      </p>
    </div>
  </div>
</body>
</html>"""


class EmailNotificationSink(NotificationSink):
    name = "email"

    def __init__(self, store: WorkflowStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()
        self.client = sendgrid.SendGridAPIClient(api_key=self.settings.sendgrid_api_key)

    async def create_notification(self, notification: Notification) -> None:
        profile = await self.store.get_profile(notification.user_id)
        if profile is None or not profile.email:
            logger.info(f"Email skipped for {notification.user_id}: no address on profile")
            return

        message = Mail(
            from_email=self.settings.notification_email_from,
            to_emails=profile.email,
            subject=f"{self.settings.app_name}: {notification.title}",
            html_content=Content("text/html", _build_html(notification, self.settings.app_name)),
        )
        # The SendGrid client is synchronous
        response = await asyncio.to_thread(self.client.send, message)
        if response.status_code not in (200, 202):
            raise UpstreamUnavailable(
                f"SendGrid returned unexpected status {response.status_code}",
                user_id=notification.user_id,
            )
        logger.info(f"Notification email '{notification.title}' sent to {profile.email}")
