# email_service.py - Best-effort SMTP delivery for workspace invitations
#
# Delivery never takes part in a database transaction: callers send after the
# unit of work committed and treat EmailDeliveryError as a reportable outcome.

import os
import asyncio
import html
import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

from errors import EmailDeliveryError

logger = logging.getLogger("kanbanly.email")

# ============================================================
# CONFIGURATION
# ============================================================

SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_FROM = os.getenv("SMTP_FROM", '"Kanbanly" <no-reply@kanbanly.local>')
SMTP_TIMEOUT = float(os.getenv("SMTP_TIMEOUT", "10"))
APP_URL = os.getenv("APP_URL", "http://localhost:3001").rstrip("/")


class EmailService:
    """Thin SMTP sender; every failure surfaces as EmailDeliveryError"""

    def __init__(
        self,
        host: str = SMTP_HOST,
        port: int = SMTP_PORT,
        user: str = SMTP_USER,
        password: str = SMTP_PASSWORD,
        sender: str = SMTP_FROM,
        timeout: float = SMTP_TIMEOUT,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.host)

    def _deliver(self, msg: EmailMessage) -> None:
        if self.port == 465:
            server = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        else:
            server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        with server:
            if self.port != 465:
                server.starttls()
            if self.user:
                server.login(self.user, self.password)
            server.send_message(msg)

    async def send(self, to: str, subject: str, html_body: str, text_body: Optional[str] = None) -> None:
        if not self.configured:
            raise EmailDeliveryError("SMTP host not configured")

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to
        msg.set_content(text_body or subject)
        msg.add_alternative(html_body, subtype="html")

        try:
            await asyncio.to_thread(self._deliver, msg)
        except (smtplib.SMTPException, OSError) as e:
            raise EmailDeliveryError(str(e)) from e
        logger.info(f"Email sent: to={to} subject={subject!r}")

    async def send_workspace_invitation(
        self, to: str, inviter_name: str, workspace_name: str, token: str,
    ) -> None:
        invite_url = f"{APP_URL}/invitations/accept?token={token}"
        safe_inviter = html.escape(inviter_name)
        safe_workspace = html.escape(workspace_name)
        html_body = (
            f"<p>Hello,</p>"
            f"<p><strong>{safe_inviter}</strong> invited you to join the workspace "
            f"<strong>{safe_workspace}</strong> on Kanbanly.</p>"
            f'<p><a href="{invite_url}">Accept the invitation</a></p>'
            f"<p>This link expires in a few days. If you were not expecting it, ignore this email.</p>"
        )
        text_body = (
            f"{inviter_name} invited you to join the workspace {workspace_name} on Kanbanly.\n"
            f"Accept the invitation: {invite_url}\n"
        )
        await self.send(to, f"You're invited to join {workspace_name}", html_body, text_body)


_email_service: Optional[EmailService] = None


def get_email_service() -> EmailService:
    """Dependency for the process-wide sender (FastAPI Depends)"""
    global _email_service
    if _email_service is None:
        _email_service = EmailService()
        if not _email_service.configured:
            logger.warning("SMTP_HOST not set - invitation emails will be reported as failed")
    return _email_service
