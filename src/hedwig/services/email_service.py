"""SendGrid email transport for workflow notifications.

Uses asyncio.to_thread to wrap the synchronous SendGrid client.  Message
text is composed upstream; this module only wraps it in a minimal HTML
shell and delivers it.
"""

import asyncio
import html
import logging

import sendgrid
from sendgrid.helpers.mail import Email, HtmlContent, Mail, To

logger = logging.getLogger(__name__)


def _get_config():
    """Get email config from app settings (lazy to avoid import-time issues)."""
    from hedwig.app.config import get_settings
    s = get_settings()
    return s.sendgrid_api_key, s.email_from


def _get_client() -> sendgrid.SendGridAPIClient:
    """Return a configured SendGrid API client."""
    api_key, _ = _get_config()
    return sendgrid.SendGridAPIClient(api_key=api_key)


def _build_html(subject: str, body: str) -> str:
    paragraphs = "".join(
        f'<p style="margin: 0 0 12px; color: #374151; font-size: 15px;">{html.escape(line)}</p>'
        for line in body.split("\n")
        if line.strip()
    )
    return f"""
    <div style="font-family: -apple-system, Helvetica, Arial, sans-serif; max-width: 560px; margin: 0 auto;">
        <h2 style="color: #111827; font-size: 20px;">{html.escape(subject)}</h2>
        {paragraphs}
        <p style="margin-top: 24px; color: #9ca3af; font-size: 12px;">Sent by Hedwig</p>
    </div>
    """


def _send_mail(mail: Mail) -> bool:
    """Synchronous send via SendGrid. Returns True on success."""
    client = _get_client()
    response = client.send(mail)
    if response.status_code in (200, 201, 202):
        return True
    logger.error(
        "SendGrid returned status %s: %s",
        response.status_code,
        response.body,
    )
    return False


class EmailService:
    """Deliver composed notification emails via SendGrid."""

    @property
    def configured(self) -> bool:
        api_key, _ = _get_config()
        return bool(api_key)

    async def send(self, to_email: str, subject: str, body: str) -> bool:
        """Send one email. Returns True on success, False on failure."""
        api_key, email_from = _get_config()
        if not api_key:
            logger.warning("SENDGRID_API_KEY not set, skipping email to %s", to_email)
            return False

        try:
            mail = Mail(
                from_email=Email(email_from, "Hedwig"),
                to_emails=To(to_email),
                subject=subject,
                html_content=HtmlContent(_build_html(subject, body)),
            )
            result = await asyncio.to_thread(_send_mail, mail)
            if result:
                logger.info("Email '%s' sent to %s", subject, to_email)
            return result
        except Exception:
            logger.exception("Failed to send email '%s' to %s", subject, to_email)
            return False
