"""SMTP adapter for export notifications.

Implements NotifierPort using smtplib. Each send opens its own connection
so one failing recipient never affects another; every failure is reported
through NotificationResult instead of raised.
"""

import logging
import os
import smtplib
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from html import escape
from typing import Optional, Tuple

from domain.lifecycle.ports import NotificationResult, NotifierPort

logger = logging.getLogger(__name__)


def build_export_email(group_name: str) -> Tuple[str, str]:
    """Subject and HTML body of the export-ready email.

    Returns:
        (subject, html_body)
    """
    subject = f"Your {group_name} group export is ready"
    body = (
        "<h1>Group Export Ready</h1>\n"
        f"<p>Your chat history and files from <strong>{escape(group_name)}</strong> "
        "have been exported.</p>\n"
        "<p>The export is attached to this email.</p>\n"
        "<p>Note: This data has been permanently deleted from our servers.</p>\n"
    )
    return subject, body


class SmtpNotifier(NotifierPort):
    """Send notification emails through an SMTP relay.

    Args:
        host: SMTP server hostname
        port: SMTP server port
        user: SMTP username (optional)
        password: SMTP password (optional)
        use_tls: Use STARTTLS
        from_name: Display name of the sender
        timeout: Socket timeout in seconds
    """

    def __init__(
        self,
        host: str,
        port: int,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        from_name: str = "DropDeck",
        timeout: int = 30,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.from_name = from_name
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "SmtpNotifier":
        return cls(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            user=settings.SMTP_USER,
            password=settings.SMTP_PASSWORD,
            use_tls=settings.SMTP_USE_TLS,
            from_name=settings.SMTP_FROM_NAME,
            timeout=settings.SMTP_TIMEOUT_SECONDS,
        )

    def build_message(
        self,
        recipient: str,
        subject: str,
        body: str,
        attachment_path: Optional[str] = None,
        attachment_name: Optional[str] = None,
    ) -> MIMEMultipart:
        """Assemble the MIME message (HTML body plus optional zip attachment)."""
        msg = MIMEMultipart()
        msg["From"] = formataddr((self.from_name, self.user or f"no-reply@{self.host}"))
        msg["To"] = recipient
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "html", "utf-8"))

        if attachment_path:
            with open(attachment_path, "rb") as f:
                part = MIMEBase("application", "zip")
                part.set_payload(f.read())
            encoders.encode_base64(part)
            filename = attachment_name or os.path.basename(attachment_path)
            part.add_header("Content-Disposition", "attachment", filename=filename)
            msg.attach(part)

        return msg

    def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        attachment_path: Optional[str] = None,
        attachment_name: Optional[str] = None,
    ) -> NotificationResult:
        try:
            msg = self.build_message(recipient, subject, body, attachment_path, attachment_name)

            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.user and self.password:
                    smtp.login(self.user, self.password)
                smtp.send_message(msg)

        except (smtplib.SMTPException, OSError) as e:
            logger.error(
                f"Email sending failed to {recipient}: {e}",
                extra={"recipient": recipient, "error": str(e)},
            )
            return NotificationResult(recipient=recipient, success=False, error=str(e))

        logger.info(f"Email sent to {recipient}", extra={"recipient": recipient})
        return NotificationResult(recipient=recipient, success=True)
