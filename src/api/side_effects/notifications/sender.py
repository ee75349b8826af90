import asyncio
import logging
import smtplib
import ssl
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Optional

from src.api.side_effects.notifications.config import SmtpConfig
from src.api.side_effects.schemas.side_effect import DocumentHandle

logger = logging.getLogger(__name__)


class SmtpNotificationSender:
    """Sends invoice e-mails through SMTP"""

    def __init__(self, config: SmtpConfig):
        self.config = config

    def _build_message(self, recipient: str, subject: str, body: str,
                       attachment: Optional[DocumentHandle]) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.config.from_address
        message["To"] = recipient
        message["Subject"] = subject
        message["Message-ID"] = make_msgid()
        message.set_content(body)
        if attachment is not None:
            maintype, _, subtype = attachment.mime_type.partition("/")
            message.add_attachment(
                attachment.content,
                maintype=maintype,
                subtype=subtype or "octet-stream",
                filename=attachment.filename,
            )
        return message

    def _deliver(self, message: EmailMessage) -> None:
        if self.config.use_tls:
            server = smtplib.SMTP(self.config.host, self.config.port, timeout=self.config.timeout_seconds)
            server.starttls(context=ssl.create_default_context())
        else:
            server = smtplib.SMTP_SSL(self.config.host, self.config.port, timeout=self.config.timeout_seconds)
        with server:
            server.login(self.config.username, self.config.password)
            server.send_message(message)

    async def send(self, recipient: str, subject: str, body: str,
                   attachment: Optional[DocumentHandle] = None) -> str:
        """
        Send an e-mail and return its Message-ID.

        Args:
            recipient: Destination address
            subject: Subject line
            body: Plain-text body
            attachment: Rendered invoice document to attach (optional)
        """
        message = self._build_message(recipient, subject, body, attachment)
        await asyncio.to_thread(self._deliver, message)
        logger.info(f"E-mail '{subject}' sent to {recipient} ({message['Message-ID']})")
        return message["Message-ID"]


def build_notification_sender(config: SmtpConfig) -> Optional[SmtpNotificationSender]:
    """SMTP sender, or None when SMTP credentials are not configured"""
    if not config.is_configured:
        logger.warning("SMTP is not configured: invoice e-mails will not be sent")
        return None
    return SmtpNotificationSender(config)
