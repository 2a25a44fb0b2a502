"""SMTP notifier.

smtplib is blocking, so each send runs in a worker thread with its own
connection. SMTP failures are sorted into transient and permanent by reply
code so the scheduler knows whether to back off or give up.
"""

import asyncio
import html
import logging
import smtplib
from email.message import EmailMessage
from email.utils import formataddr, make_msgid

from deadman.config.models import EmailConfig
from deadman.errors import PermanentDeliveryError, TransientDeliveryError
from deadman.notifications.base import Notifier
from deadman.switches.types import OutboundMessage

logger = logging.getLogger(__name__)

SUBJECT_PREFIX = "[Dead Man's Switch]"

TEXT_TEMPLATE = """\
{prefix} Message from {sender}

This message was automatically sent because the sender has been inactive.

Subject: {subject}

{body}

---
This message was sent via Dead Man's Switch
"""

HTML_TEMPLATE = """\
<div style="max-width: 600px; margin: 0 auto; padding: 20px; font-family: Arial, sans-serif;">
  <div style="background: #fff3cd; padding: 20px; border-radius: 10px; border-left: 4px solid #ffc107;">
    <h2 style="color: #856404; margin-top: 0;">Message from {sender}</h2>
    <p style="color: #856404; font-size: 14px;">
      This message was automatically sent by Dead Man's Switch because the sender has been inactive.
    </p>
  </div>
  <div style="background: white; padding: 30px; margin-top: 20px; border-radius: 10px; border: 1px solid #e9ecef;">
    <h3 style="color: #333; margin-bottom: 20px;">{subject}</h3>
    <div style="color: #495057; line-height: 1.6; white-space: pre-wrap;">{body}</div>
  </div>
  <div style="text-align: center; margin-top: 20px; color: #6c757d; font-size: 12px;">
    <p>This message was sent via Dead Man's Switch</p>
  </div>
</div>
"""


def compose_message(message: OutboundMessage, from_address: str) -> EmailMessage:
    """Build the outgoing email with plain text and HTML parts."""
    msg = EmailMessage()
    msg["From"] = formataddr((message.sender_name, from_address))
    msg["To"] = formataddr((message.to_name or "", message.to_address))
    msg["Subject"] = f"{SUBJECT_PREFIX} {message.subject}"
    msg["Message-ID"] = make_msgid(domain=from_address.rpartition("@")[2] or None)
    msg["X-Deadman-Switch-Id"] = message.switch_id

    msg.set_content(
        TEXT_TEMPLATE.format(
            prefix=SUBJECT_PREFIX,
            sender=message.sender_name,
            subject=message.subject,
            body=message.body,
        )
    )
    msg.add_alternative(
        HTML_TEMPLATE.format(
            sender=html.escape(message.sender_name),
            subject=html.escape(message.subject),
            body=html.escape(message.body),
        ),
        subtype="html",
    )
    return msg


def _is_permanent_code(code: int | None) -> bool:
    return code is not None and 500 <= code < 600


def classify_smtp_error(error: Exception) -> TransientDeliveryError | PermanentDeliveryError:
    """Map an smtplib/socket failure onto the delivery error taxonomy.

    Authentication failures, 5xx replies and refused recipients are
    permanent. Connection problems, timeouts and 4xx replies are transient.
    """
    if isinstance(error, smtplib.SMTPAuthenticationError):
        return PermanentDeliveryError(f"SMTP authentication failed: {error}")
    if isinstance(error, smtplib.SMTPRecipientsRefused):
        codes = [code for code, _ in error.recipients.values()]
        if codes and all(400 <= code < 500 for code in codes):
            return TransientDeliveryError(f"Recipient temporarily refused: {codes}")
        return PermanentDeliveryError(f"Recipient refused: {codes}")
    if isinstance(error, smtplib.SMTPNotSupportedError):
        return PermanentDeliveryError(f"SMTP server does not support: {error}")
    if isinstance(error, (smtplib.SMTPConnectError, smtplib.SMTPServerDisconnected)):
        return TransientDeliveryError(f"SMTP connection failed: {error}")
    if isinstance(error, smtplib.SMTPResponseException):
        if _is_permanent_code(error.smtp_code):
            return PermanentDeliveryError(
                f"SMTP rejected message ({error.smtp_code}): {error.smtp_error!r}"
            )
        return TransientDeliveryError(
            f"SMTP deferred message ({error.smtp_code}): {error.smtp_error!r}"
        )
    if isinstance(error, (smtplib.SMTPException, OSError)):
        return TransientDeliveryError(f"SMTP error: {error}")
    raise TypeError(f"Not an SMTP error: {type(error).__name__}")


class SmtpNotifier(Notifier):
    """Sends each message over a fresh SMTP connection."""

    def __init__(self, config: EmailConfig):
        if not config.host:
            raise ValueError("SMTP host is required")
        self._config = config

    @property
    def name(self) -> str:
        return "smtp"

    def _send_sync(self, msg: EmailMessage) -> None:
        config = self._config
        assert config.host
        with smtplib.SMTP(config.host, config.port, timeout=config.timeout) as server:
            if config.use_tls:
                server.starttls()
            if config.username and config.password:
                server.login(config.username, config.password.get_secret_value())
            refused = server.send_message(msg)
        if refused:
            raise smtplib.SMTPRecipientsRefused(refused)

    async def deliver(self, message: OutboundMessage) -> None:
        msg = compose_message(message, self._config.from_address)
        try:
            await asyncio.to_thread(self._send_sync, msg)
        except (smtplib.SMTPException, OSError) as e:
            error = classify_smtp_error(e)
            logger.warning(
                "email_send_failed",
                extra={
                    "switch.id": message.switch_id,
                    "email.permanent": isinstance(error, PermanentDeliveryError),
                    "error.message": str(error),
                },
            )
            raise error from e

        logger.info(
            "email_sent",
            extra={"switch.id": message.switch_id, "email.recipient_id": message.recipient_id},
        )
