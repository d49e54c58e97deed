"""
Outbound email transport.
SmtpTransport sends multipart (plain + HTML) messages and reports every failure as DeliveryFailure
with a failure_type category so the dispatcher can log it.
"""
import logging
import smtplib
import socket
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from errors import DeliveryFailure

logger = logging.getLogger(__name__)

# SMTP reply codes servers use for throttling / mailbox-busy conditions
RATE_LIMIT_CODES = (421, 450, 451, 452)


def categorize_smtp_error(ex: Exception) -> str:
    """Map an SMTP/socket exception to network, authentication, rate_limit, invalid_recipient or unknown."""
    if isinstance(ex, smtplib.SMTPAuthenticationError):
        return 'authentication'
    if isinstance(ex, smtplib.SMTPRecipientsRefused):
        return 'invalid_recipient'
    if isinstance(ex, (smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError)):
        return 'network'
    if isinstance(ex, smtplib.SMTPResponseException):
        if ex.smtp_code in RATE_LIMIT_CODES:
            return 'rate_limit'
        if ex.smtp_code in (550, 553):
            return 'invalid_recipient'
        return 'unknown'
    if isinstance(ex, (socket.timeout, OSError)):
        return 'network'
    return 'unknown'


def build_message(sender: str, recipient: str, subject: str, body: str, html: Optional[str] = None) -> MIMEMultipart:
    message = MIMEMultipart("alternative")
    message["Subject"] = subject
    message["From"] = sender
    message["To"] = recipient
    message.attach(MIMEText(body, "plain"))
    if html:
        message.attach(MIMEText(html, "html"))
    return message


class SmtpTransport:
    def __init__(self, host: str, port: int = 587, user: str = '', password: str = '', sender: str = '', timeout: float = 30.0, starttls: bool = True):
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.sender = sender or user
        self.timeout = float(timeout)
        self.starttls = starttls

    @classmethod
    def from_settings(cls, settings) -> 'SmtpTransport':
        return cls(settings.smtp_host, settings.smtp_port, settings.smtp_user, settings.smtp_password, settings.smtp_from, settings.smtp_timeout, settings.smtp_starttls)

    def send(self, recipient: str, subject: str, body: str, html: Optional[str] = None):
        """Send one message. Raises DeliveryFailure; a socket timeout counts as a network failure."""
        if not recipient or '@' not in recipient:
            raise DeliveryFailure(f"invalid recipient {recipient!r}", failure_type='invalid_recipient')
        message = build_message(self.sender, recipient, subject, body, html)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.starttls:
                    server.starttls()
                if self.user:
                    server.login(self.user, self.password)
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as ex:
            failure_type = categorize_smtp_error(ex)
            logger.error("SMTP delivery to %s failed (%s): %s", recipient, failure_type, ex)
            raise DeliveryFailure(str(ex) or ex.__class__.__name__, failure_type=failure_type)
        logger.info("Sent '%s' to %s", subject, recipient)


__all__ = ["SmtpTransport", "categorize_smtp_error", "build_message"]
