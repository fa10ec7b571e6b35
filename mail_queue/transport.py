"""Mail transports used by the batch processor.

A transport exposes a single coroutine, ``send(to, subject, body)``. Any
exception it raises is treated by the processor as a retryable failure.
"""

import asyncio
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Optional, Protocol

import aiosmtplib

from .exceptions import TransportError, TransportUnavailableError
from .logger import get_logger
from .smtp_pool import SMTPPool


class MailTransport(Protocol):
    async def send(self, to: str, subject: str, body: str) -> None:
        ...


class SmtpTransport:
    """Deliver HTML messages through a single SMTP server using :class:`SMTPPool`."""

    def __init__(
        self,
        host: str,
        port: int = 25,
        *,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: Optional[bool] = None,
        from_address: str = "noreply@localhost",
        send_timeout: float = 30.0,
        pool: Optional[SMTPPool] = None,
    ):
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        # Implicit TLS is assumed on the SMTPS port when not configured
        self.use_tls = self.port == 465 if use_tls is None else bool(use_tls)
        self.from_address = from_address
        self.send_timeout = send_timeout
        self.pool = pool or SMTPPool()
        self.logger = get_logger("transport")

    def build_message(self, to: str, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.from_address
        msg["To"] = to
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid(domain=self.from_address.rpartition("@")[2] or None)
        msg.set_content(body, subtype="html")
        return msg

    async def send(self, to: str, subject: str, body: str) -> None:
        msg = self.build_message(to, subject, body)
        try:
            smtp = await self.pool.get_connection(
                self.host, self.port, self.user, self.password, use_tls=self.use_tls
            )
            async with asyncio.timeout(self.send_timeout):
                await smtp.send_message(msg, sender=self.from_address)
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as exc:
            # The connection may be half-open after a failure
            await self.pool.discard()
            self.logger.debug("SMTP delivery to %s failed: %s", to, exc)
            raise TransportError(f"SMTP delivery failed: {exc}") from exc

    async def close(self) -> None:
        await self.pool.close_all()


class UnavailableTransport:
    """Transport wired when no SMTP server is configured.

    Every send fails deterministically, so queued messages walk through the
    retry protocol to FAILED instead of silently disappearing.
    """

    async def send(self, to: str, subject: str, body: str) -> None:
        raise TransportUnavailableError()

    async def close(self) -> None:
        return None
