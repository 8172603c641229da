"""Email implementation of the DeliveryChannel protocol (SMTP via aiosmtplib)."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from pathlib import Path
from typing import TYPE_CHECKING

import aiosmtplib

from timecapsule.config import settings
from timecapsule.delivery.channels import DeliveryResult
from timecapsule.delivery.template import IMAGE_CID, render_html, render_subject, render_text

if TYPE_CHECKING:
    from timecapsule.capsules.models import Capsule
    from timecapsule.config import Settings

logger = logging.getLogger(__name__)


class _RateLimiter:
    """Spaces successive sends so at most *per_second* start each second."""

    def __init__(self, per_second: float) -> None:
        self._interval = 1.0 / per_second
        self._lock = asyncio.Lock()
        self._next_slot = 0.0

    async def wait(self) -> None:
        async with self._lock:
            loop = asyncio.get_running_loop()
            delay = self._next_slot - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)
            self._next_slot = loop.time() + self._interval


class EmailChannel:
    """Delivers capsules by email.

    Owns the only retry policy in the delivery path: each ``deliver`` call
    makes up to ``max_retries`` attempts with a constant ``retry_delay``
    between them and reports the final outcome without raising.

    Args:
        config: Settings to read SMTP and sender configuration from
            (default: the global settings).
        max_retries: Total attempts per delivery (default from settings).
        retry_delay: Seconds to wait between attempts (default from settings).
    """

    def __init__(
        self,
        config: Settings | None = None,
        *,
        max_retries: int | None = None,
        retry_delay: float | None = None,
    ) -> None:
        self._config = config or settings
        self._max_retries = max_retries or self._config.email_max_retries
        if retry_delay is None:
            retry_delay = self._config.email_retry_delay_ms / 1000
        self._retry_delay = retry_delay
        self._connections = asyncio.Semaphore(self._config.email_max_connections)
        self._rate_limiter = _RateLimiter(self._config.email_rate_per_second)

    @property
    def name(self) -> str:
        return "email"

    @property
    def max_retries(self) -> int:
        return self._max_retries

    @property
    def retry_delay(self) -> float:
        return self._retry_delay

    # -- Configuration ---------------------------------------------------------

    def validate_config(self) -> list[str]:
        """Return a list of configuration problems (empty when usable)."""
        errors = []
        if not self._config.smtp_user:
            errors.append("SMTP_USER is required")
        if not self._config.smtp_password:
            errors.append("SMTP_PASSWORD is required")
        if errors:
            logger.error("Invalid email configuration: %s", "; ".join(errors))
        return errors

    def _sender(self) -> str:
        return formataddr((self._config.email_from_name, self._config.get_sender_address()))

    def _message_id(self, idstring: str | None = None) -> str:
        domain = self._config.get_sender_address().rpartition("@")[2] or "localhost"
        return make_msgid(idstring=idstring, domain=domain)

    # -- Delivery --------------------------------------------------------------

    async def deliver(self, capsule: Capsule) -> DeliveryResult:
        """Email a capsule back to its submitter."""
        if self.validate_config():
            return DeliveryResult(ok=False, error="Email configuration is invalid")

        try:
            message = await self._build_message(capsule)
        except Exception as exc:
            logger.exception("Could not build email for capsule %s", capsule.id)
            return DeliveryResult(ok=False, error=str(exc))

        return await self._send_with_retries(
            message, label=f"capsule {capsule.id} to {capsule.email}"
        )

    async def send_test(self, to: str) -> DeliveryResult:
        """Send a short test email to check that delivery works end to end."""
        if self.validate_config():
            return DeliveryResult(ok=False, error="Email configuration is invalid")
        message = EmailMessage()
        message["From"] = self._sender()
        message["To"] = to
        message["Subject"] = "Test - Time Capsule delivery"
        message["Message-ID"] = self._message_id()
        message.set_content(
            "This is a test email from the Time Capsule service.\n"
            "If you received it, email delivery is configured correctly.\n"
        )
        return await self._send_with_retries(message, label=f"test email to {to}")

    async def verify(self) -> bool:
        """Connect and authenticate against the SMTP server without sending."""
        if self.validate_config():
            return False
        smtp = aiosmtplib.SMTP(
            hostname=self._config.smtp_host,
            port=self._config.smtp_port,
            use_tls=self._config.smtp_use_tls,
            timeout=self._config.smtp_timeout_s,
        )
        try:
            await smtp.connect()
            await smtp.login(self._config.smtp_user, self._config.smtp_password)
            await smtp.quit()
        except Exception:
            logger.exception("SMTP verification failed for %s", self._config.smtp_host)
            return False
        finally:
            if smtp.is_connected:
                smtp.close()
        logger.info("SMTP configuration verified (%s)", self._config.smtp_host)
        return True

    # -- Internal --------------------------------------------------------------

    async def _send_with_retries(self, message: EmailMessage, *, label: str) -> DeliveryResult:
        last_error = ""
        for attempt in range(1, self._max_retries + 1):
            logger.info("Sending %s (attempt %d/%d)", label, attempt, self._max_retries)
            try:
                await self._send_once(message)
            except Exception as exc:
                last_error = str(exc) or type(exc).__name__
                logger.warning(
                    "Send failed for %s (attempt %d/%d): %s",
                    label,
                    attempt,
                    self._max_retries,
                    last_error,
                )
                if attempt < self._max_retries and self._retry_delay > 0:
                    await asyncio.sleep(self._retry_delay)
                continue
            logger.info("Sent %s (message id %s)", label, message["Message-ID"])
            return DeliveryResult(ok=True, message_id=message["Message-ID"], attempts=attempt)

        logger.error("Giving up on %s after %d attempt(s)", label, self._max_retries)
        return DeliveryResult(ok=False, error=last_error, attempts=self._max_retries)

    async def _send_once(self, message: EmailMessage) -> None:
        async with self._connections:
            await self._rate_limiter.wait()
            await aiosmtplib.send(
                message,
                hostname=self._config.smtp_host,
                port=self._config.smtp_port,
                username=self._config.smtp_user,
                password=self._config.smtp_password,
                use_tls=self._config.smtp_use_tls,
                timeout=self._config.smtp_timeout_s,
            )

    async def _build_message(self, capsule: Capsule) -> EmailMessage:
        """Build the multipart email: text, HTML and the inline image if present."""
        image = await self._load_image(capsule)

        message = EmailMessage()
        message["From"] = self._sender()
        message["To"] = capsule.email
        message["Subject"] = render_subject(capsule)
        message["Message-ID"] = self._message_id(f"capsule-{capsule.id}")
        message["X-Priority"] = "1"
        message["Importance"] = "high"
        message.set_content(render_text(capsule))
        message.add_alternative(render_html(capsule, with_image=image is not None), subtype="html")

        if image is not None:
            data, filename = image
            mime_type, _ = mimetypes.guess_type(filename)
            maintype, subtype = (mime_type or "application/octet-stream").split("/", 1)
            html_part = message.get_payload()[1]
            html_part.add_related(
                data,
                maintype=maintype,
                subtype=subtype,
                cid=f"<{IMAGE_CID}>",
                filename=filename,
            )
        return message

    async def _load_image(self, capsule: Capsule) -> tuple[bytes, str] | None:
        if not capsule.image_path:
            return None
        path = Path(capsule.image_path)
        if not path.is_file():
            logger.warning("Image for capsule %s not found: %s", capsule.id, path)
            return None
        data = await asyncio.to_thread(path.read_bytes)
        return data, path.name
