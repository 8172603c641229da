"""Tests for EmailChannel — SMTP delivery with bounded retries."""

from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import aiosmtplib
import pytest

from timecapsule.capsules.models import Capsule
from timecapsule.config import Settings
from timecapsule.delivery.channels import DeliveryChannel
from timecapsule.delivery.email_channel import EmailChannel
from timecapsule.delivery.template import IMAGE_CID

SEND = "timecapsule.delivery.email_channel.aiosmtplib.send"


@pytest.fixture
def config() -> Settings:
    return Settings(
        smtp_host="smtp.example.com",
        smtp_user="capsules@example.com",
        smtp_password="secret",
        email_from_name="Time Capsule",
        email_rate_per_second=1000,
    )


@pytest.fixture
def channel(config: Settings) -> EmailChannel:
    return EmailChannel(config, retry_delay=0)


def _capsule(image_path: str | None = None) -> Capsule:
    now = datetime.now(UTC)
    return Capsule(
        id=42,
        name="Ada <Lovelace>",
        email="ada@example.com",
        message="Hello from the past",
        image_path=image_path,
        deliver_at=now - timedelta(minutes=1),
        created_at=now - timedelta(days=365),
    )


# -- Protocol conformance ------------------------------------------------------


def test_email_channel_satisfies_protocol(channel: EmailChannel) -> None:
    assert isinstance(channel, DeliveryChannel)
    assert channel.name == "email"


def test_retry_policy_defaults_from_settings(config: Settings) -> None:
    ch = EmailChannel(config)
    assert ch.max_retries == 3
    assert ch.retry_delay == 5.0


# -- deliver() -----------------------------------------------------------------


async def test_deliver_success(channel: EmailChannel) -> None:
    with patch(SEND, new_callable=AsyncMock) as send:
        result = await channel.deliver(_capsule())

    assert result.ok is True
    assert result.attempts == 1
    assert result.message_id is not None
    send.assert_awaited_once()
    message = send.call_args.args[0]
    assert message["To"] == "ada@example.com"
    assert message["From"] == "Time Capsule <capsules@example.com>"
    assert message["Message-ID"] == result.message_id
    assert send.call_args.kwargs["hostname"] == "smtp.example.com"
    assert send.call_args.kwargs["username"] == "capsules@example.com"


async def test_deliver_renders_text_and_html(channel: EmailChannel) -> None:
    with patch(SEND, new_callable=AsyncMock) as send:
        await channel.deliver(_capsule())

    message = send.call_args.args[0]
    text = message.get_body(preferencelist=("plain",)).get_content()
    html = message.get_body(preferencelist=("html",)).get_content()
    assert "Hello from the past" in text
    assert "Ada &lt;Lovelace&gt;" in html
    assert "cid:" not in html


async def test_deliver_attaches_image_inline(channel: EmailChannel, tmp_path: Path) -> None:
    image = tmp_path / "photo.png"
    image.write_bytes(b"\x89PNG fake image")

    with patch(SEND, new_callable=AsyncMock) as send:
        result = await channel.deliver(_capsule(image_path=str(image)))

    assert result.ok is True
    message = send.call_args.args[0]
    html = message.get_body(preferencelist=("html",)).get_content()
    assert f"cid:{IMAGE_CID}" in html
    parts = [p for p in message.walk() if p.get("Content-ID") == f"<{IMAGE_CID}>"]
    assert len(parts) == 1
    assert parts[0].get_content_type() == "image/png"
    assert parts[0].get_content() == b"\x89PNG fake image"


async def test_deliver_skips_missing_image(channel: EmailChannel, tmp_path: Path) -> None:
    with patch(SEND, new_callable=AsyncMock) as send:
        result = await channel.deliver(_capsule(image_path=str(tmp_path / "gone.jpg")))

    assert result.ok is True
    message = send.call_args.args[0]
    assert not any(p.get("Content-ID") for p in message.walk())


async def test_deliver_retries_transient_failure(channel: EmailChannel) -> None:
    send = AsyncMock(side_effect=[aiosmtplib.SMTPServerDisconnected("dropped"), None])
    with patch(SEND, send):
        result = await channel.deliver(_capsule())

    assert result.ok is True
    assert result.attempts == 2
    assert send.await_count == 2


async def test_deliver_gives_up_after_max_retries(channel: EmailChannel) -> None:
    send = AsyncMock(side_effect=TimeoutError("timed out"))
    with patch(SEND, send):
        result = await channel.deliver(_capsule())

    assert result.ok is False
    assert result.attempts == 3
    assert result.error == "timed out"
    assert send.await_count == 3


async def test_deliver_waits_between_attempts(config: Settings) -> None:
    ch = EmailChannel(config, max_retries=2, retry_delay=5)
    sleep = AsyncMock()
    with (
        patch(SEND, AsyncMock(side_effect=OSError("refused"))),
        patch("timecapsule.delivery.email_channel.asyncio.sleep", sleep),
    ):
        result = await ch.deliver(_capsule())

    assert result.ok is False
    # One retry pause between two attempts, none after the last
    retry_pauses = [c for c in sleep.await_args_list if c.args == (5,)]
    assert len(retry_pauses) == 1


async def test_deliver_refuses_without_credentials() -> None:
    ch = EmailChannel(Settings(smtp_user="", smtp_password=""), retry_delay=0)
    with patch(SEND, new_callable=AsyncMock) as send:
        result = await ch.deliver(_capsule())

    assert result.ok is False
    assert result.attempts == 0
    send.assert_not_awaited()


def test_validate_config_lists_missing_credentials() -> None:
    ch = EmailChannel(Settings(smtp_user="", smtp_password=""))
    assert ch.validate_config() == ["SMTP_USER is required", "SMTP_PASSWORD is required"]


def test_validate_config_ok(channel: EmailChannel) -> None:
    assert channel.validate_config() == []


# -- send_test() / verify() ----------------------------------------------------


async def test_send_test(channel: EmailChannel) -> None:
    with patch(SEND, new_callable=AsyncMock) as send:
        result = await channel.send_test("ops@example.com")

    assert result.ok is True
    assert send.call_args.args[0]["To"] == "ops@example.com"


async def test_verify_success(channel: EmailChannel) -> None:
    smtp = MagicMock()
    smtp.connect = AsyncMock()
    smtp.login = AsyncMock()
    smtp.quit = AsyncMock()
    with patch("timecapsule.delivery.email_channel.aiosmtplib.SMTP", return_value=smtp):
        assert await channel.verify() is True
    smtp.login.assert_awaited_once_with("capsules@example.com", "secret")


async def test_verify_failure(channel: EmailChannel) -> None:
    smtp = MagicMock()
    smtp.connect = AsyncMock(side_effect=OSError("no route"))
    with patch("timecapsule.delivery.email_channel.aiosmtplib.SMTP", return_value=smtp):
        assert await channel.verify() is False


async def test_verify_closes_connection_when_login_fails(channel: EmailChannel) -> None:
    smtp = MagicMock()
    smtp.connect = AsyncMock()
    smtp.login = AsyncMock(side_effect=aiosmtplib.SMTPAuthenticationError(535, "bad credentials"))
    smtp.quit = AsyncMock()
    smtp.is_connected = True
    with patch("timecapsule.delivery.email_channel.aiosmtplib.SMTP", return_value=smtp):
        assert await channel.verify() is False
    smtp.quit.assert_not_awaited()
    smtp.close.assert_called_once()


async def test_verify_skips_close_when_never_connected(channel: EmailChannel) -> None:
    smtp = MagicMock()
    smtp.connect = AsyncMock(side_effect=OSError("no route"))
    smtp.is_connected = False
    with patch("timecapsule.delivery.email_channel.aiosmtplib.SMTP", return_value=smtp):
        assert await channel.verify() is False
    smtp.close.assert_not_called()
