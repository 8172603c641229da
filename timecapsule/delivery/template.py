"""Rendering of the capsule delivery email."""

from __future__ import annotations

import html
import zoneinfo
from typing import TYPE_CHECKING

from timecapsule.config import settings

if TYPE_CHECKING:
    from datetime import datetime

    from timecapsule.capsules.models import Capsule

IMAGE_CID = "capsule-image"

_HTML_TEMPLATE = """\
<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>Your time capsule has arrived!</title>
</head>
<body style="font-family: 'Segoe UI', Tahoma, Verdana, sans-serif; line-height: 1.6;
             color: #333; background-color: #f4f4f4; margin: 0; padding: 20px;">
  <div style="max-width: 600px; margin: 0 auto; background: #fff; border-radius: 10px;
              overflow: hidden;">
    <div style="background: #667eea; color: #fff; padding: 30px; text-align: center;">
      <h1 style="margin: 0; font-weight: 300;">Time Capsule</h1>
      <p>Your message from the past has arrived!</p>
    </div>
    <div style="padding: 30px;">
      <p style="font-size: 18px; color: #667eea;">Hello, <strong>{name}</strong>!</p>
      <p>You are receiving this email because on <strong>{created}</strong> you
         created a time capsule to be opened today.</p>
      <div style="background: #f8f9fa; border-left: 4px solid #667eea; padding: 20px;
                  margin: 20px 0; border-radius: 5px;">
        <p style="font-style: italic; font-size: 16px; color: #555;">&ldquo;{message}&rdquo;</p>
      </div>
      {image}
      <div style="background: #f8f9fa; padding: 15px; border-radius: 5px; font-size: 14px;
                  color: #666;">
        <strong>Created:</strong> {created}<br>
        <strong>Scheduled for:</strong> {deliver}<br>
        <strong>Email:</strong> {email}
      </div>
    </div>
    <div style="background: #333; color: #fff; padding: 20px; text-align: center;
                font-size: 14px;">
      Made with care by the Time Capsule team<br>
      <a style="color: #667eea;" href="mailto:{contact}">Get in touch</a>
    </div>
  </div>
</body>
</html>
"""

_IMAGE_BLOCK = (
    '<div style="text-align: center; margin: 20px 0;">'
    '<img src="cid:{cid}" alt="The image from your time capsule" '
    'style="max-width: 100%; height: auto; border-radius: 8px;" /></div>'
)


def format_date(value: datetime, timezone: str | None = None) -> str:
    """Human-readable date in the configured display timezone."""
    tz = zoneinfo.ZoneInfo(timezone or settings.scheduler_timezone)
    return value.astimezone(tz).strftime("%B %d, %Y %H:%M")


def render_subject(capsule: Capsule) -> str:
    created = capsule.created_at.astimezone(zoneinfo.ZoneInfo(settings.scheduler_timezone))
    return f"Your time capsule from {created.strftime('%B %d, %Y')}"


def render_text(capsule: Capsule) -> str:
    """Plain-text alternative for clients that do not render HTML."""
    return (
        f"Hello, {capsule.name}!\n\n"
        f"On {format_date(capsule.created_at)} you created a time capsule "
        "to be opened today. Here is your message:\n\n"
        f'"{capsule.message}"\n\n'
        f"Scheduled for: {format_date(capsule.deliver_at)}\n"
    )


def render_html(capsule: Capsule, *, with_image: bool) -> str:
    image = _IMAGE_BLOCK.format(cid=IMAGE_CID) if with_image else ""
    return _HTML_TEMPLATE.format(
        name=html.escape(capsule.name),
        message=html.escape(capsule.message),
        email=html.escape(capsule.email),
        created=format_date(capsule.created_at),
        deliver=format_date(capsule.deliver_at),
        contact=html.escape(settings.get_sender_address()),
        image=image,
    )
