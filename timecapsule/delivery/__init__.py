"""Delivery channel abstraction and the SMTP email channel."""

from timecapsule.delivery.channels import DeliveryChannel, DeliveryResult
from timecapsule.delivery.email_channel import EmailChannel

__all__ = [
    "DeliveryChannel",
    "DeliveryResult",
    "EmailChannel",
]
