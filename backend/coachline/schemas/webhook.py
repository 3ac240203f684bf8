"""Webhook acknowledgement schema."""

from pydantic import ConfigDict

from ._strict_base import StrictModel


class WebhookAck(StrictModel):
    # Handler results vary by event type and are passed through
    model_config = ConfigDict(extra="allow")

    received: bool = True
    handled: bool = False
