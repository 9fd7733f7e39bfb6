"""Envelope shapes for Instagram webhook deliveries.

Only the outer envelope is validated strictly. Entries stay as raw dicts so a
single malformed entry can be reported on its own instead of rejecting the
whole delivery.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict


class InstagramWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: Literal["instagram"]
    entry: list[Any]
