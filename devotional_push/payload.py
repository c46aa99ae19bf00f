from __future__ import annotations

import json

from pydantic import BaseModel

from .content import Devotional

TRUNCATION_MARKER = "..."


class NotificationPayload(BaseModel):
    title: str
    body: str
    icon: str
    url: str

    def serialize(self) -> str:
        return json.dumps(self.model_dump(), ensure_ascii=False)


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


def build_payload(
    devotional: Devotional, icon: str, url: str, max_chars: int = 120
) -> NotificationPayload:
    return NotificationPayload(
        title=devotional.title,
        body=truncate(devotional.content, max_chars),
        icon=icon,
        url=url,
    )
