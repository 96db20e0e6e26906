"""Dismissible, time-limited user messages for recoverable failures."""

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

NOTICE_TTL_SECONDS = float(os.getenv("NOTICE_TTL_SECONDS", "8"))


@dataclass
class Notice:
    level: str  # "error", "warning" or "success"
    message: str
    created_at: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


class NoticeBoard:
    def __init__(self, ttl_seconds: float = NOTICE_TTL_SECONDS) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)
        self._notices: list[Notice] = []

    def post(self, level: str, message: str) -> Notice:
        notice = Notice(level=level, message=message)
        self._notices.append(notice)
        return notice

    def error(self, message: str) -> Notice:
        return self.post("error", message)

    def warning(self, message: str) -> Notice:
        return self.post("warning", message)

    def success(self, message: str) -> Notice:
        return self.post("success", message)

    def active(self, now: Optional[datetime] = None) -> list[Notice]:
        """Unexpired notices, oldest first. Expired ones are dropped."""
        now = now or datetime.now()
        self._notices = [n for n in self._notices if now - n.created_at < self.ttl]
        return list(self._notices)

    def dismiss(self, notice_id: str) -> bool:
        before = len(self._notices)
        self._notices = [n for n in self._notices if n.id != notice_id]
        return len(self._notices) < before

    def clear(self) -> None:
        self._notices.clear()
