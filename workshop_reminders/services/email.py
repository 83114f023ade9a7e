"""Email channel that writes messages to the log instead of a mail provider."""

from __future__ import annotations

import threading
import uuid

from workshop_reminders.domain.models import DispatchResult, RenderedMessage
from workshop_reminders.observability import get_logger

logger = get_logger(__name__)


class LogEmailChannel:
    """EmailChannel for local runs and demos.

    Every message is logged and kept in ``outbox`` as ``(to, message)``;
    sending always succeeds.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.outbox: list[tuple[str, RenderedMessage]] = []

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> DispatchResult:
        message_id = f"log-{uuid.uuid4().hex[:12]}"
        with self._lock:
            self.outbox.append(
                (to, RenderedMessage(subject=subject, html_body=html_body, text_body=text_body))
            )
        logger.info("Email logged", to=to, subject=subject, message_id=message_id)
        return DispatchResult(success=True, message_id=message_id)

    def clear(self) -> None:
        with self._lock:
            self.outbox.clear()
