"""Fire-and-forget notification dispatcher.

Callers never wait on delivery and never see delivery errors: failures are
logged and counted, and the caller's state change stands.
"""

import asyncio
import logging
import uuid
from typing import Any, Optional

from subscription_service.core.config import settings
from subscription_service.core.logging import log_error, log_info
from subscription_service.core.metrics import NOTIFICATION_FAILURES_TOTAL
from subscription_service.modules.notification.channels import EmailChannel, NotificationChannel
from subscription_service.modules.notification.templates import NotificationKind, render

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Render and deliver subscription notifications."""

    def __init__(
        self,
        channel: Optional[NotificationChannel] = None,
        frontend_url: Optional[str] = None,
    ):
        self.channel = channel or EmailChannel()
        self.frontend_url = frontend_url or settings.FRONTEND_URL
        self._pending: set[asyncio.Task] = set()

    async def send(
        self,
        user_id: uuid.UUID,
        kind: NotificationKind,
        params: dict[str, Any],
    ) -> bool:
        """Deliver one notification now.

        ``params`` must include the recipient ``email``.

        Returns:
            True if delivered, False if delivery failed (already logged)
        """
        kind = NotificationKind(kind)
        try:
            message = render(kind, params, self.frontend_url)
            await self.channel.deliver(params["email"], message.subject, message.text, message.html)
        except Exception as e:
            NOTIFICATION_FAILURES_TOTAL.labels(kind=kind.value).inc()
            log_error(
                logger,
                f"Failed to send {kind.value} notification to user {user_id}",
                exception=e,
                user_id=str(user_id),
                kind=kind.value,
            )
            return False

        log_info(
            logger,
            f"Sent {kind.value} notification to user {user_id}",
            user_id=str(user_id),
            kind=kind.value,
        )
        return True

    def dispatch(
        self,
        user_id: uuid.UUID,
        kind: NotificationKind,
        params: dict[str, Any],
    ) -> asyncio.Task:
        """Schedule delivery without waiting for it."""
        task = asyncio.get_running_loop().create_task(self.send(user_id, kind, params))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for scheduled deliveries; used before a job or process exits."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


_dispatcher: Optional[NotificationDispatcher] = None


def get_dispatcher() -> NotificationDispatcher:
    """FastAPI dependency returning the process-wide dispatcher."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher
