"""
Fire-and-forget notification dispatch.

A notification failure is logged and reported back as a failed
NotificationResult. It never propagates to the transition that
triggered it.
"""

from typing import Optional

import structlog

from loanbook.services.notifications.interface import (
    NotificationKind,
    NotificationPayload,
    NotificationResult,
    NotificationSink,
)


class LoggingNotificationSink(NotificationSink):
    """
    Default sink: records the notification in the structured log.

    Used when no delivery provider is configured.
    """

    def __init__(self):
        self._logger = structlog.get_logger("loanbook.notifications")
        self.sent: list[tuple[NotificationKind, NotificationPayload]] = []

    async def notify(
        self,
        kind: NotificationKind,
        payload: NotificationPayload,
    ) -> NotificationResult:
        self.sent.append((kind, payload))
        self._logger.info(
            "notification_logged",
            kind=kind.value,
            loan_id=payload.loan_id,
        )
        return NotificationResult(success=True)


class NotificationDispatcher:
    """Wraps a sink so that delivery can never fail a lending operation."""

    def __init__(self, sink: Optional[NotificationSink] = None):
        self._sink = sink if sink is not None else LoggingNotificationSink()
        self._logger = structlog.get_logger("loanbook.notifications")

    async def dispatch(
        self,
        kind: NotificationKind,
        payload: NotificationPayload,
    ) -> NotificationResult:
        try:
            result = await self._sink.notify(kind, payload)
        except Exception as e:
            result = NotificationResult(success=False, error=str(e))

        if not result.success:
            self._logger.warning(
                "notification_failed",
                kind=kind.value,
                loan_id=payload.loan_id,
                error=result.error,
            )
        return result
