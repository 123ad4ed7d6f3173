"""
Operator alerts for the background jobs.

Every alert is logged. When ALERT_WEBHOOK_URL is configured it is also
posted there as JSON (PagerDuty, Opsgenie, a Slack workflow, ...). Raising
an alert never raises: a broken webhook must not take the worker down.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

import httpx

from ..core.config import Settings


logger = logging.getLogger(__name__)


class AlertSeverity(str, Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass(frozen=True)
class JobAlert:
    """Something an operator should look at."""
    title: str
    message: str
    severity: AlertSeverity = AlertSeverity.ERROR
    details: dict = field(default_factory=dict)

    def payload(self, source: str) -> dict:
        return {
            "title": self.title,
            "message": self.message,
            "severity": self.severity.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "source": source,
            "details": self.details,
        }


class JobAlerter:
    """Raises alerts for the deadline sweep and the mail worker."""

    def __init__(
        self,
        webhook_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        source: str = "role-approval",
        timeout_seconds: float = 10.0,
    ):
        self._webhook_url = webhook_url
        self._client = client
        self._source = source
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "JobAlerter":
        return cls(webhook_url=settings.alert_webhook_url)

    async def alert(self, alert: JobAlert) -> bool:
        """
        Log an alert and post it to the webhook, if there is one.

        Returns:
            True if the webhook accepted the alert
        """
        log_message = f"[JOB ALERT] {alert.title}: {alert.message}"
        if alert.details:
            log_message += f" | Details: {alert.details}"

        if alert.severity == AlertSeverity.CRITICAL:
            logger.critical(log_message)
        elif alert.severity == AlertSeverity.WARNING:
            logger.warning(log_message)
        else:
            logger.error(log_message)

        if not self._webhook_url:
            return False

        try:
            await self._post(alert.payload(self._source))
            return True
        except httpx.HTTPError as e:
            logger.error(f"Failed to send webhook alert {alert.title!r}: {e}")
            return False

    async def _post(self, payload: dict) -> None:
        if self._client is not None:
            response = await self._client.post(
                self._webhook_url, json=payload, timeout=self._timeout_seconds
            )
            response.raise_for_status()
            return

        async with httpx.AsyncClient() as client:
            response = await client.post(
                self._webhook_url, json=payload, timeout=self._timeout_seconds
            )
            response.raise_for_status()

    # =========================================================================
    # JOB EVENTS
    # =========================================================================

    async def sweep_crashed(self, error: Exception, started_at: str, traceback_tail: str) -> bool:
        return await self.alert(JobAlert(
            title="Deadline Job Failed",
            message="The reply deadline sweep crashed unexpectedly.",
            severity=AlertSeverity.CRITICAL,
            details={
                "error": str(error),
                "traceback": traceback_tail,
                "started_at": started_at,
            },
        ))

    async def sweep_incomplete(self, errors: list[str]) -> bool:
        return await self.alert(JobAlert(
            title="Deadline Job Completed with Warnings",
            message=f"{len(errors)} conversations could not be processed.",
            severity=AlertSeverity.WARNING,
            details={"errors": errors[:5]},
        ))

    async def mailbox_unreachable(self, consecutive_failures: int, last_error: str) -> bool:
        """Requests and replies are piling up unread."""
        return await self.alert(JobAlert(
            title="Mailbox Unreachable",
            message=f"The last {consecutive_failures} mailbox polls failed.",
            severity=AlertSeverity.ERROR,
            details={"last_error": last_error},
        ))
