# app/infra/notification_service.py
"""
Notification collaborator for dispatch events.

Pro-facing events (``new_job_assignment``, ``job_assigned``,
``pro_accepted``, ``pro_en_route``, ``job_completed``) are POSTed to the notify-pro endpoint
as ``{"job_id", "pro_id", "type"}``.  Management events (``pro_declined``)
go to the notify-management endpoint as ``{"type", "data"}``.

Rendering and delivery (SMS / email) live in those services.  Every call
is fire-and-forget with a short timeout: failures are logged and counted,
never raised, so a dispatch operation is never rolled back because a
notification could not be delivered.

Configure via settings:
- NOTIFY_PRO_URL: notify-pro endpoint (unset → pro notifications skipped)
- NOTIFY_MANAGEMENT_URL: notify-management endpoint (unset → skipped)
- COLLABORATOR_TIMEOUT_SECONDS: per-call timeout (default 3 s)
"""
from __future__ import annotations

from typing import Any, Optional

import aiohttp

from app.config import settings
from app.infra.http_client import get_collaborator_session
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics, inc_counter

logger = get_logger(__name__)

# Event type → management event name understood by notify-management
_MANAGEMENT_EVENTS = {
    "pro_declined": "proDeclined",
}


class HttpProNotifier:
    """``ProNotifier`` port backed by the notify-pro / notify-management endpoints."""

    def __init__(
            self,
            pro_url: Optional[str] = None,
            management_url: Optional[str] = None,
    ):
        self.pro_url = pro_url if pro_url is not None else settings.notify_pro_url
        self.management_url = (
            management_url if management_url is not None else settings.notify_management_url
        )

    async def notify(self, job_id: str, pro_id: str, notification_type: str) -> bool:
        """
        Deliver one dispatch event.

        Returns:
            True if the collaborator accepted the event, False otherwise
            (including "not configured").
        """
        management_event = _MANAGEMENT_EVENTS.get(notification_type)
        if management_event is not None:
            return await self.notify_management(
                management_event, {"job_id": job_id, "pro_id": pro_id}
            )

        if not self.pro_url:
            logger.debug(
                f"notify_pro_url not configured, skipping {notification_type}",
                extra={"job_id": job_id, "pro_id": pro_id},
            )
            return False

        payload = {"job_id": job_id, "pro_id": pro_id, "type": notification_type}
        return await self._post(self.pro_url, payload, notification_type, job_id=job_id, pro_id=pro_id)

    async def notify_management(self, event_type: str, data: dict[str, Any]) -> bool:
        """Send an internal alert to the management notification endpoint."""
        if not self.management_url:
            logger.debug(f"notify_management_url not configured, skipping {event_type}")
            return False

        payload = {"type": event_type, "data": data}
        return await self._post(
            self.management_url, payload, event_type,
            job_id=data.get("job_id"), pro_id=data.get("pro_id"),
        )

    async def _post(
            self,
            url: str,
            payload: dict[str, Any],
            notification_type: str,
            *,
            job_id: Optional[str] = None,
            pro_id: Optional[str] = None,
    ) -> bool:
        context = {"job_id": job_id, "pro_id": pro_id}
        try:
            session = get_collaborator_session()
            async with session.post(url, json=payload) as resp:
                if resp.status >= 400:
                    logger.warning(
                        f"Notification {notification_type} rejected: status={resp.status}",
                        extra=context,
                    )
                    AppMetrics.notification_failed(notification_type)
                    return False

        except TimeoutError:
            logger.warning(f"Notification {notification_type} timed out", extra=context)
            AppMetrics.notification_failed(notification_type)
            return False

        except aiohttp.ClientError as exc:
            logger.warning(
                f"Notification {notification_type} network error: {type(exc).__name__}",
                extra=context,
            )
            AppMetrics.notification_failed(notification_type)
            return False

        inc_counter("dispatch_notifications_sent_total", type=notification_type)
        logger.info(f"Notification {notification_type} sent", extra=context)
        return True
