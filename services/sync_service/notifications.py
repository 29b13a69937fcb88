"""Notification utilities for critical errors."""

import logging
from typing import Optional

import httpx

from shared.config import get_bool_env, get_env

logger = logging.getLogger(__name__)


class NotificationService:
    """Handles sending notifications for critical errors."""

    def __init__(self, enabled: Optional[bool] = None, webhook_url: Optional[str] = None):
        """Initialize notification service; defaults come from the environment."""
        self.notification_enabled = get_bool_env("ENABLE_NOTIFICATIONS", False) if enabled is None else enabled
        self.notification_webhook = webhook_url if webhook_url is not None else get_env("NOTIFICATION_WEBHOOK_URL")

    async def send_critical_error_notification(
        self,
        source: str,
        error_message: str,
        context: Optional[dict] = None
    ) -> bool:
        """
        Send notification for critical errors.

        Args:
            source: Platform name, or "sync" for cycle-level failures
            error_message: The error message
            context: Optional additional context

        Returns:
            True if the notification was delivered
        """
        if not self.notification_enabled:
            logger.info(f"Notifications disabled, skipping notification for {source}")
            return False

        notification_message = (
            f"Critical Error in Chat Sync\n"
            f"Source: {source}\n"
            f"Error: {error_message}\n"
        )
        if context:
            notification_message += f"Context: {context}\n"

        logger.warning(f"CRITICAL ERROR NOTIFICATION: {notification_message}")

        if not self.notification_webhook:
            return False

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self.notification_webhook,
                    json={
                        "text": notification_message,
                        "source": source,
                        "error": error_message,
                        "context": context or {},
                    },
                    timeout=10.0
                )
                response.raise_for_status()
            logger.info(f"Notification sent for {source}")
            return True
        except httpx.HTTPError as e:
            logger.error(f"Failed to send notification: {e}")
            return False

    async def notify_reauth_required(self, platform: str, error_message: str) -> bool:
        """Tell the user a platform session expired."""
        return await self.send_critical_error_notification(
            source=platform,
            error_message=error_message,
            context={"stage": "listing", "action": "re-authenticate"}
        )
