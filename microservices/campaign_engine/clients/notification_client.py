"""
Notification Service Client

Channel sender backed by notification_service. Each send returns whether
the message was accepted for delivery.
"""

import logging
from typing import Any, Dict

import httpx

logger = logging.getLogger(__name__)


class NotificationClient:
    """Client for notification_service"""

    def __init__(self, base_url: str, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def send_email(self, to: str, subject: str, html: str) -> bool:
        return await self._send({
            "channel_type": "email",
            "recipient_email": to,
            "content": {"subject": subject, "html_content": html},
        })

    async def send_sms(self, to: str, body: str) -> bool:
        return await self._send({
            "channel_type": "sms",
            "recipient_phone": to,
            "content": {"body": body},
        })

    async def send_in_app(self, user_id: str, title: str, message: str) -> bool:
        return await self._send({
            "channel_type": "in_app",
            "user_id": user_id,
            "content": {"title": title, "body": message},
        })

    async def _send(self, request_data: Dict[str, Any]) -> bool:
        """
        POST one notification.

        Returns:
            True if accepted, False if notification_service rejected it

        Raises:
            httpx.HTTPError: On transport failures
        """
        channel = request_data["channel_type"]
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/api/v1/notifications",
                    json=request_data,
                )
                response.raise_for_status()
                data = response.json() if response.content else {}
                return data.get("success", True) is not False

        except httpx.HTTPStatusError as e:
            logger.error(f"Error sending {channel} notification: {e.response.status_code} {e.response.text}")
            return False

        except Exception as e:
            logger.error(f"Error sending {channel} notification: {e}")
            raise


__all__ = ["NotificationClient"]
