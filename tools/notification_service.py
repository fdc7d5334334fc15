"""
Notification Service Tool
Push and SMS delivery for dose reminders and missed-dose alerts
"""

import logging
from typing import Dict, Optional, Any
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import uuid

import httpx

from config import settings


logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    """Types of notifications"""
    DOSE_REMINDER = "dose_reminder"
    MISSED_DOSE = "missed_dose"
    CAREGIVER_MISSED_DOSE = "caregiver_missed_dose_alert"
    CAREGIVER_MISSED_DOSE_SMS = "caregiver_missed_dose_sms"


@dataclass
class DeliveryResult:
    """Result of a single delivery attempt"""
    delivered: bool
    channel: str
    message_id: Optional[str] = None
    delivered_at: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class RenderedNotification:
    title: str
    body: str
    metadata: Dict[str, Any] = field(default_factory=dict)


TIME_OF_DAY_EMOJI = {
    "morning": "🌅",
    "afternoon": "☀️",
    "evening": "🌆",
    "bedtime": "🌙",
}


NOTIFICATION_TEMPLATES: Dict[NotificationType, Dict[str, str]] = {
    NotificationType.DOSE_REMINDER: {
        "title": "{emoji} Time for {medication}",
        "body": "Your {scheduled_time} {time_of_day} dose is coming up. {strength} {form}",
    },
    NotificationType.MISSED_DOSE: {
        "title": "⚠️ Missed Dose: {medication}",
        "body": "You missed your {scheduled_time} dose. Tap to take it now or skip.",
    },
    NotificationType.CAREGIVER_MISSED_DOSE: {
        "title": "🚨 {patient_name} Missed a Dose",
        "body": "{patient_name} missed their {scheduled_time} dose of {medication}.",
    },
    NotificationType.CAREGIVER_MISSED_DOSE_SMS: {
        "body": "⚠️ Alert: {patient_name} missed their {medication} dose scheduled for {scheduled_time}. Please check on them.",
    },
}


def format_clock(value: datetime) -> str:
    """Format a datetime as '8:00 AM'"""
    hour = value.hour % 12 or 12
    ampm = "PM" if value.hour >= 12 else "AM"
    return f"{hour}:{value.minute:02d} {ampm}"


def render(notification_type: NotificationType, metadata: Optional[Dict[str, Any]] = None, **data) -> RenderedNotification:
    """Render a notification from its template"""
    template = NOTIFICATION_TEMPLATES[notification_type]
    format_data = {
        "emoji": TIME_OF_DAY_EMOJI.get(data.get("time_of_day", ""), "⏰"),
        "medication": "your medication",
        "patient_name": "Your patient",
        "strength": "",
        "form": "",
        "time_of_day": "",
        "scheduled_time": "",
        **data,
    }

    try:
        title = template.get("title", "").format(**format_data)
        body = template["body"].format(**format_data).strip()
    except KeyError as e:
        logger.warning(f"Missing template variable: {e}")
        title, body = template.get("title", ""), template["body"]

    return RenderedNotification(
        title=title,
        body=body,
        metadata={"type": notification_type.value, **(metadata or {})},
    )


class NotificationTransport:
    """
    Delivery interface consumed by the sweeps.

    Implementations must not raise for ordinary delivery failures; they
    report them through DeliveryResult.delivered.
    """

    async def send(self, user_id: int, title: str, body: str, metadata: Optional[Dict[str, Any]] = None) -> DeliveryResult:
        raise NotImplementedError

    async def send_sms(self, phone_number: str, body: str) -> DeliveryResult:
        raise NotImplementedError


class NotificationService(NotificationTransport):
    """
    Push + SMS transport.

    Push delivery is handed to the device gateway (simulated and logged here);
    SMS goes through the Twilio REST API when credentials are configured.
    """

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self._sms_enabled = bool(
            settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN and settings.TWILIO_PHONE_NUMBER
        )
        self._client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=settings.TWILIO_API_URL,
                timeout=15.0,
                auth=(settings.TWILIO_ACCOUNT_SID or "", settings.TWILIO_AUTH_TOKEN or ""),
            )
        return self._client

    async def close(self):
        """Close the HTTP client"""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def send(self, user_id: int, title: str, body: str, metadata: Optional[Dict[str, Any]] = None) -> DeliveryResult:
        """Send push notification"""
        try:
            # Device token fan-out (FCM/APNs) happens behind the push gateway
            logger.info(f"[PUSH] To user {user_id}: {title} - {body[:40]}")
            return DeliveryResult(
                delivered=True,
                channel="push",
                message_id=f"push_{uuid.uuid4().hex[:12]}",
                delivered_at=datetime.utcnow()
            )
        except Exception as e:
            logger.error(f"Push send error: {e}")
            return DeliveryResult(delivered=False, channel="push", error=str(e))

    async def send_sms(self, phone_number: str, body: str) -> DeliveryResult:
        """Send SMS through Twilio"""
        if not self._sms_enabled:
            return DeliveryResult(delivered=False, channel="sms", error="SMS not configured")

        try:
            client = await self._get_client()
            response = await client.post(
                f"/Accounts/{settings.TWILIO_ACCOUNT_SID}/Messages.json",
                data={"To": phone_number, "From": settings.TWILIO_PHONE_NUMBER, "Body": body},
            )
            response.raise_for_status()
            sid = response.json().get("sid")
            logger.info(f"[SMS] Sent to {phone_number}: {sid}")
            return DeliveryResult(
                delivered=True,
                channel="sms",
                message_id=sid,
                delivered_at=datetime.utcnow()
            )
        except httpx.HTTPError as e:
            logger.error(f"Twilio API error: {e}")
            return DeliveryResult(delivered=False, channel="sms", error=str(e))


# Singleton instance
notification_service = NotificationService()
